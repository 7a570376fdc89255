"""Accounts, sessions, and second-factor state."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, ExpiringMixin, TimestampMixin, UUIDMixin


class Account(Base, UUIDMixin, TimestampMixin):
    """Local identity. Passwordless accounts carry a null password_hash."""

    __tablename__ = "account"

    username: Mapped[str] = mapped_column(String(150))
    username_key: Mapped[str] = mapped_column(String(150), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), default=None, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), default=None)
    groups: Mapped[str] = mapped_column(Text, default="users")
    banned: Mapped[bool] = mapped_column(Boolean, default=False)
    mfa_secret_encrypted: Mapped[str | None] = mapped_column(Text, default=None)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    @property
    def group_list(self) -> list[str]:
        return [g for g in (self.groups or "").split(",") if g]

    @property
    def has_mfa(self) -> bool:
        return bool(self.mfa_secret_encrypted)

    def __repr__(self) -> str:
        return f"<Account {self.username!r}>"


class ExternalIdentity(Base, UUIDMixin, TimestampMixin):
    """Link between an account and an external provider subject."""

    __tablename__ = "external_identity"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_external_identity_subject"),
        UniqueConstraint("account_id", "provider", name="uq_external_identity_account_provider"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("account.id", ondelete="CASCADE"), index=True
    )
    provider: Mapped[str] = mapped_column(String(32))
    provider_user_id: Mapped[str] = mapped_column(String(255))
    provider_email: Mapped[str | None] = mapped_column(String(255), default=None)
    provider_login: Mapped[str | None] = mapped_column(String(255), default=None)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, default=None)

    def __repr__(self) -> str:
        return f"<ExternalIdentity {self.provider}:{self.provider_user_id}>"


class WebAuthnCredential(Base, UUIDMixin, TimestampMixin):
    """Registered passkey / security key."""

    __tablename__ = "webauthn_credential"

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("account.id", ondelete="CASCADE"), index=True
    )
    credential_id: Mapped[str] = mapped_column(String(512), unique=True, index=True)
    public_key: Mapped[bytes] = mapped_column(LargeBinary)
    sign_count: Mapped[int] = mapped_column(Integer, default=0)
    device_type: Mapped[str] = mapped_column(String(32), default="single_device")
    backed_up: Mapped[bool] = mapped_column(Boolean, default=False)
    transports: Mapped[str] = mapped_column(String(255), default="")
    name: Mapped[str | None] = mapped_column(String(100), default=None)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    @property
    def transport_list(self) -> list[str]:
        return [t for t in (self.transports or "").split(",") if t]

    def __repr__(self) -> str:
        return f"<WebAuthnCredential {self.credential_id[:12]!r}>"


class AuthSession(Base, UUIDMixin, ExpiringMixin):
    """Durable record of an issued session token, keyed by its jti."""

    __tablename__ = "auth_session"

    jti: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("account.id", ondelete="CASCADE"), index=True
    )
    ip_address: Mapped[str | None] = mapped_column(String(64), default=None)
    user_agent: Mapped[str | None] = mapped_column(String(512), default=None)
    device_label: Mapped[str | None] = mapped_column(String(128), default=None)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None, index=True)
    revoked_reason: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuthSession {self.jti!r}>"


class MfaSession(Base, ExpiringMixin):
    """In-progress second-factor step, addressed by an opaque token."""

    __tablename__ = "mfa_session"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("account.id", ondelete="CASCADE"), index=True
    )
    kind: Mapped[str] = mapped_column(String(16))
    pending_secret_encrypted: Mapped[str | None] = mapped_column(Text, default=None)
    return_to: Mapped[str] = mapped_column(String(512), default="/")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<MfaSession {self.kind} {self.account_id}>"


class WebAuthnChallenge(Base, ExpiringMixin):
    """Single-use challenge; deleted before the response is verified."""

    __tablename__ = "webauthn_challenge"

    challenge_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    challenge: Mapped[str] = mapped_column(String(255))
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("account.id", ondelete="CASCADE"), default=None, index=True
    )
    purpose: Mapped[str] = mapped_column(String(16))

    def __repr__(self) -> str:
        return f"<WebAuthnChallenge {self.purpose} {self.challenge_id[:8]!r}>"


class HandshakeState(Base):
    """Pending external sign-in, keyed by the OAuth state value."""

    __tablename__ = "handshake_state"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32))
    purpose: Mapped[str] = mapped_column(String(16))
    account_id: Mapped[str | None] = mapped_column(String(64), default=None)
    nonce: Mapped[str | None] = mapped_column(String(128), default=None)
    login_hint: Mapped[str | None] = mapped_column(String(255), default=None)
    return_to: Mapped[str] = mapped_column(String(512), default="/")
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class Setting(Base):
    """Runtime key/value settings editable by administrators."""

    __tablename__ = "setting"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
