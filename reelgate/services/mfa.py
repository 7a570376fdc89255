"""Login state machine and TOTP second factor.

A login attempt moves ANONYMOUS -> PRIMARY_VERIFIED and then to one of
MFA_PENDING_VERIFY, MFA_PENDING_SETUP, or SESSION_ISSUED. The pending states
are backed by an ``MfaSession`` row whose opaque token travels in the
``mfa_token`` cookie; each step must present it.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import pyotp
from fastapi import Request
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CredentialInvalid, InvalidChallenge
from ..models.auth import Account, MfaSession
from . import accounts, audit, session_store, settings_svc

if TYPE_CHECKING:
    from ..context import AuthContext

logger = logging.getLogger(__name__)

KIND_VERIFY = "verify"
KIND_SETUP = "setup"

_CODE_RE = re.compile(r"^\d{6}$")


class LoginState(str, Enum):
    ANONYMOUS = "ANONYMOUS"
    PRIMARY_VERIFIED = "PRIMARY_VERIFIED"
    MFA_PENDING_VERIFY = "MFA_PENDING_VERIFY"
    MFA_PENDING_SETUP = "MFA_PENDING_SETUP"
    SESSION_ISSUED = "SESSION_ISSUED"


@dataclass(frozen=True)
class LoginOutcome:
    state: LoginState
    account_id: str
    return_to: str = "/"
    mfa_token: str | None = None
    mfa_ttl: int | None = None
    session_token: str | None = None
    jti: str | None = None
    max_age: int | None = None


@dataclass(frozen=True)
class SetupDetails:
    secret: str
    provisioning_uri: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, username: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=username, issuer_name=issuer)


def normalize_code(code: str | None) -> str:
    return re.sub(r"\s+", "", code or "")


def verify_mfa_code(secret: str | None, code: str | None, *, valid_window: int = 1) -> bool:
    """Synchronous TOTP check, also used as the re-authentication gate."""
    code = normalize_code(code)
    if not secret or not _CODE_RE.match(code):
        return False
    try:
        return bool(pyotp.TOTP(secret).verify(code, valid_window=valid_window))
    except (ValueError, TypeError):
        logger.debug("totp verification failed on a malformed secret")
        return False


def account_secret(ctx: AuthContext, account: Account) -> str | None:
    if not account.mfa_secret_encrypted:
        return None
    return ctx.cipher.decrypt_text(account.mfa_secret_encrypted)


def reauthenticate(ctx: AuthContext, account: Account, code: str | None) -> bool:
    """Inline MFA check before a sensitive change. Requires an enrolled secret."""
    secret = account_secret(ctx, account)
    return verify_mfa_code(secret, code, valid_window=ctx.settings.totp_valid_window)


async def mfa_required(db: AsyncSession, ctx: AuthContext) -> bool:
    return await settings_svc.get_setting_bool(
        db, ctx.settings_cache, settings_svc.OTP_ENABLED, ctx.settings.mfa_required
    )


async def session_max_age(db: AsyncSession, ctx: AuthContext) -> int:
    value = await settings_svc.get_setting_int(
        db, ctx.settings_cache, settings_svc.SESSION_MAX_AGE, ctx.settings.session_max_age_seconds
    )
    return max(60, value)


async def clear_mfa_sessions(db: AsyncSession, account_id) -> None:
    await db.execute(delete(MfaSession).where(MfaSession.account_id == account_id))
    await db.commit()


async def _create_mfa_session(
    db: AsyncSession,
    *,
    account: Account,
    kind: str,
    ttl_seconds: int,
    return_to: str,
    pending_secret_encrypted: str | None = None,
) -> MfaSession:
    row = MfaSession(
        token=secrets.token_urlsafe(32),
        account_id=account.id,
        kind=kind,
        pending_secret_encrypted=pending_secret_encrypted,
        return_to=return_to,
        attempts=0,
        expires_at=_utcnow() + timedelta(seconds=ttl_seconds),
    )
    db.add(row)
    await db.commit()
    return row


async def issue_session(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account,
    *,
    request: Request | None = None,
    return_to: str = "/",
) -> LoginOutcome:
    """Mint a session token and its durable record."""
    max_age = await session_max_age(db, ctx)
    jti = session_store.new_jti()
    groups = account.group_list or list(accounts.DEFAULT_GROUPS)
    token = ctx.signer.issue(
        account_id=str(account.id),
        username=account.username,
        groups=groups,
        ttl_seconds=max_age,
        jti=jti,
    )
    await session_store.create_session(
        db,
        account_id=account.id,
        jti=jti,
        expires_at=_utcnow() + timedelta(seconds=max_age),
        device=session_store.DeviceMeta.from_request(request),
    )
    await accounts.record_login(db, account)
    return LoginOutcome(
        state=LoginState.SESSION_ISSUED,
        account_id=str(account.id),
        return_to=return_to,
        session_token=token,
        jti=jti,
        max_age=max_age,
    )


async def complete_primary_factor(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account,
    *,
    request: Request | None = None,
    return_to: str = "/",
    method: str = "password",
) -> LoginOutcome:
    """Route a PRIMARY_VERIFIED account to its next state."""
    await clear_mfa_sessions(db, account.id)

    if account.has_mfa:
        row = await _create_mfa_session(
            db,
            account=account,
            kind=KIND_VERIFY,
            ttl_seconds=ctx.settings.mfa_verify_ttl_seconds,
            return_to=return_to,
        )
        return LoginOutcome(
            state=LoginState.MFA_PENDING_VERIFY,
            account_id=str(account.id),
            return_to=return_to,
            mfa_token=row.token,
            mfa_ttl=ctx.settings.mfa_verify_ttl_seconds,
        )

    if await mfa_required(db, ctx):
        pending = ctx.cipher.encrypt(generate_totp_secret())
        row = await _create_mfa_session(
            db,
            account=account,
            kind=KIND_SETUP,
            ttl_seconds=ctx.settings.mfa_setup_ttl_seconds,
            return_to=return_to,
            pending_secret_encrypted=pending,
        )
        return LoginOutcome(
            state=LoginState.MFA_PENDING_SETUP,
            account_id=str(account.id),
            return_to=return_to,
            mfa_token=row.token,
            mfa_ttl=ctx.settings.mfa_setup_ttl_seconds,
        )

    outcome = await issue_session(db, ctx, account, request=request, return_to=return_to)
    await ctx.audit.emit(
        audit.USER_LOGIN,
        actor=account.username,
        target=account.username,
        request=request,
        method=method,
    )
    return outcome


async def get_pending(db: AsyncSession, token: str | None, kind: str | None = None) -> MfaSession | None:
    if not token:
        return None
    row = await db.get(MfaSession, token)
    if row is None:
        return None
    expires_at = row.expires_at if row.expires_at.tzinfo else row.expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= _utcnow():
        await db.delete(row)
        await db.commit()
        return None
    if kind and row.kind != kind:
        return None
    return row


async def setup_details(db: AsyncSession, ctx: AuthContext, token: str | None) -> SetupDetails:
    row = await get_pending(db, token, KIND_SETUP)
    if row is None or not row.pending_secret_encrypted:
        raise InvalidChallenge("Your sign-in has expired. Please sign in again.")
    account = await db.get(Account, row.account_id)
    if account is None:
        raise InvalidChallenge("Your sign-in has expired. Please sign in again.")
    secret = ctx.cipher.decrypt_text(row.pending_secret_encrypted)
    return SetupDetails(
        secret=secret,
        provisioning_uri=provisioning_uri(secret, account.username, ctx.settings.totp_issuer),
    )


async def _bump_attempts(db: AsyncSession, token: str) -> int:
    await db.execute(
        update(MfaSession).where(MfaSession.token == token).values(attempts=MfaSession.attempts + 1)
    )
    await db.commit()
    attempts = (await db.execute(select(MfaSession.attempts).where(MfaSession.token == token))).scalar_one_or_none()
    return int(attempts or 0)


async def _discard(db: AsyncSession, token: str) -> bool:
    """Delete the pending MFA session; True only for the caller that removed it."""
    result = await db.execute(delete(MfaSession).where(MfaSession.token == token))
    await db.commit()
    return (result.rowcount or 0) == 1


async def submit_code(
    db: AsyncSession,
    ctx: AuthContext,
    *,
    token: str | None,
    code: str | None,
    kind: str,
    request: Request | None = None,
) -> LoginOutcome:
    """Advance MFA_PENDING_VERIFY / MFA_PENDING_SETUP with a TOTP code.

    Raises ``InvalidChallenge`` when the attempt must restart from
    ANONYMOUS, ``CredentialInvalid`` for a wrong code that may be retried.
    """
    row = await get_pending(db, token, kind)
    if row is None:
        raise InvalidChallenge("Your sign-in has expired. Please sign in again.")

    attempts = await _bump_attempts(db, row.token)
    if attempts > ctx.settings.mfa_max_attempts:
        await _discard(db, row.token)
        raise InvalidChallenge("Too many attempts. Please sign in again.")

    account = await db.get(Account, row.account_id)
    if account is None or account.banned:
        await _discard(db, row.token)
        raise InvalidChallenge("Please sign in again.")

    if kind == KIND_SETUP:
        secret_encrypted = row.pending_secret_encrypted
    else:
        secret_encrypted = account.mfa_secret_encrypted
    if not secret_encrypted:
        await _discard(db, row.token)
        raise InvalidChallenge("Please sign in again.")

    secret = ctx.cipher.decrypt_text(secret_encrypted)
    if not verify_mfa_code(secret, code, valid_window=ctx.settings.totp_valid_window):
        raise CredentialInvalid("Invalid authentication code")

    return_to = row.return_to or "/"
    if not await _discard(db, row.token):
        # Another request redeemed this MFA session first.
        raise InvalidChallenge("Your sign-in has expired. Please sign in again.")
    if kind == KIND_SETUP:
        account.mfa_secret_encrypted = secret_encrypted
        await db.commit()
        await ctx.audit.emit(audit.USER_MFA_ENROLLED, actor=account.username, target=account.username, request=request)

    outcome = await issue_session(db, ctx, account, request=request, return_to=return_to)
    await ctx.audit.emit(
        audit.USER_LOGIN,
        actor=account.username,
        target=account.username,
        request=request,
        method="totp" if kind == KIND_VERIFY else "totp_setup",
    )
    return outcome


async def reset_mfa(db: AsyncSession, account: Account) -> None:
    account.mfa_secret_encrypted = None
    await db.commit()
    await clear_mfa_sessions(db, account.id)
