"""Passkey registration and authentication.

Challenges are single use: a challenge row is deleted before the client's
response is verified, and only the request whose delete removed the row may
go on to verify it.
"""

from __future__ import annotations

import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..errors import CredentialInvalid, InvalidChallenge
from ..models.auth import Account, WebAuthnChallenge, WebAuthnCredential

if TYPE_CHECKING:
    from ..context import AuthContext

logger = logging.getLogger(__name__)

PURPOSE_REGISTRATION = "registration"
PURPOSE_AUTHENTICATION = "authentication"

_VERIFY_ERRORS = (WebAuthnException, ValueError, TypeError, KeyError)
_TRANSPORTS = {t.value for t in AuthenticatorTransport}


@dataclass(frozen=True)
class ConsumedChallenge:
    challenge: bytes
    account_id: uuid.UUID | None
    purpose: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def counter_advanced(stored: int, reported: int) -> bool:
    """Signature counters must strictly increase, unless both are zero."""
    if stored == 0 and reported == 0:
        return True
    return reported > stored


def _descriptors(credentials: list[WebAuthnCredential]) -> list[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(c.credential_id),
            transports=[AuthenticatorTransport(t) for t in c.transport_list if t in _TRANSPORTS] or None,
        )
        for c in credentials
    ]


async def list_credentials(db: AsyncSession, account_id: uuid.UUID) -> list[WebAuthnCredential]:
    stmt = (
        select(WebAuthnCredential)
        .where(WebAuthnCredential.account_id == account_id)
        .order_by(WebAuthnCredential.created_at)
    )
    return list((await db.execute(stmt)).scalars().all())


async def create_challenge(
    db: AsyncSession,
    ctx: AuthContext,
    *,
    purpose: str,
    account_id: uuid.UUID | None,
) -> tuple[str, bytes]:
    challenge = secrets.token_bytes(32)
    row = WebAuthnChallenge(
        challenge_id=secrets.token_urlsafe(24),
        challenge=bytes_to_base64url(challenge),
        account_id=account_id,
        purpose=purpose,
        expires_at=_utcnow() + timedelta(seconds=ctx.settings.webauthn_challenge_ttl_seconds),
    )
    db.add(row)
    await db.commit()
    return row.challenge_id, challenge


async def consume_challenge(db: AsyncSession, challenge_id: str | None, purpose: str) -> ConsumedChallenge | None:
    """Delete the challenge and return it if this caller was the one to delete it."""
    if not challenge_id:
        return None
    row = await db.get(WebAuthnChallenge, challenge_id)
    if row is None:
        return None
    consumed = ConsumedChallenge(
        challenge=base64url_to_bytes(row.challenge),
        account_id=row.account_id,
        purpose=row.purpose,
    )
    expires_at = _as_utc(row.expires_at)
    result = await db.execute(delete(WebAuthnChallenge).where(WebAuthnChallenge.challenge_id == challenge_id))
    await db.commit()
    if (result.rowcount or 0) != 1:
        return None
    if expires_at <= _utcnow() or consumed.purpose != purpose:
        return None
    return consumed


async def purge_expired_challenges(db: AsyncSession) -> int:
    result = await db.execute(delete(WebAuthnChallenge).where(WebAuthnChallenge.expires_at <= _utcnow()))
    await db.commit()
    return int(result.rowcount or 0)


async def registration_options(db: AsyncSession, ctx: AuthContext, account: Account) -> tuple[str, dict[str, Any]]:
    challenge_id, challenge = await create_challenge(
        db, ctx, purpose=PURPOSE_REGISTRATION, account_id=account.id
    )
    existing = await list_credentials(db, account.id)
    options = generate_registration_options(
        rp_id=ctx.settings.rp_id,
        rp_name=ctx.settings.webauthn_rp_name,
        user_id=account.id.bytes,
        user_name=account.username,
        user_display_name=account.username,
        challenge=challenge,
        exclude_credentials=_descriptors(existing),
        authenticator_selection=AuthenticatorSelectionCriteria(
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        ),
    )
    return challenge_id, json.loads(options_to_json(options))


async def verify_registration(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account,
    *,
    challenge_id: str | None,
    credential: dict[str, Any],
    name: str | None = None,
) -> WebAuthnCredential:
    consumed = await consume_challenge(db, challenge_id, PURPOSE_REGISTRATION)
    if consumed is None or consumed.account_id != account.id:
        raise InvalidChallenge("Passkey registration expired. Please try again.")

    try:
        verified = verify_registration_response(
            credential=credential,
            expected_challenge=consumed.challenge,
            expected_origin=ctx.settings.base_origin,
            expected_rp_id=ctx.settings.rp_id,
            require_user_verification=False,
        )
    except _VERIFY_ERRORS:
        logger.debug("passkey registration rejected for %s", account.username, exc_info=True)
        raise InvalidChallenge("Passkey registration could not be verified.")

    credential_id = bytes_to_base64url(verified.credential_id)
    duplicate = (
        await db.execute(select(WebAuthnCredential.id).where(WebAuthnCredential.credential_id == credential_id))
    ).scalar_one_or_none()
    if duplicate is not None:
        raise InvalidChallenge("This passkey is already registered.")

    response = credential.get("response") if isinstance(credential, dict) else None
    transports = [t for t in (response or {}).get("transports", []) if t in _TRANSPORTS]
    row = WebAuthnCredential(
        account_id=account.id,
        credential_id=credential_id,
        public_key=verified.credential_public_key,
        sign_count=verified.sign_count,
        device_type=getattr(verified.credential_device_type, "value", str(verified.credential_device_type)),
        backed_up=bool(verified.credential_backed_up),
        transports=",".join(transports),
        name=(name or "").strip()[:100] or None,
    )
    db.add(row)
    await db.commit()
    await db.refresh(row)
    return row


async def authentication_options(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account | None = None,
) -> tuple[str, dict[str, Any]]:
    """Options for passkey sign-in; ``account`` is None for discoverable login."""
    allow = _descriptors(await list_credentials(db, account.id)) if account else []
    challenge_id, challenge = await create_challenge(
        db,
        ctx,
        purpose=PURPOSE_AUTHENTICATION,
        account_id=account.id if account else None,
    )
    options = generate_authentication_options(
        rp_id=ctx.settings.rp_id,
        challenge=challenge,
        allow_credentials=allow,
        user_verification=UserVerificationRequirement.PREFERRED,
    )
    return challenge_id, json.loads(options_to_json(options))


async def verify_authentication(
    db: AsyncSession,
    ctx: AuthContext,
    *,
    challenge_id: str | None,
    credential: dict[str, Any],
) -> Account:
    consumed = await consume_challenge(db, challenge_id, PURPOSE_AUTHENTICATION)
    if consumed is None:
        raise InvalidChallenge("Passkey sign-in expired. Please try again.")

    raw_id = credential.get("id") or credential.get("rawId") if isinstance(credential, dict) else None
    if not raw_id or not isinstance(raw_id, str):
        raise CredentialInvalid("Passkey not recognised")
    stored = (
        await db.execute(select(WebAuthnCredential).where(WebAuthnCredential.credential_id == raw_id))
    ).scalar_one_or_none()
    if stored is None:
        raise CredentialInvalid("Passkey not recognised")
    if consumed.account_id is not None and consumed.account_id != stored.account_id:
        raise CredentialInvalid("Passkey not recognised")

    try:
        verified = verify_authentication_response(
            credential=credential,
            expected_challenge=consumed.challenge,
            expected_rp_id=ctx.settings.rp_id,
            expected_origin=ctx.settings.base_origin,
            credential_public_key=stored.public_key,
            credential_current_sign_count=stored.sign_count,
            require_user_verification=False,
        )
    except _VERIFY_ERRORS:
        logger.debug("passkey assertion rejected for credential %s", raw_id[:12], exc_info=True)
        raise CredentialInvalid("Passkey could not be verified")

    if not counter_advanced(stored.sign_count, verified.new_sign_count):
        logger.warning(
            "passkey counter did not advance for credential %s (stored=%d reported=%d); possible clone",
            raw_id[:12],
            stored.sign_count,
            verified.new_sign_count,
        )
        raise CredentialInvalid("Passkey could not be verified")

    stored.sign_count = verified.new_sign_count
    stored.backed_up = bool(getattr(verified, "credential_backed_up", stored.backed_up))
    stored.last_used_at = _utcnow()
    await db.commit()

    account = await db.get(Account, stored.account_id)
    if account is None or account.banned:
        raise CredentialInvalid("Passkey could not be verified")
    return account


async def rename_credential(db: AsyncSession, account_id: uuid.UUID, credential_pk: uuid.UUID, name: str) -> bool:
    row = await db.get(WebAuthnCredential, credential_pk)
    if row is None or row.account_id != account_id:
        return False
    row.name = (name or "").strip()[:100] or None
    await db.commit()
    return True


async def delete_credential(db: AsyncSession, account_id: uuid.UUID, credential_pk: uuid.UUID) -> bool:
    result = await db.execute(
        delete(WebAuthnCredential).where(
            WebAuthnCredential.id == credential_pk,
            WebAuthnCredential.account_id == account_id,
        )
    )
    await db.commit()
    return (result.rowcount or 0) > 0
