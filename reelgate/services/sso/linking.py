"""Map provider profiles onto local accounts."""

from __future__ import annotations

import logging
import re
import secrets
from typing import TYPE_CHECKING

from fastapi import Request
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import CredentialInvalid
from ...models.auth import Account, ExternalIdentity
from .. import accounts, audit
from .providers import ExternalProfile

if TYPE_CHECKING:
    from ...context import AuthContext

logger = logging.getLogger(__name__)

# Providers that may match or create accounts on first sign-in. The social
# providers only sign in accounts that linked them explicitly.
DIRECTORY_PROVIDERS = frozenset({"oidc", "duo"})

_USERNAME_RE = re.compile(r"[^a-zA-Z0-9_.@-]+")


async def get_identity(db: AsyncSession, provider: str, subject: str) -> ExternalIdentity | None:
    stmt = select(ExternalIdentity).where(
        ExternalIdentity.provider == provider,
        ExternalIdentity.provider_user_id == subject,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_identities(db: AsyncSession, account_id) -> list[ExternalIdentity]:
    stmt = select(ExternalIdentity).where(ExternalIdentity.account_id == account_id).order_by(ExternalIdentity.provider)
    return list((await db.execute(stmt)).scalars().all())


async def _identity_for_account(db: AsyncSession, account_id, provider: str) -> ExternalIdentity | None:
    stmt = select(ExternalIdentity).where(
        ExternalIdentity.account_id == account_id,
        ExternalIdentity.provider == provider,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


def _apply_profile(ctx: AuthContext, identity: ExternalIdentity, profile: ExternalProfile) -> None:
    identity.provider_email = profile.email
    identity.provider_login = profile.username
    if profile.refresh_token:
        identity.refresh_token_encrypted = ctx.cipher.encrypt(profile.refresh_token)


def synced_groups(current: list[str], provider_groups: tuple[str, ...]) -> list[str] | None:
    """Groups to store after a directory sign-in, or None to leave them alone.

    Administrator groups are never granted by the provider; ones the account
    already holds are kept.
    """
    if not provider_groups:
        return None
    held_admin = [g for g in current if g in accounts.ADMIN_GROUPS]
    granted = [g for g in provider_groups if g not in accounts.ADMIN_GROUPS]
    return accounts.normalize_groups([*granted, *held_admin])


async def _sync_groups(db: AsyncSession, ctx: AuthContext, account: Account, profile: ExternalProfile) -> None:
    if not ctx.settings.oidc_sync_groups or profile.provider not in DIRECTORY_PROVIDERS:
        return
    groups = synced_groups(account.group_list, profile.groups)
    if groups is None or groups == sorted(account.group_list):
        return
    await accounts.set_groups(db, ctx.account_cache, account, groups)
    logger.info("synced groups for %s from %s", account.username, profile.provider)


async def _unique_username(db: AsyncSession, base: str) -> str:
    candidate = _USERNAME_RE.sub("", base)[:100] or "user"
    if await accounts.get_account_by_username(db, candidate) is None:
        return candidate
    for _ in range(5):
        suffixed = f"{candidate}-{secrets.token_hex(2)}"
        if await accounts.get_account_by_username(db, suffixed) is None:
            return suffixed
    return f"{candidate}-{secrets.token_hex(6)}"


async def _match_account(db: AsyncSession, ctx: AuthContext, profile: ExternalProfile) -> Account | None:
    if ctx.settings.oidc_match_by_email and profile.email and profile.email_verified:
        account = await accounts.get_account_by_email(db, profile.email)
        if account is not None:
            return account
    if ctx.settings.oidc_match_by_username and profile.username:
        account = await accounts.get_account_by_username(db, profile.username)
        if account is not None:
            return account
    if ctx.settings.oidc_allow_auto_create:
        base = profile.username or (profile.email or "").split("@", 1)[0] or f"{profile.provider}-user"
        username = await _unique_username(db, base)
        account = await accounts.create_account(
            db,
            username=username,
            email=profile.email if profile.email_verified else None,
            groups=[g for g in profile.groups if g not in accounts.ADMIN_GROUPS] or None,
        )
        await ctx.audit.emit(audit.USER_CREATED, actor=profile.provider, target=account.username, source="sso")
        return account
    return None


async def _create_link(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account,
    profile: ExternalProfile,
) -> ExternalIdentity:
    identity = ExternalIdentity(
        account_id=account.id,
        provider=profile.provider,
        provider_user_id=profile.subject,
    )
    _apply_profile(ctx, identity, profile)
    db.add(identity)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("concurrent %s link for %s lost the race", profile.provider, account.username)
        raise CredentialInvalid("This sign-in is already linked to another account.")
    return identity


async def resolve_login(
    db: AsyncSession,
    ctx: AuthContext,
    profile: ExternalProfile,
    *,
    request: Request | None = None,
) -> Account:
    """Return the local account for a provider sign-in.

    Raises ``CredentialInvalid`` when no account can be resolved, the account
    is banned, or the account is already linked to a different subject.
    """
    identity = await get_identity(db, profile.provider, profile.subject)
    if identity is not None:
        account = await db.get(Account, identity.account_id)
        if account is None or account.banned:
            raise CredentialInvalid("This account cannot sign in.")
        _apply_profile(ctx, identity, profile)
        await db.commit()
        await _sync_groups(db, ctx, account, profile)
        return account

    if profile.provider not in DIRECTORY_PROVIDERS:
        raise CredentialInvalid("No account is linked to this sign-in. Link it from your profile first.")

    account = await _match_account(db, ctx, profile)
    if account is None:
        raise CredentialInvalid("No account matches this sign-in.")
    if account.banned:
        raise CredentialInvalid("This account cannot sign in.")
    if await _identity_for_account(db, account.id, profile.provider) is not None:
        logger.warning("%s subject mismatch for already-linked account %s", profile.provider, account.username)
        raise CredentialInvalid("This account is already linked to a different sign-in.")

    await _create_link(db, ctx, account, profile)
    await ctx.audit.emit(
        audit.USER_IDENTITY_LINKED,
        actor=account.username,
        target=account.username,
        request=request,
        provider=profile.provider,
    )
    await _sync_groups(db, ctx, account, profile)
    return account


async def link_identity(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account,
    profile: ExternalProfile,
    *,
    request: Request | None = None,
) -> ExternalIdentity:
    existing = await get_identity(db, profile.provider, profile.subject)
    if existing is not None:
        if existing.account_id != account.id:
            raise CredentialInvalid("This sign-in is already linked to another account.")
        _apply_profile(ctx, existing, profile)
        await db.commit()
        return existing
    if await _identity_for_account(db, account.id, profile.provider) is not None:
        raise CredentialInvalid("Unlink the current sign-in for this provider first.")

    identity = await _create_link(db, ctx, account, profile)
    await ctx.audit.emit(
        audit.USER_IDENTITY_LINKED,
        actor=account.username,
        target=account.username,
        request=request,
        provider=profile.provider,
    )
    return identity


async def unlink_identity(db: AsyncSession, account: Account, provider: str) -> bool:
    result = await db.execute(
        delete(ExternalIdentity).where(
            ExternalIdentity.account_id == account.id,
            ExternalIdentity.provider == provider,
        )
    )
    await db.commit()
    return (result.rowcount or 0) > 0
