"""Local accounts: lookup, password authentication, and admin mutations."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CredentialInvalid
from ..models.auth import (
    Account,
    AuthSession,
    ExternalIdentity,
    MfaSession,
    WebAuthnChallenge,
    WebAuthnCredential,
)
from ..security.cache import TTLCache
from ..security.passwords import (
    ScryptParams,
    dummy_hash,
    hash_password_async,
    needs_rehash,
    verify_password_async,
)
from . import session_store

logger = logging.getLogger(__name__)

ADMIN_GROUPS = frozenset({"administrators", "admins"})
DEFAULT_GROUPS = ("users",)
MIN_PASSWORD_LENGTH = 8


class AccountExists(ValueError):
    pass


@dataclass(frozen=True)
class AccountSnapshot:
    """What the gateway needs to know about an account on every request."""

    id: uuid.UUID
    username: str
    groups: tuple[str, ...]
    banned: bool

    @property
    def is_admin(self) -> bool:
        return any(g in ADMIN_GROUPS for g in self.groups)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def username_key(username: str) -> str:
    return (username or "").strip().lower()


def normalize_groups(groups: Iterable[str] | str | None) -> list[str]:
    if groups is None:
        return list(DEFAULT_GROUPS)
    if isinstance(groups, str):
        groups = groups.split(",")
    cleaned = sorted({g.strip().lower() for g in groups if g and g.strip()})
    return cleaned or list(DEFAULT_GROUPS)


def is_admin_groups(groups: Iterable[str]) -> bool:
    return any(g in ADMIN_GROUPS for g in groups)


def validate_new_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _should_update_last_login(last_login_at: datetime | None, now: datetime) -> bool:
    last = _as_utc(last_login_at)
    if last is None:
        return True
    return (now - last).total_seconds() >= 60


async def get_account(db: AsyncSession, account_id: uuid.UUID | str) -> Account | None:
    if isinstance(account_id, str):
        try:
            account_id = uuid.UUID(account_id)
        except ValueError:
            return None
    return await db.get(Account, account_id)


async def get_account_by_username(db: AsyncSession, username: str) -> Account | None:
    key = username_key(username)
    if not key:
        return None
    stmt = select(Account).where(Account.username_key == key)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_account_by_email(db: AsyncSession, email: str) -> Account | None:
    email_norm = (email or "").strip().lower()
    if not email_norm:
        return None
    stmt = select(Account).where(Account.email == email_norm).order_by(Account.created_at).limit(1)
    return (await db.execute(stmt)).scalars().first()


async def create_account(
    db: AsyncSession,
    *,
    username: str,
    password: str | None = None,
    email: str | None = None,
    groups: Iterable[str] | str | None = None,
    params: ScryptParams | None = None,
) -> Account:
    display = (username or "").strip()
    if not display:
        raise ValueError("Username is required")
    if await get_account_by_username(db, display):
        raise AccountExists(f"Username {display!r} is already taken")
    password_hash = None
    if password:
        validate_new_password(password)
        password_hash = await hash_password_async(password, params)
    account = Account(
        username=display,
        username_key=username_key(display),
        email=(email or "").strip().lower() or None,
        password_hash=password_hash,
        groups=",".join(normalize_groups(groups)),
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


async def authenticate_password(
    db: AsyncSession,
    username: str,
    password: str,
    *,
    params: ScryptParams,
) -> Account | None:
    """Return the account when the password matches, else ``None``.

    Unknown users, passwordless accounts, and banned accounts all pay for one
    KDF run so that response timing does not reveal which case applied.
    """
    account = await get_account_by_username(db, username)
    if account is None or not account.password_hash:
        await verify_password_async(password, dummy_hash(params))
        return None
    if not await verify_password_async(password, account.password_hash):
        return None
    if account.banned:
        return None
    if needs_rehash(account.password_hash, params):
        account.password_hash = await hash_password_async(password, params)
        await db.commit()
    return account


async def load_snapshot(
    db: AsyncSession,
    cache: TTLCache[AccountSnapshot],
    account_id: uuid.UUID | str,
) -> AccountSnapshot | None:
    key = str(account_id)

    async def _load() -> AccountSnapshot | None:
        account = await get_account(db, key)
        if account is None:
            return None
        return AccountSnapshot(
            id=account.id,
            username=account.username,
            groups=tuple(account.group_list),
            banned=bool(account.banned),
        )

    return await cache.get_or_load(key, _load)


async def record_login(db: AsyncSession, account: Account) -> None:
    now = _utcnow()
    if _should_update_last_login(account.last_login_at, now):
        account.last_login_at = now
        await db.commit()


async def change_password(
    db: AsyncSession,
    account: Account,
    *,
    current_password: str,
    new_password: str,
    params: ScryptParams,
    keep_jti: str | None = None,
) -> int:
    """Change a user's own password and revoke their other sessions.

    Returns the number of sessions revoked.
    """
    if account.password_hash and not await verify_password_async(current_password, account.password_hash):
        raise CredentialInvalid("Current password is incorrect")
    validate_new_password(new_password)
    account.password_hash = await hash_password_async(new_password, params)
    await db.commit()
    return await session_store.revoke_all_except(db, account.id, keep_jti, reason="password_changed")


async def set_password(db: AsyncSession, account: Account, new_password: str, *, params: ScryptParams) -> int:
    validate_new_password(new_password)
    account.password_hash = await hash_password_async(new_password, params)
    await db.commit()
    return await session_store.revoke_all_except(db, account.id, reason="password_reset")


async def set_banned(
    db: AsyncSession,
    cache: TTLCache[AccountSnapshot],
    account: Account,
    banned: bool,
) -> int:
    account.banned = banned
    await db.commit()
    cache.invalidate(str(account.id))
    if not banned:
        return 0
    return await session_store.revoke_all_except(db, account.id, reason="banned")


async def set_groups(
    db: AsyncSession,
    cache: TTLCache[AccountSnapshot],
    account: Account,
    groups: Iterable[str] | str,
) -> list[str]:
    normalized = normalize_groups(groups)
    account.groups = ",".join(normalized)
    await db.commit()
    cache.invalidate(str(account.id))
    return normalized


async def delete_account(db: AsyncSession, cache: TTLCache[AccountSnapshot], account: Account) -> None:
    account_id = account.id
    for model in (AuthSession, MfaSession, WebAuthnChallenge, WebAuthnCredential, ExternalIdentity):
        await db.execute(delete(model).where(model.account_id == account_id))
    await db.delete(account)
    await db.commit()
    cache.invalidate(str(account_id))


async def ensure_bootstrap_account(db: AsyncSession, settings_obj, params: ScryptParams) -> Account | None:
    """Create the configured administrator when the account table is empty."""
    if not settings_obj.bootstrap_username or not settings_obj.bootstrap_password:
        return None
    existing = (await db.execute(select(Account.id).limit(1))).scalar_one_or_none()
    if existing is not None:
        return None
    account = await create_account(
        db,
        username=settings_obj.bootstrap_username,
        password=settings_obj.bootstrap_password,
        groups=settings_obj.bootstrap_group_list,
        params=params,
    )
    logger.info("created bootstrap account %s", account.username)
    return account
