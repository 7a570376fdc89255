"""Durable session records: the source of truth for revocation."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Request
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.auth import AuthSession
from .audit import client_ip


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DeviceMeta:
    ip_address: str | None = None
    user_agent: str | None = None
    label: str | None = None

    @classmethod
    def from_request(cls, request: Request | None) -> DeviceMeta:
        if request is None:
            return cls()
        user_agent = request.headers.get("user-agent", "")[:512] or None
        return cls(
            ip_address=client_ip(request),
            user_agent=user_agent,
            label=summarize_user_agent(user_agent),
        )


_BROWSERS = (
    ("Edge", re.compile(r"Edg/")),
    ("Opera", re.compile(r"OPR/")),
    ("Firefox", re.compile(r"Firefox/")),
    ("Chrome", re.compile(r"Chrome/")),
    ("Safari", re.compile(r"Safari/")),
)
_PLATFORMS = (
    ("iOS", re.compile(r"iPhone|iPad")),
    ("Android", re.compile(r"Android")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("Linux", re.compile(r"Linux")),
)


def summarize_user_agent(user_agent: str | None) -> str | None:
    """Best-effort "Browser on Platform" label for the session list."""
    if not user_agent:
        return None
    browser = next((name for name, rx in _BROWSERS if rx.search(user_agent)), None)
    platform = next((name for name, rx in _PLATFORMS if rx.search(user_agent)), None)
    if browser and platform:
        return f"{browser} on {platform}"
    return browser or platform or "Unknown device"


def new_jti() -> str:
    return uuid.uuid4().hex


async def create_session(
    db: AsyncSession,
    *,
    account_id: uuid.UUID,
    jti: str,
    expires_at: datetime,
    device: DeviceMeta | None = None,
) -> AuthSession:
    device = device or DeviceMeta()
    now = _utcnow()
    row = AuthSession(
        jti=jti,
        account_id=account_id,
        expires_at=expires_at,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        device_label=device.label,
        last_seen_at=now,
        created_at=now,
    )
    db.add(row)
    await db.commit()
    await db.refresh(row)
    return row


def _active_clause(now: datetime):
    return (AuthSession.revoked_at.is_(None), AuthSession.expires_at > now)


async def is_session_active(db: AsyncSession, jti: str, *, now: datetime | None = None) -> bool:
    if not jti:
        return False
    now = now or _utcnow()
    stmt = select(func.count(AuthSession.id)).where(AuthSession.jti == jti, *_active_clause(now))
    return int((await db.execute(stmt)).scalar_one() or 0) > 0


async def get_session(db: AsyncSession, jti: str) -> AuthSession | None:
    return (await db.execute(select(AuthSession).where(AuthSession.jti == jti))).scalar_one_or_none()


async def touch_session(
    db: AsyncSession,
    jti: str,
    *,
    interval_seconds: int = 60,
    now: datetime | None = None,
) -> bool:
    """Bump last_seen_at at most once per ``interval_seconds``."""
    now = now or _utcnow()
    threshold = now - timedelta(seconds=max(0, interval_seconds))
    stmt = (
        update(AuthSession)
        .where(
            AuthSession.jti == jti,
            AuthSession.revoked_at.is_(None),
            AuthSession.last_seen_at <= threshold,
        )
        .values(last_seen_at=now)
    )
    result = await db.execute(stmt)
    await db.commit()
    return (result.rowcount or 0) > 0


async def revoke_session(
    db: AsyncSession,
    jti: str,
    *,
    reason: str = "logout",
    account_id: uuid.UUID | None = None,
) -> bool:
    """Revoke one session. ``account_id`` restricts it to the owner's sessions."""
    conditions = [AuthSession.jti == jti, AuthSession.revoked_at.is_(None)]
    if account_id is not None:
        conditions.append(AuthSession.account_id == account_id)
    stmt = update(AuthSession).where(*conditions).values(revoked_at=_utcnow(), revoked_reason=reason[:64])
    result = await db.execute(stmt)
    await db.commit()
    return (result.rowcount or 0) > 0


async def list_sessions_for_account(
    db: AsyncSession,
    account_id: uuid.UUID,
    *,
    include_inactive: bool = False,
    now: datetime | None = None,
) -> list[AuthSession]:
    stmt = select(AuthSession).where(AuthSession.account_id == account_id)
    if not include_inactive:
        stmt = stmt.where(*_active_clause(now or _utcnow()))
    stmt = stmt.order_by(AuthSession.last_seen_at.desc())
    return list((await db.execute(stmt)).scalars().all())


async def revoke_all_except(
    db: AsyncSession,
    account_id: uuid.UUID,
    keep_jti: str | None = None,
    *,
    reason: str = "revoke_all",
) -> int:
    conditions = [AuthSession.account_id == account_id, AuthSession.revoked_at.is_(None)]
    if keep_jti:
        conditions.append(AuthSession.jti != keep_jti)
    stmt = update(AuthSession).where(*conditions).values(revoked_at=_utcnow(), revoked_reason=reason[:64])
    result = await db.execute(stmt)
    await db.commit()
    return int(result.rowcount or 0)


async def purge_expired(
    db: AsyncSession,
    *,
    now: datetime | None = None,
    revoked_grace: timedelta = timedelta(days=7),
) -> int:
    """Delete expired rows and rows revoked longer than ``revoked_grace`` ago."""
    now = now or _utcnow()
    stmt = delete(AuthSession).where(
        or_(
            AuthSession.expires_at <= now,
            AuthSession.revoked_at <= now - revoked_grace,
        )
    )
    result = await db.execute(stmt)
    await db.commit()
    return int(result.rowcount or 0)


async def delete_revoked(db: AsyncSession, account_id: uuid.UUID | None = None) -> int:
    stmt = delete(AuthSession).where(AuthSession.revoked_at.is_not(None))
    if account_id is not None:
        stmt = stmt.where(AuthSession.account_id == account_id)
    result = await db.execute(stmt)
    await db.commit()
    return int(result.rowcount or 0)
