"""Server-side storage for in-flight SSO handshakes.

A record is written when the browser is sent to the provider and popped
exactly once when the provider redirects back. Records older than the
handshake window are rejected at pop time and removed by ``purge``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...models.auth import HandshakeState

logger = logging.getLogger(__name__)

PURPOSE_LOGIN = "login"
PURPOSE_LINK = "link"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HandshakeRecord:
    state: str
    provider: str
    purpose: str = PURPOSE_LOGIN
    account_id: str | None = None
    nonce: str | None = None
    login_hint: str | None = None
    return_to: str = "/"
    issued_at: datetime = field(default_factory=_utcnow)

    def is_fresh(self, max_age_seconds: int, *, now: datetime | None = None) -> bool:
        issued = self.issued_at if self.issued_at.tzinfo else self.issued_at.replace(tzinfo=timezone.utc)
        return (now or _utcnow()) - issued <= timedelta(seconds=max_age_seconds)


class HandshakeStore(Protocol):
    async def put(self, record: HandshakeRecord) -> None: ...

    async def pop(self, state: str) -> HandshakeRecord | None: ...

    async def purge(self, max_age_seconds: int) -> int: ...


class InMemoryHandshakeStore:
    """Single-process store. State is lost on restart."""

    def __init__(self) -> None:
        self._records: dict[str, HandshakeRecord] = {}
        self._lock = asyncio.Lock()

    async def put(self, record: HandshakeRecord) -> None:
        async with self._lock:
            self._records[record.state] = record

    async def pop(self, state: str) -> HandshakeRecord | None:
        async with self._lock:
            return self._records.pop(state, None)

    async def purge(self, max_age_seconds: int) -> int:
        now = _utcnow()
        async with self._lock:
            stale = [k for k, r in self._records.items() if not r.is_fresh(max_age_seconds, now=now)]
            for key in stale:
                del self._records[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


class SqlHandshakeStore:
    """Database-backed store shared by every worker process."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def put(self, record: HandshakeRecord) -> None:
        async with self._session_factory() as db:
            db.add(
                HandshakeState(
                    state=record.state,
                    provider=record.provider,
                    purpose=record.purpose,
                    account_id=record.account_id,
                    nonce=record.nonce,
                    login_hint=record.login_hint,
                    return_to=record.return_to,
                    issued_at=record.issued_at,
                )
            )
            await db.commit()

    async def pop(self, state: str) -> HandshakeRecord | None:
        async with self._session_factory() as db:
            row = (await db.execute(select(HandshakeState).where(HandshakeState.state == state))).scalar_one_or_none()
            if row is None:
                return None
            record = HandshakeRecord(
                state=row.state,
                provider=row.provider,
                purpose=row.purpose,
                account_id=row.account_id,
                nonce=row.nonce,
                login_hint=row.login_hint,
                return_to=row.return_to,
                issued_at=row.issued_at,
            )
            result = await db.execute(delete(HandshakeState).where(HandshakeState.state == state))
            await db.commit()
            # A concurrent callback already claimed it.
            if (result.rowcount or 0) != 1:
                return None
            return record

    async def purge(self, max_age_seconds: int) -> int:
        cutoff = _utcnow() - timedelta(seconds=max_age_seconds)
        async with self._session_factory() as db:
            result = await db.execute(delete(HandshakeState).where(HandshakeState.issued_at < cutoff))
            await db.commit()
            removed = int(result.rowcount or 0)
        if removed:
            logger.debug("purged %d stale SSO handshakes", removed)
        return removed
