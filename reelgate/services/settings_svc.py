"""Runtime key/value settings backed by the ``setting`` table."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.auth import Setting
from ..security.cache import TTLCache

OTP_ENABLED = "auth.otp_enabled"
SESSION_MAX_AGE = "session_max_age"

_MISSING = ""


async def get_setting(db: AsyncSession, cache: TTLCache[str], key: str) -> str | None:
    async def _load() -> str:
        row = (await db.execute(select(Setting.value).where(Setting.key == key))).scalar_one_or_none()
        # Cache misses too, as the empty marker.
        return _MISSING if row is None else row

    value = await cache.get_or_load(key, _load)
    return None if value == _MISSING else value


async def get_setting_int(db: AsyncSession, cache: TTLCache[str], key: str, default: int) -> int:
    raw = await get_setting(db, cache, key)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


async def get_setting_bool(db: AsyncSession, cache: TTLCache[str], key: str, default: bool) -> bool:
    raw = await get_setting(db, cache, key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


async def set_setting(db: AsyncSession, cache: TTLCache[str], key: str, value: str) -> None:
    row = await db.get(Setting, key)
    if row is None:
        db.add(Setting(key=key, value=value))
    else:
        row.value = value
    await db.commit()
    cache.invalidate(key)
