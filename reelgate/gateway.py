"""Per-request authentication.

A request is authenticated only when all of these hold, in order: the token
verifies, its ``jti`` is an active session record, and the account still
exists and is not banned. Groups come from the account snapshot rather than
the token, so group changes apply without re-login.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from urllib.parse import urlsplit

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .context import AuthContext, get_auth
from .database import get_db
from .errors import Forbidden, InvalidChallenge, Unauthenticated
from .security.csrf import require_csrf
from .security.tokens import Invalid
from .services import accounts, session_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    account_id: uuid.UUID
    username: str
    groups: tuple[str, ...]
    jti: str

    @property
    def is_admin(self) -> bool:
        return accounts.is_admin_groups(self.groups)


def token_from_request(request: Request, ctx: AuthContext) -> str:
    cookie_token = request.cookies.get(ctx.cookies.session, "")
    if cookie_token:
        return cookie_token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


async def authenticate(request: Request, db: AsyncSession, ctx: AuthContext) -> Identity | Invalid:
    token = token_from_request(request, ctx)
    if not token:
        return Invalid("no token")
    claims = ctx.signer.verify(token)
    if not claims:
        return claims

    if not await session_store.is_session_active(db, claims.jti):
        logger.debug("session %s is revoked or expired", claims.jti[:8])
        return Invalid("session inactive")

    snapshot = await accounts.load_snapshot(db, ctx.account_cache, claims.account_id)
    if snapshot is None:
        return Invalid("account missing")
    if snapshot.banned:
        return Invalid("account banned")

    await session_store.touch_session(db, claims.jti, interval_seconds=ctx.settings.session_touch_interval_seconds)
    return Identity(
        account_id=snapshot.id,
        username=snapshot.username,
        groups=snapshot.groups,
        jti=claims.jti,
    )


async def optional_identity(request: Request, db: AsyncSession = Depends(get_db)) -> Identity | None:
    cached = getattr(request.state, "identity", None)
    if cached is not None:
        return cached
    result = await authenticate(request, db, get_auth(request))
    if not result:
        return None
    request.state.identity = result
    return result


async def current_identity(identity: Identity | None = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise Unauthenticated()
    return identity


def require_role(*groups: str):
    """Dependency factory: the caller must hold one of ``groups``. Admins always pass."""
    wanted = {g.lower() for g in groups}

    async def _dep(identity: Identity = Depends(current_identity)) -> Identity:
        if identity.is_admin or wanted.intersection(identity.groups):
            return identity
        raise Forbidden()

    return _dep


require_admin = require_role(*accounts.ADMIN_GROUPS)


async def csrf_protect(request: Request) -> None:
    ctx = get_auth(request)
    if not await require_csrf(request, ctx.cookies, ctx.settings):
        raise InvalidChallenge("Invalid request")


def sanitize_next_path(raw_next: str | None, home_path: str = "/") -> str:
    next_path = (raw_next or "").strip()
    if not next_path:
        return home_path
    if "\\" in next_path:
        return home_path
    parsed = urlsplit(next_path)
    if parsed.scheme or parsed.netloc:
        return home_path
    if not next_path.startswith("/") or next_path.startswith("//"):
        return home_path
    return next_path
