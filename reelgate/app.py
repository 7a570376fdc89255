"""FastAPI application factory for Reelgate."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import AuthSettings, settings
from .context import AuthContext
from .errors import AuthError, Unauthenticated
from .security.cookies import clear_cookie

logger = logging.getLogger(__name__)


async def _auth_error_handler(request: Request, exc: AuthError):
    ctx: AuthContext = request.app.state.auth
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    response = JSONResponse({"detail": exc.public_message}, status_code=exc.status_code, headers=headers)
    if isinstance(exc, Unauthenticated):
        clear_cookie(response, ctx.settings, ctx.cookies.session)
    logger.debug("%s %s -> %s", request.method, request.url.path, type(exc).__name__)
    return response


def create_app(settings_obj: AuthSettings | None = None, *, context: AuthContext | None = None) -> FastAPI:
    settings_obj = settings_obj or settings

    from .database import async_session_factory, create_schema, session_scope

    ctx = context or AuthContext.from_settings(settings_obj, session_factory=async_session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Auto-create tables for SQLite (local dev)
        if "sqlite" in settings_obj.database_url:
            await create_schema()
        from .services import accounts, session_store

        async with session_scope() as db:
            await accounts.ensure_bootstrap_account(db, settings_obj, ctx.hasher_params)
            purged = await session_store.purge_expired(db)
        if purged:
            logger.info("purged %d expired sessions", purged)
        await ctx.handshakes.purge(settings_obj.handshake_max_age_seconds)
        yield

    app = FastAPI(title=settings_obj.app_title, lifespan=lifespan)
    app.state.auth = ctx
    app.add_exception_handler(AuthError, _auth_error_handler)
    if settings_obj.forwarded_allow_list:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings_obj.forwarded_allow_list)

    from .routers import admin, auth, health, sso, webauthn

    app.include_router(auth.router)
    app.include_router(sso.router)
    app.include_router(webauthn.router)
    app.include_router(admin.router)
    app.include_router(health.router)
    return app
