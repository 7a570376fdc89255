"""Helpers shared by the auth routers."""

from __future__ import annotations

from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from ..context import AuthContext
from ..errors import CredentialInvalid, Forbidden, LockedOut, RateLimited
from ..models.auth import Account
from ..security.cookies import clear_cookie, set_cookie
from ..services import mfa
from ..services.audit import client_ip


def caller_ip(request: Request) -> str:
    return client_ip(request) or "unknown"


def redirect_with_error(path: str, message: str, **params: str) -> RedirectResponse:
    query = urlencode({"error": message, **{k: v for k, v in params.items() if v}})
    return RedirectResponse(f"{path}?{query}", status_code=303)


def outcome_target(outcome: mfa.LoginOutcome) -> str:
    if outcome.state == mfa.LoginState.MFA_PENDING_VERIFY:
        return "/mfa"
    if outcome.state == mfa.LoginState.MFA_PENDING_SETUP:
        return "/mfa_setup"
    return outcome.return_to or "/"


def apply_outcome(response: Response, ctx: AuthContext, outcome: mfa.LoginOutcome) -> Response:
    """Set the cookies that carry a login attempt to its next step."""
    if outcome.state == mfa.LoginState.SESSION_ISSUED:
        set_cookie(response, ctx.settings, ctx.cookies.session, outcome.session_token, max_age=outcome.max_age)
        clear_cookie(response, ctx.settings, ctx.cookies.mfa_token)
    else:
        set_cookie(response, ctx.settings, ctx.cookies.mfa_token, outcome.mfa_token, max_age=outcome.mfa_ttl)
    return response


async def enforce_rate_limit(ctx: AuthContext, key: str, *, window_seconds: int, max_hits: int) -> None:
    result = await ctx.rate_limiter.check(key, window_seconds=window_seconds, max_hits=max_hits)
    if not result.ok:
        raise RateLimited(retry_after=result.retry_after)


async def require_reauth(
    db: AsyncSession,
    ctx: AuthContext,
    account: Account,
    code: str | None,
    request: Request,
) -> None:
    """Inline MFA check before a sensitive change, with its own lockout."""
    if not account.has_mfa:
        raise Forbidden("Set up two-factor authentication first.")
    key = f"reauth:{account.id}:{caller_ip(request)}"
    lock = await ctx.lockouts.check(key)
    if lock.locked:
        raise LockedOut(retry_after=lock.retry_after)
    if not mfa.reauthenticate(ctx, account, code):
        lock = await ctx.lockouts.record_failure(
            key,
            window_seconds=ctx.settings.mfa_lockout_window_seconds,
            max_failures=ctx.settings.mfa_lockout_max,
            ban_seconds=ctx.settings.mfa_lockout_ban_seconds,
        )
        if lock.locked:
            raise LockedOut(retry_after=lock.retry_after)
        raise CredentialInvalid("Invalid authentication code")
    await ctx.lockouts.clear(key)
