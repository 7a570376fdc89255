"""Single sign-on routes: start, callback, link, unlink."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..context import AuthContext, get_auth
from ..database import get_db
from ..errors import AuthError, CredentialInvalid, RateLimited
from ..gateway import Identity, authenticate, csrf_protect, current_identity, sanitize_next_path
from ..models.auth import WebAuthnCredential
from ..schemas.auth import ProviderLink
from ..security.cookies import clear_cookie, set_cookie
from ..services import accounts, audit, mfa
from ..services.sso import handshake, linking
from ..services.sso.handshake import HandshakeStart
from ..services.sso.store import PURPOSE_LINK
from .common import apply_outcome, caller_ip, enforce_rate_limit, redirect_with_error, require_reauth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sso", tags=["sso"])


def _set_handshake_cookies(response, ctx: AuthContext, start: HandshakeStart):
    set_cookie(response, ctx.settings, ctx.cookies.oauth_state, start.state, max_age=start.max_age)
    if start.code_verifier:
        set_cookie(response, ctx.settings, ctx.cookies.oauth_verifier, start.code_verifier, max_age=start.max_age)
    else:
        clear_cookie(response, ctx.settings, ctx.cookies.oauth_verifier)
    return response


def _clear_handshake_cookies(response, ctx: AuthContext):
    for name in ctx.cookies.handshake():
        clear_cookie(response, ctx.settings, name)
    return response


@router.get("/providers")
async def list_providers(request: Request):
    ctx = get_auth(request)
    return [
        {"name": p.name, "display_name": p.display_name, "requires_login_hint": p.requires_login_hint}
        for p in ctx.providers.values()
    ]


@router.get("/login")
async def sso_login(
    request: Request,
    provider: str = "oidc",
    login_hint: str | None = None,
    from_path: str | None = Query(None, alias="from"),
):
    ctx = get_auth(request)
    return_to = sanitize_next_path(from_path)
    rate = await ctx.rate_limiter.check(
        f"sso:{caller_ip(request)}",
        window_seconds=ctx.settings.sso_rate_window_seconds,
        max_hits=ctx.settings.sso_login_rate_max,
    )
    if not rate.ok:
        return redirect_with_error("/login", RateLimited.public_message)

    try:
        adapter = handshake.get_provider(ctx, provider)
        start = await handshake.start_login(
            ctx,
            adapter,
            return_to=return_to,
            login_hint=(login_hint or "").strip() or None,
        )
    except AuthError as exc:
        logger.info("sso start for %s failed: %s", provider, exc)
        return redirect_with_error("/login", exc.public_message)

    response = RedirectResponse(start.redirect_url, status_code=303)
    return _set_handshake_cookies(response, ctx, start)


@router.get("/callback")
async def sso_callback(request: Request, db: AsyncSession = Depends(get_db)):
    ctx = get_auth(request)
    params = request.query_params

    rate = await ctx.rate_limiter.check(
        f"sso_callback:{caller_ip(request)}",
        window_seconds=ctx.settings.sso_rate_window_seconds,
        max_hits=ctx.settings.sso_callback_rate_max,
    )
    if not rate.ok:
        return _clear_handshake_cookies(redirect_with_error("/login", RateLimited.public_message), ctx)
    if params.get("error"):
        logger.info("provider returned error %s", params.get("error"))
        return _clear_handshake_cookies(redirect_with_error("/login", "Sign-in was cancelled."), ctx)

    try:
        result = await handshake.handle_callback(
            ctx,
            code=params.get("code") or params.get("duo_code"),
            state=params.get("state"),
            state_cookie=request.cookies.get(ctx.cookies.oauth_state),
            verifier_cookie=request.cookies.get(ctx.cookies.oauth_verifier),
        )
        if result.record.purpose == PURPOSE_LINK:
            response = await _finish_link(request, db, ctx, result)
        else:
            account = await linking.resolve_login(db, ctx, result.profile, request=request)
            # The provider performed its own second factor.
            outcome = await mfa.issue_session(db, ctx, account, request=request, return_to=result.record.return_to)
            await ctx.audit.emit(
                audit.USER_LOGIN,
                actor=account.username,
                target=account.username,
                request=request,
                method=result.profile.provider,
            )
            response = apply_outcome(RedirectResponse(outcome.return_to, status_code=303), ctx, outcome)
    except AuthError as exc:
        logger.info("sso callback rejected: %s", exc)
        return _clear_handshake_cookies(redirect_with_error("/login", exc.public_message), ctx)

    return _clear_handshake_cookies(response, ctx)


async def _finish_link(request: Request, db: AsyncSession, ctx: AuthContext, result: handshake.CallbackResult):
    identity = await authenticate(request, db, ctx)
    if not identity or str(identity.account_id) != result.record.account_id:
        raise CredentialInvalid("Sign in to the account you are linking first.")
    account = await accounts.get_account(db, identity.account_id)
    if account is None:
        raise CredentialInvalid("Sign in to the account you are linking first.")
    await linking.link_identity(db, ctx, account, result.profile, request=request)
    return RedirectResponse(result.record.return_to or "/", status_code=303)


@router.post("/link", dependencies=[Depends(csrf_protect)])
async def sso_link(
    body: ProviderLink,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Start a handshake that links a provider to the signed-in account."""
    ctx = get_auth(request)
    await enforce_rate_limit(
        ctx,
        f"sso:{caller_ip(request)}",
        window_seconds=ctx.settings.sso_rate_window_seconds,
        max_hits=ctx.settings.sso_login_rate_max,
    )
    account = await accounts.get_account(db, identity.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    await require_reauth(db, ctx, account, body.code, request)

    adapter = handshake.get_provider(ctx, body.provider)
    start = await handshake.start_login(
        ctx,
        adapter,
        return_to="/",
        purpose=PURPOSE_LINK,
        account_id=str(account.id),
        login_hint=body.login_hint or account.username,
    )
    response = JSONResponse({"redirect_url": start.redirect_url})
    return _set_handshake_cookies(response, ctx, start)


@router.post("/unlink", dependencies=[Depends(csrf_protect)])
async def sso_unlink(
    body: ProviderLink,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await accounts.get_account(db, identity.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    await require_reauth(db, ctx, account, body.code, request)

    provider = body.provider.strip().lower()
    identities = await linking.list_identities(db, account.id)
    if not any(i.provider == provider for i in identities):
        raise HTTPException(status_code=404, detail="No linked sign-in for that provider")
    has_passkey = (
        await db.execute(select(WebAuthnCredential.id).where(WebAuthnCredential.account_id == account.id).limit(1))
    ).scalar_one_or_none() is not None
    if not account.password_hash and not has_passkey and len(identities) <= 1:
        raise HTTPException(status_code=400, detail="This is the only way to sign in to this account")

    await linking.unlink_identity(db, account, provider)
    await ctx.audit.emit(
        audit.USER_IDENTITY_UNLINKED,
        actor=account.username,
        target=account.username,
        request=request,
        provider=provider,
    )
    return {"status": "ok"}
