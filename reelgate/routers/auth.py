"""Password login, TOTP steps, logout, and self-service session routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..context import get_auth
from ..database import get_db
from ..errors import CredentialInvalid, InvalidChallenge, LockedOut, ProviderUnavailable, RateLimited
from ..gateway import Identity, csrf_protect, current_identity, sanitize_next_path
from ..schemas.auth import PasswordChange, SessionInfo, SessionRecordResponse
from ..security.cookies import clear_auth_cookies, clear_cookie, set_cookie
from ..security.csrf import CSRF_COOKIE_MAX_AGE, ensure_csrf_cookie, new_csrf_token, require_csrf
from ..services import accounts, audit, mfa, session_store
from ..services.sso.handshake import end_session_url
from .common import apply_outcome, caller_ip, outcome_target, redirect_with_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

GENERIC_LOGIN_ERROR = CredentialInvalid.public_message


@router.get("/csrf")
async def csrf_token(request: Request):
    ctx = get_auth(request)
    token = request.cookies.get(ctx.cookies.csrf, "")
    if token:
        return {"csrf_token": token}
    token = new_csrf_token()
    response = JSONResponse({"csrf_token": token})
    set_cookie(response, ctx.settings, ctx.cookies.csrf, token, max_age=CSRF_COOKIE_MAX_AGE, http_only=False)
    return response


@router.post("/login")
async def login_submit(request: Request, db: AsyncSession = Depends(get_db)):
    ctx = get_auth(request)
    form = await request.form()
    username = str(form.get("username", "")).strip()
    password = str(form.get("password", ""))
    next_path = sanitize_next_path(str(form.get("next", "") or form.get("from", "")))

    if not await require_csrf(request, ctx.cookies, ctx.settings):
        return redirect_with_error("/login", "Invalid request", **{"from": next_path})

    ip = caller_ip(request)
    rate = await ctx.rate_limiter.check(
        f"login:{ip}",
        window_seconds=ctx.settings.login_rate_window_seconds,
        max_hits=ctx.settings.login_rate_max,
    )
    if not rate.ok:
        return redirect_with_error("/login", RateLimited.public_message, **{"from": next_path})

    lock_key = f"login:{accounts.username_key(username)}:{ip}"
    lock = await ctx.lockouts.check(lock_key)
    if lock.locked:
        return redirect_with_error("/login", LockedOut.public_message, **{"from": next_path})

    account = await accounts.authenticate_password(db, username, password, params=ctx.hasher_params)
    if account is None:
        lock = await ctx.lockouts.record_failure(
            lock_key,
            window_seconds=ctx.settings.login_lockout_window_seconds,
            max_failures=ctx.settings.login_lockout_max,
            ban_seconds=ctx.settings.login_lockout_ban_seconds,
        )
        await ctx.audit.emit(
            audit.USER_LOGIN_FAILED,
            target=accounts.username_key(username) or None,
            request=request,
            method="password",
        )
        message = LockedOut.public_message if lock.locked else GENERIC_LOGIN_ERROR
        return redirect_with_error("/login", message, **{"from": next_path})

    await ctx.lockouts.clear(lock_key)
    outcome = await mfa.complete_primary_factor(
        db, ctx, account, request=request, return_to=next_path, method="password"
    )
    response = RedirectResponse(outcome_target(outcome), status_code=303)
    return apply_outcome(response, ctx, outcome)


async def _pending_or_redirect(request: Request, db: AsyncSession, kind: str):
    ctx = get_auth(request)
    row = await mfa.get_pending(db, request.cookies.get(ctx.cookies.mfa_token), kind)
    if row is None:
        response = redirect_with_error("/login", "Your sign-in has expired. Please sign in again.")
        clear_cookie(response, ctx.settings, ctx.cookies.mfa_token)
        return None, response
    return row, None


@router.get("/mfa")
async def mfa_page(request: Request, db: AsyncSession = Depends(get_db)):
    ctx = get_auth(request)
    row, redirect = await _pending_or_redirect(request, db, mfa.KIND_VERIFY)
    if redirect:
        return redirect
    response = JSONResponse({"state": mfa.LoginState.MFA_PENDING_VERIFY.value, "expires_at": row.expires_at.isoformat()})
    ensure_csrf_cookie(request, response, ctx.cookies, ctx.settings)
    return response


@router.get("/mfa_setup")
async def mfa_setup_page(request: Request, db: AsyncSession = Depends(get_db)):
    ctx = get_auth(request)
    row, redirect = await _pending_or_redirect(request, db, mfa.KIND_SETUP)
    if redirect:
        return redirect
    details = await mfa.setup_details(db, ctx, row.token)
    response = JSONResponse(
        {
            "state": mfa.LoginState.MFA_PENDING_SETUP.value,
            "secret": details.secret,
            "provisioning_uri": details.provisioning_uri,
        },
        headers={"Cache-Control": "no-store"},
    )
    ensure_csrf_cookie(request, response, ctx.cookies, ctx.settings)
    return response


async def _submit_code(request: Request, db: AsyncSession, kind: str, page: str):
    ctx = get_auth(request)
    form = await request.form()
    code = str(form.get("code", ""))
    if not await require_csrf(request, ctx.cookies, ctx.settings):
        return redirect_with_error(page, "Invalid request")

    ip = caller_ip(request)
    rate = await ctx.rate_limiter.check(
        f"mfa:{ip}",
        window_seconds=ctx.settings.mfa_rate_window_seconds,
        max_hits=ctx.settings.mfa_rate_max,
    )
    if not rate.ok:
        return redirect_with_error(page, RateLimited.public_message)

    token = request.cookies.get(ctx.cookies.mfa_token, "")
    lock_key = f"mfa:{token}:{ip}"
    lock = await ctx.lockouts.check(lock_key)
    if lock.locked:
        return redirect_with_error(page, LockedOut.public_message)

    try:
        outcome = await mfa.submit_code(db, ctx, token=token, code=code, kind=kind, request=request)
    except InvalidChallenge as exc:
        await ctx.lockouts.clear(lock_key)
        response = redirect_with_error("/login", exc.public_message)
        clear_cookie(response, ctx.settings, ctx.cookies.mfa_token)
        return response
    except CredentialInvalid as exc:
        lock = await ctx.lockouts.record_failure(
            lock_key,
            window_seconds=ctx.settings.mfa_lockout_window_seconds,
            max_failures=ctx.settings.mfa_lockout_max,
            ban_seconds=ctx.settings.mfa_lockout_ban_seconds,
        )
        return redirect_with_error(page, LockedOut.public_message if lock.locked else exc.public_message)

    await ctx.lockouts.clear(lock_key)
    response = RedirectResponse(outcome_target(outcome), status_code=303)
    return apply_outcome(response, ctx, outcome)


@router.post("/mfa")
async def mfa_submit(request: Request, db: AsyncSession = Depends(get_db)):
    return await _submit_code(request, db, mfa.KIND_VERIFY, "/mfa")


@router.post("/mfa_setup")
async def mfa_setup_submit(request: Request, db: AsyncSession = Depends(get_db)):
    return await _submit_code(request, db, mfa.KIND_SETUP, "/mfa_setup")


async def _logout(request: Request, db: AsyncSession):
    ctx = get_auth(request)
    token = request.cookies.get(ctx.cookies.session, "")
    claims = ctx.signer.verify(token) if token else None
    if claims:
        if await session_store.revoke_session(db, claims.jti, reason="logout"):
            await ctx.audit.emit(audit.USER_LOGOUT, actor=claims.username, target=claims.username, request=request)

    target = "/login"
    if claims and "oidc" in ctx.providers:
        try:
            provider_logout = await end_session_url(
                ctx, post_logout_redirect_uri=f"{ctx.settings.app_base_url.rstrip('/')}/login"
            )
        except ProviderUnavailable:
            logger.warning("provider logout URL unavailable; logging out locally only")
            provider_logout = None
        target = provider_logout or target

    response = RedirectResponse(target, status_code=303)
    clear_auth_cookies(response, ctx.settings, ctx.cookies)
    return response


@router.get("/logout")
async def logout_get(request: Request, db: AsyncSession = Depends(get_db)):
    return await _logout(request, db)


@router.post("/logout", dependencies=[Depends(csrf_protect)])
async def logout_post(request: Request, db: AsyncSession = Depends(get_db)):
    return await _logout(request, db)


@router.get("/session", response_model=SessionInfo)
async def session_info(identity: Identity = Depends(current_identity)):
    return SessionInfo(
        account_id=identity.account_id,
        username=identity.username,
        groups=list(identity.groups),
        is_admin=identity.is_admin,
        jti=identity.jti,
    )


@router.get("/sessions", response_model=list[SessionRecordResponse])
async def my_sessions(
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    rows = await session_store.list_sessions_for_account(db, identity.account_id)
    return [
        SessionRecordResponse.model_validate(row).model_copy(update={"current": row.jti == identity.jti})
        for row in rows
    ]


@router.post("/sessions/revoke-others", dependencies=[Depends(csrf_protect)])
async def revoke_other_sessions(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    revoked = await session_store.revoke_all_except(db, identity.account_id, identity.jti, reason="user_revoked")
    await ctx.audit.emit(
        audit.USER_SESSIONS_REVOKED,
        actor=identity.username,
        target=identity.username,
        request=request,
        count=revoked,
    )
    return {"revoked": revoked}


@router.post("/sessions/{jti}/revoke", dependencies=[Depends(csrf_protect)])
async def revoke_my_session(
    jti: str,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    if not await session_store.revoke_session(db, jti, reason="user_revoked", account_id=identity.account_id):
        raise HTTPException(status_code=404, detail="Session not found")
    await ctx.audit.emit(
        audit.USER_SESSIONS_REVOKED,
        actor=identity.username,
        target=identity.username,
        request=request,
        count=1,
    )
    response = JSONResponse({"revoked": 1})
    if jti == identity.jti:
        clear_auth_cookies(response, ctx.settings, ctx.cookies, include_csrf=False)
    return response


@router.post("/account/password", dependencies=[Depends(csrf_protect)])
async def change_password(
    body: PasswordChange,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await accounts.get_account(db, identity.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    try:
        revoked = await accounts.change_password(
            db,
            account,
            current_password=body.current_password,
            new_password=body.new_password,
            params=ctx.hasher_params,
            keep_jti=identity.jti,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await ctx.audit.emit(
        audit.USER_PASSWORD_CHANGED,
        actor=identity.username,
        target=identity.username,
        request=request,
        sessions_revoked=revoked,
    )
    return {"status": "ok", "sessions_revoked": revoked}

