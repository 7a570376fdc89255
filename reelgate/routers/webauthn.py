"""Passkey registration, sign-in, and credential management."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..context import AuthContext, get_auth
from ..database import get_db
from ..gateway import Identity, csrf_protect, current_identity, sanitize_next_path
from ..schemas.auth import (
    CredentialRename,
    CredentialResponse,
    MfaCode,
    WebAuthnLoginOptions,
    WebAuthnLoginVerify,
    WebAuthnRegisterVerify,
)
from ..security.cookies import clear_cookie, set_cookie
from ..services import accounts, audit, mfa, webauthn_svc
from .common import apply_outcome, caller_ip, enforce_rate_limit, outcome_target, require_reauth

router = APIRouter(prefix="/webauthn", tags=["webauthn"], dependencies=[Depends(csrf_protect)])


def _challenge_response(ctx: AuthContext, challenge_id: str, options: dict) -> JSONResponse:
    response = JSONResponse(options, headers={"Cache-Control": "no-store"})
    set_cookie(
        response,
        ctx.settings,
        ctx.cookies.webauthn_challenge,
        challenge_id,
        max_age=ctx.settings.webauthn_challenge_ttl_seconds,
    )
    return response


async def _rate_limit(request: Request, ctx: AuthContext) -> None:
    await enforce_rate_limit(
        ctx,
        f"webauthn:{caller_ip(request)}",
        window_seconds=ctx.settings.webauthn_rate_window_seconds,
        max_hits=ctx.settings.webauthn_rate_max,
    )


async def _current_account(db: AsyncSession, identity: Identity):
    account = await accounts.get_account(db, identity.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.post("/register/options")
async def register_options(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _current_account(db, identity)
    challenge_id, options = await webauthn_svc.registration_options(db, ctx, account)
    return _challenge_response(ctx, challenge_id, options)


@router.post("/register/verify", response_model=CredentialResponse)
async def register_verify(
    body: WebAuthnRegisterVerify,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _current_account(db, identity)
    row = await webauthn_svc.verify_registration(
        db,
        ctx,
        account,
        challenge_id=request.cookies.get(ctx.cookies.webauthn_challenge),
        credential=body.credential,
        name=body.name,
    )
    await ctx.audit.emit(
        audit.USER_PASSKEY_ADDED,
        actor=account.username,
        target=account.username,
        request=request,
        credential=str(row.id),
    )
    response = JSONResponse(CredentialResponse.model_validate(row).model_dump(mode="json"))
    clear_cookie(response, ctx.settings, ctx.cookies.webauthn_challenge)
    return response


@router.post("/login/options")
async def login_options(
    request: Request,
    body: WebAuthnLoginOptions | None = None,
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    await _rate_limit(request, ctx)
    account = None
    if body and body.username:
        # Unknown usernames fall back to discoverable sign-in.
        account = await accounts.get_account_by_username(db, body.username)
    challenge_id, options = await webauthn_svc.authentication_options(db, ctx, account)
    return _challenge_response(ctx, challenge_id, options)


@router.post("/login/verify")
async def login_verify(
    body: WebAuthnLoginVerify,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    await _rate_limit(request, ctx)
    account = await webauthn_svc.verify_authentication(
        db,
        ctx,
        challenge_id=request.cookies.get(ctx.cookies.webauthn_challenge),
        credential=body.credential,
    )
    outcome = await mfa.complete_primary_factor(
        db,
        ctx,
        account,
        request=request,
        return_to=sanitize_next_path(body.next),
        method="passkey",
    )
    response = JSONResponse({"state": outcome.state.value, "redirect": outcome_target(outcome)})
    clear_cookie(response, ctx.settings, ctx.cookies.webauthn_challenge)
    return apply_outcome(response, ctx, outcome)


@router.get("/credentials", response_model=list[CredentialResponse])
async def list_credentials(
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    return await webauthn_svc.list_credentials(db, identity.account_id)


@router.post("/credentials/{credential_id}/rename")
async def rename_credential(
    credential_id: uuid.UUID,
    body: CredentialRename,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    if not await webauthn_svc.rename_credential(db, identity.account_id, credential_id, body.name):
        raise HTTPException(status_code=404, detail="Passkey not found")
    return {"status": "ok"}


@router.post("/credentials/{credential_id}/delete")
async def delete_credential(
    credential_id: uuid.UUID,
    body: MfaCode,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _current_account(db, identity)
    await require_reauth(db, ctx, account, body.code, request)
    if not await webauthn_svc.delete_credential(db, account.id, credential_id):
        raise HTTPException(status_code=404, detail="Passkey not found")
    await ctx.audit.emit(
        audit.USER_PASSKEY_REMOVED,
        actor=account.username,
        target=account.username,
        request=request,
        credential=str(credential_id),
    )
    return {"status": "ok"}
