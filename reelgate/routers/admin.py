"""Administrator routes: sessions, bans, groups, MFA reset."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..context import get_auth
from ..database import get_db
from ..gateway import Identity, csrf_protect, require_admin
from ..models.auth import Account
from ..schemas.auth import GroupsUpdate, SessionRecordResponse
from ..services import accounts, audit, mfa, session_store

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(csrf_protect)])


async def _account_or_404(db: AsyncSession, account_id: uuid.UUID) -> Account:
    account = await accounts.get_account(db, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.get("/accounts/{account_id}/sessions", response_model=list[SessionRecordResponse])
async def account_sessions(
    account_id: uuid.UUID,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _account_or_404(db, account_id)
    return await session_store.list_sessions_for_account(db, account_id, include_inactive=True)


@router.post("/sessions/{jti}/revoke")
async def revoke_session(
    jti: str,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    record = await session_store.get_session(db, jti)
    if record is None or not await session_store.revoke_session(db, jti, reason="admin_revoked"):
        raise HTTPException(status_code=404, detail="Session not found")
    account = await accounts.get_account(db, record.account_id)
    await ctx.audit.emit(
        audit.USER_SESSIONS_REVOKED,
        actor=admin.username,
        target=account.username if account else str(record.account_id),
        request=request,
        count=1,
    )
    return {"revoked": 1}


@router.post("/accounts/{account_id}/sessions/revoke")
async def revoke_account_sessions(
    account_id: uuid.UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _account_or_404(db, account_id)
    revoked = await session_store.revoke_all_except(db, account.id, reason="admin_revoked")
    await ctx.audit.emit(
        audit.USER_SESSIONS_REVOKED,
        actor=admin.username,
        target=account.username,
        request=request,
        count=revoked,
    )
    return {"revoked": revoked}


@router.delete("/sessions/revoked")
async def purge_revoked_sessions(
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"deleted": await session_store.delete_revoked(db)}


async def _set_banned(request: Request, db: AsyncSession, admin: Identity, account_id: uuid.UUID, banned: bool):
    ctx = get_auth(request)
    account = await _account_or_404(db, account_id)
    if banned and account.id == admin.account_id:
        raise HTTPException(status_code=400, detail="You cannot ban yourself")
    revoked = await accounts.set_banned(db, ctx.account_cache, account, banned)
    await ctx.audit.emit(
        audit.USER_BANNED if banned else audit.USER_UNBANNED,
        actor=admin.username,
        target=account.username,
        request=request,
        sessions_revoked=revoked,
    )
    return {"banned": banned, "sessions_revoked": revoked}


@router.post("/accounts/{account_id}/ban")
async def ban_account(
    account_id: uuid.UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _set_banned(request, db, admin, account_id, True)


@router.post("/accounts/{account_id}/unban")
async def unban_account(
    account_id: uuid.UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _set_banned(request, db, admin, account_id, False)


@router.post("/accounts/{account_id}/groups")
async def update_groups(
    account_id: uuid.UUID,
    body: GroupsUpdate,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _account_or_404(db, account_id)
    before = account.group_list
    groups = await accounts.set_groups(db, ctx.account_cache, account, body.groups)
    await ctx.audit.emit(
        audit.USER_UPDATED,
        actor=admin.username,
        target=account.username,
        request=request,
        groups_before=before,
        groups_after=groups,
    )
    return {"groups": groups}


@router.post("/accounts/{account_id}/mfa/reset")
async def reset_account_mfa(
    account_id: uuid.UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _account_or_404(db, account_id)
    await mfa.reset_mfa(db, account)
    await ctx.audit.emit(audit.USER_MFA_RESET, actor=admin.username, target=account.username, request=request)
    return {"status": "ok"}


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: uuid.UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_auth(request)
    account = await _account_or_404(db, account_id)
    if account.id == admin.account_id:
        raise HTTPException(status_code=400, detail="You cannot delete yourself")
    username = account.username
    await accounts.delete_account(db, ctx.account_cache, account)
    await ctx.audit.emit(audit.USER_DELETED, actor=admin.username, target=username, request=request)
    return {"status": "ok"}
