"""Session records, revocation, and the per-request gateway."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from reelgate.database import get_db
from reelgate.models.auth import AuthSession
from reelgate.services import session_store
from reelgate.tests.helpers import PASSWORD, csrf, enroll_totp, login


async def _only_session(db) -> AuthSession:
    db.expire_all()
    return (await db.execute(select(AuthSession))).scalars().one()


@pytest.mark.asyncio
async def test_revoked_session_is_rejected(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    await login(client, "alice", secret)
    assert (await client.get("/session")).status_code == 200

    record = await _only_session(db)
    await session_store.revoke_session(db, record.jti, reason="test")

    resp = await client.get("/session")
    assert resp.status_code == 401
    assert resp.json() == {"detail": "Authentication required"}


@pytest.mark.asyncio
async def test_bearer_token_is_accepted(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    resp = await login(client, "alice", secret)
    token = resp.cookies[ctx.cookies.session]
    client.cookies.clear()
    me = await client.get("/session", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200


@pytest.mark.asyncio
async def test_forged_token_is_rejected(client):
    resp = await client.get("/session", headers={"Authorization": "Bearer not.a.token"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_and_clears_cookies(client, db, ctx, account, audit_sink):
    secret = await enroll_totp(db, ctx, account)
    await login(client, "alice", secret)
    token = await csrf(client)

    resp = await client.post("/logout", headers={"X-CSRF-Token": token}, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"
    record = await _only_session(db)
    assert record.revoked_at is not None
    assert record.revoked_reason == "logout"
    assert "user.logout" in audit_sink.actions()
    assert (await client.get("/session")).status_code == 401


@pytest.mark.asyncio
async def test_touch_is_throttled(db, account):
    now = datetime.now(timezone.utc)
    await session_store.create_session(db, account_id=account.id, jti="j1", expires_at=now + timedelta(hours=1))

    assert not await session_store.touch_session(db, "j1", interval_seconds=60, now=now + timedelta(seconds=10))
    assert await session_store.touch_session(db, "j1", interval_seconds=60, now=now + timedelta(seconds=61))
    assert not await session_store.touch_session(db, "j1", interval_seconds=60, now=now + timedelta(seconds=90))


@pytest.mark.asyncio
async def test_expired_session_is_inactive_and_purged(db, account):
    now = datetime.now(timezone.utc)
    await session_store.create_session(db, account_id=account.id, jti="old", expires_at=now - timedelta(seconds=1))
    await session_store.create_session(db, account_id=account.id, jti="new", expires_at=now + timedelta(hours=1))

    assert not await session_store.is_session_active(db, "old")
    assert await session_store.is_session_active(db, "new")
    assert await session_store.purge_expired(db) == 1
    assert await session_store.get_session(db, "old") is None


@pytest.mark.asyncio
async def test_revoke_is_scoped_to_owner(db, account, admin_account):
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    await session_store.create_session(db, account_id=account.id, jti="mine", expires_at=expires)
    assert not await session_store.revoke_session(db, "mine", account_id=admin_account.id)
    assert await session_store.revoke_session(db, "mine", account_id=account.id)
    assert not await session_store.revoke_session(db, "mine")


def test_user_agent_labels():
    ua = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
    assert session_store.summarize_user_agent(ua) == "Chrome on Windows"
    assert session_store.summarize_user_agent(None) is None


async def _second_device(app, session_factory, secret):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    other = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
    await login(other, "alice", secret)
    return other


@pytest.mark.asyncio
async def test_revoke_others_keeps_current(app, client, session_factory, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    await login(client, "alice", secret)
    other = await _second_device(app, session_factory, secret)
    try:
        listing = (await client.get("/sessions")).json()
        assert len(listing) == 2
        assert sum(1 for s in listing if s["current"]) == 1

        token = await csrf(client)
        resp = await client.post("/sessions/revoke-others", headers={"X-CSRF-Token": token})
        assert resp.json() == {"revoked": 1}
        assert (await client.get("/session")).status_code == 200
        assert (await other.get("/session")).status_code == 401
    finally:
        await other.aclose()


@pytest.mark.asyncio
async def test_revoke_unknown_session_is_404(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    await login(client, "alice", secret)
    token = await csrf(client)
    resp = await client.post("/sessions/nope/revoke", headers={"X-CSRF-Token": token})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_password_change_revokes_other_sessions(app, client, session_factory, db, ctx, account, audit_sink):
    secret = await enroll_totp(db, ctx, account)
    await login(client, "alice", secret)
    other = await _second_device(app, session_factory, secret)
    try:
        token = await csrf(client)
        wrong = await client.post(
            "/account/password",
            json={"current_password": "wrong", "new_password": "a brand new password"},
            headers={"X-CSRF-Token": token},
        )
        assert wrong.status_code == 401

        resp = await client.post(
            "/account/password",
            json={"current_password": PASSWORD, "new_password": "a brand new password"},
            headers={"X-CSRF-Token": token},
        )
        assert resp.status_code == 200
        assert resp.json()["sessions_revoked"] == 1
        assert (await client.get("/session")).status_code == 200
        assert (await other.get("/session")).status_code == 401
        assert "user.password_changed" in audit_sink.actions()
    finally:
        await other.aclose()
