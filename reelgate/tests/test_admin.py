"""Administrator routes."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from reelgate.models.auth import Account
from reelgate.tests.helpers import PASSWORD, csrf, enroll_totp, login


@pytest_asyncio.fixture
async def alice_client(app, client, db, ctx, account):
    """A second client signed in as the regular user; ``client`` is the admin's."""
    secret = await enroll_totp(db, ctx, account)
    c = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
    await login(c, "alice", secret)
    yield c
    await c.aclose()


@pytest_asyncio.fixture
async def admin_client(client, db, ctx, admin_account):
    secret = await enroll_totp(db, ctx, admin_account)
    await login(client, "root", secret)
    client.headers["X-CSRF-Token"] = await csrf(client)
    return client


@pytest.mark.asyncio
async def test_non_admin_is_forbidden(alice_client, admin_account):
    token = await csrf(alice_client)
    resp = await alice_client.post(
        f"/admin/accounts/{admin_account.id}/ban",
        headers={"X-CSRF-Token": token},
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_anonymous_is_unauthenticated(client, account):
    token = await csrf(client)
    resp = await client.get(f"/admin/accounts/{account.id}/sessions", headers={"X-CSRF-Token": token})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_ban_revokes_sessions_immediately(admin_client, alice_client, account, audit_sink):
    assert (await alice_client.get("/session")).status_code == 200

    resp = await admin_client.post(f"/admin/accounts/{account.id}/ban")
    assert resp.status_code == 200
    assert resp.json() == {"banned": True, "sessions_revoked": 1}
    assert (await alice_client.get("/session")).status_code == 401
    assert "user.banned" in audit_sink.actions()

    sessions = (await admin_client.get(f"/admin/accounts/{account.id}/sessions")).json()
    assert sessions[0]["revoked_reason"] == "banned"


@pytest.mark.asyncio
async def test_banned_account_cannot_log_in(app, admin_client, account):
    await admin_client.post(f"/admin/accounts/{account.id}/ban")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        token = await csrf(c)
        resp = await c.post(
            "/login",
            data={"username": "alice", "password": PASSWORD, "csrf_token": token},
            follow_redirects=False,
        )
        assert resp.headers["location"].startswith("/login?error=")


@pytest.mark.asyncio
async def test_cannot_ban_self(admin_client, admin_account):
    resp = await admin_client.post(f"/admin/accounts/{admin_account.id}/ban")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_group_change_applies_without_relogin(admin_client, alice_client, account):
    resp = await admin_client.post(
        f"/admin/accounts/{account.id}/groups",
        json={"groups": ["Users", "Requesters", "users"]},
    )
    assert resp.json() == {"groups": ["requesters", "users"]}
    assert (await alice_client.get("/session")).json()["groups"] == ["requesters", "users"]


@pytest.mark.asyncio
async def test_mfa_reset_forces_setup(admin_client, db, account, audit_sink):
    resp = await admin_client.post(f"/admin/accounts/{account.id}/mfa/reset")
    assert resp.status_code == 200
    db.expire_all()
    assert (await db.get(Account, account.id)).mfa_secret_encrypted is None
    assert "user.mfa_reset" in audit_sink.actions()


@pytest.mark.asyncio
async def test_revoke_single_session(admin_client, alice_client, account):
    sessions = (await admin_client.get(f"/admin/accounts/{account.id}/sessions")).json()
    jti = sessions[0]["jti"]
    resp = await admin_client.post(f"/admin/sessions/{jti}/revoke")
    assert resp.json() == {"revoked": 1}
    assert (await alice_client.get("/session")).status_code == 401

    again = await admin_client.post(f"/admin/sessions/{jti}/revoke")
    assert again.status_code == 404

    purged = await admin_client.delete("/admin/sessions/revoked")
    assert purged.json()["deleted"] >= 1


@pytest.mark.asyncio
async def test_delete_account(admin_client, alice_client, db, account):
    resp = await admin_client.delete(f"/admin/accounts/{account.id}")
    assert resp.status_code == 200
    db.expire_all()
    assert await db.get(Account, account.id) is None
    assert (await alice_client.get("/session")).status_code == 401
