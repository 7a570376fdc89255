"""Password login through the TOTP steps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pyotp
import pytest
from sqlalchemy import func, select, update

from reelgate.errors import InvalidChallenge
from reelgate.models.auth import Account, AuthSession, MfaSession
from reelgate.services import mfa
from reelgate.tests.helpers import PASSWORD, csrf, enroll_totp, login


async def _session_count(db) -> int:
    return (await db.execute(select(func.count(AuthSession.id)))).scalar_one()


@pytest.mark.asyncio
async def test_password_alone_does_not_issue_a_session(client, db, ctx, account):
    await enroll_totp(db, ctx, account)
    token = await csrf(client)
    resp = await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD, "csrf_token": token},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "/mfa"
    assert ctx.cookies.mfa_token in resp.cookies
    assert ctx.cookies.session not in resp.cookies
    assert await _session_count(db) == 0

    page = await client.get("/mfa")
    assert page.json()["state"] == "MFA_PENDING_VERIFY"


@pytest.mark.asyncio
async def test_totp_code_issues_session(client, db, ctx, account, audit_sink):
    secret = await enroll_totp(db, ctx, account)
    resp = await login(client, "alice", secret)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/"

    me = await client.get("/session")
    assert me.status_code == 200
    body = me.json()
    assert body["username"] == "alice"
    assert body["groups"] == ["users"]
    assert body["is_admin"] is False
    assert await _session_count(db) == 1
    assert "user.login" in audit_sink.actions()


@pytest.mark.asyncio
async def test_wrong_password_is_generic(client, account):
    token = await csrf(client)
    resp = await client.post(
        "/login",
        data={"username": "alice", "password": "nope", "csrf_token": token},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"].startswith("/login?error=")

    unknown = await client.post(
        "/login",
        data={"username": "nobody", "password": "nope", "csrf_token": token},
        follow_redirects=False,
    )
    assert unknown.headers["location"].split("&")[0] == resp.headers["location"].split("&")[0]


@pytest.mark.asyncio
async def test_login_without_csrf_is_rejected(client, account):
    resp = await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert "error=Invalid" in resp.headers["location"]


@pytest.mark.asyncio
async def test_wrong_code_stays_on_mfa(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    token = await csrf(client)
    await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD, "csrf_token": token},
        follow_redirects=False,
    )
    good = pyotp.TOTP(secret).now()
    bad = "000000" if good != "000000" else "111111"
    resp = await client.post("/mfa", data={"code": bad, "csrf_token": token}, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"].startswith("/mfa?error=")
    assert await _session_count(db) == 0


@pytest.mark.asyncio
async def test_attempt_limit_restarts_login(client, db, ctx, account, auth_settings):
    await enroll_totp(db, ctx, account)
    token = await csrf(client)
    await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD, "csrf_token": token},
        follow_redirects=False,
    )
    for _ in range(auth_settings.mfa_max_attempts):
        await client.post("/mfa", data={"code": "12345x", "csrf_token": token}, follow_redirects=False)
    rows = (await db.execute(select(MfaSession))).scalars().all()
    assert len(rows) == 1
    assert rows[0].attempts == auth_settings.mfa_max_attempts


@pytest.mark.asyncio
async def test_mfa_without_pending_login_redirects(client):
    resp = await client.get("/mfa", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"].startswith("/login")


@pytest.mark.asyncio
async def test_first_login_enrolls_totp(client, db, ctx, account, audit_sink):
    token = await csrf(client)
    resp = await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD, "csrf_token": token},
        follow_redirects=False,
    )
    assert resp.headers["location"] == "/mfa_setup"

    setup = await client.get("/mfa_setup")
    assert setup.status_code == 200
    assert setup.headers["cache-control"] == "no-store"
    secret = setup.json()["secret"]
    assert setup.json()["provisioning_uri"].startswith("otpauth://totp/")

    done = await client.post(
        "/mfa_setup",
        data={"code": pyotp.TOTP(secret).now(), "csrf_token": token},
        follow_redirects=False,
    )
    assert done.status_code == 303
    assert done.headers["location"] == "/"

    db.expire_all()
    stored = await db.get(Account, account.id)
    assert stored.mfa_secret_encrypted
    assert ctx.cipher.decrypt_text(stored.mfa_secret_encrypted) == secret
    assert "user.mfa_enrolled" in audit_sink.actions()
    assert (await client.get("/session")).status_code == 200


@pytest.mark.asyncio
async def test_mfa_optional_issues_session_directly(session_factory, account):
    from httpx import ASGITransport, AsyncClient

    from reelgate.app import create_app
    from reelgate.context import AuthContext
    from reelgate.database import get_db
    from reelgate.tests.helpers import FAST_PARAMS, make_settings

    settings_obj = make_settings(mfa_required=False)
    app = create_app(settings_obj, context=AuthContext.from_settings(settings_obj, hasher_params=FAST_PARAMS))

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        token = await csrf(c)
        resp = await c.post(
            "/login",
            data={"username": "alice", "password": PASSWORD, "csrf_token": token, "next": "/library"},
            follow_redirects=False,
        )
        assert resp.headers["location"] == "/library"
        assert (await c.get("/session")).json()["username"] == "alice"


@pytest.mark.asyncio
async def test_open_redirect_is_neutralised(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    token = await csrf(client)
    await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD, "csrf_token": token, "next": "//evil.example/"},
        follow_redirects=False,
    )
    resp = await client.post(
        "/mfa",
        data={"code": pyotp.TOTP(secret).now(), "csrf_token": token},
        follow_redirects=False,
    )
    assert resp.headers["location"] == "/"


@pytest.mark.asyncio
async def test_mfa_session_is_redeemed_once(session_factory, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    pending = await mfa.complete_primary_factor(db, ctx, account)
    assert pending.state == mfa.LoginState.MFA_PENDING_VERIFY
    code = pyotp.TOTP(secret).now()

    async def redeem():
        async with session_factory() as session:
            return await mfa.submit_code(session, ctx, token=pending.mfa_token, code=code, kind=mfa.KIND_VERIFY)

    results = await asyncio.gather(redeem(), redeem(), return_exceptions=True)
    issued = [r for r in results if isinstance(r, mfa.LoginOutcome)]
    rejected = [r for r in results if isinstance(r, InvalidChallenge)]
    assert len(issued) == 1
    assert len(rejected) == 1
    assert await _session_count(db) == 1


@pytest.mark.asyncio
async def test_expired_mfa_session_restarts_login(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    token = await csrf(client)
    await client.post(
        "/login",
        data={"username": "alice", "password": PASSWORD, "csrf_token": token},
        follow_redirects=False,
    )
    await db.execute(update(MfaSession).values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)))
    await db.commit()

    resp = await client.post(
        "/mfa",
        data={"code": pyotp.TOTP(secret).now(), "csrf_token": token},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"].startswith("/login?error=")
    assert (await db.execute(select(func.count()).select_from(MfaSession))).scalar_one() == 0
    assert await _session_count(db) == 0
    assert (await client.get("/session")).status_code == 401
