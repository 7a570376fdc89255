"""Client address used for lockouts, rate limits, and audit events."""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from httpx import ASGITransport, AsyncClient

from reelgate.app import create_app
from reelgate.context import AuthContext
from reelgate.database import get_db
from reelgate.errors import LockedOut
from reelgate.services.audit import AuditEmitter
from reelgate.tests.helpers import FAST_PARAMS, RecordingSink, csrf, make_settings


def _error(response) -> str:
    return parse_qs(urlsplit(response.headers["location"]).query)["error"][0]


async def _failed_login(client: AsyncClient, token: str, forwarded_for: str):
    return await client.post(
        "/login",
        data={"username": "alice", "password": "wrong password", "csrf_token": token},
        headers={"X-Forwarded-For": forwarded_for},
        follow_redirects=False,
    )


@pytest.mark.asyncio
async def test_forwarded_for_cannot_dodge_lockout(client, account, auth_settings):
    token = await csrf(client)
    responses = [
        await _failed_login(client, token, f"203.0.113.{i}")
        for i in range(auth_settings.login_lockout_max + 1)
    ]
    assert _error(responses[-2]) == LockedOut.public_message
    assert _error(responses[-1]) == LockedOut.public_message


@pytest.mark.asyncio
async def test_untrusted_peer_keeps_socket_address(client, account, audit_sink):
    token = await csrf(client)
    await _failed_login(client, token, "203.0.113.7")
    assert audit_sink.events[-1].action == "user.login_failed"
    assert audit_sink.events[-1].ip == "127.0.0.1"


@pytest.mark.asyncio
async def test_trusted_proxy_forwards_client_address(session_factory, account):
    settings_obj = make_settings(forwarded_allow_ips="127.0.0.1")
    sink = RecordingSink()
    app = create_app(
        settings_obj,
        context=AuthContext.from_settings(settings_obj, audit=AuditEmitter([sink]), hasher_params=FAST_PARAMS),
    )

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        token = await csrf(c)
        await _failed_login(c, token, "203.0.113.7")

    assert sink.events[-1].action == "user.login_failed"
    assert sink.events[-1].ip == "203.0.113.7"
