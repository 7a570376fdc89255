"""Double-submit CSRF and origin checks on unsafe routes."""

from __future__ import annotations

import pytest
import pytest_asyncio

from reelgate.tests.helpers import csrf, enroll_totp, login


@pytest_asyncio.fixture
async def signed_in(client, db, ctx, account):
    secret = await enroll_totp(db, ctx, account)
    await login(client, "alice", secret)
    return client


@pytest.mark.asyncio
async def test_missing_header_is_rejected(signed_in):
    await csrf(signed_in)
    resp = await signed_in.post("/sessions/revoke-others")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid request"


@pytest.mark.asyncio
async def test_mismatched_token_is_rejected(signed_in):
    await csrf(signed_in)
    resp = await signed_in.post("/sessions/revoke-others", headers={"X-CSRF-Token": "something-else"})
    assert resp.status_code == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [{"Origin": "https://test"}, {"Referer": "https://test/settings"}])
async def test_same_host_other_scheme_is_rejected(signed_in, header):
    token = await csrf(signed_in)
    resp = await signed_in.post("/sessions/revoke-others", headers={"X-CSRF-Token": token, **header})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_cross_origin_is_rejected(signed_in):
    token = await csrf(signed_in)
    resp = await signed_in.post(
        "/sessions/revoke-others",
        headers={"X-CSRF-Token": token, "Origin": "https://evil.example"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_cross_site_referer_is_rejected(signed_in):
    token = await csrf(signed_in)
    resp = await signed_in.post(
        "/sessions/revoke-others",
        headers={"X-CSRF-Token": token, "Referer": "https://evil.example/page"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_matching_token_and_origin_pass(signed_in):
    token = await csrf(signed_in)
    resp = await signed_in.post(
        "/sessions/revoke-others",
        headers={"X-CSRF-Token": token, "Origin": "http://test"},
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_csrf_endpoint_reuses_cookie(client, ctx):
    first = await csrf(client)
    second = await csrf(client)
    assert first == second
    assert client.cookies.get(ctx.cookies.csrf) == first
