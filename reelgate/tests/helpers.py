"""Shared test helpers."""

from __future__ import annotations

import pyotp
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from reelgate.config import AuthSettings
from reelgate.context import AuthContext
from reelgate.security.passwords import ScryptParams

FAST_PARAMS = ScryptParams(n=1024, r=8, p=1)
PASSWORD = "correct horse battery"


class RecordingSink:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


def make_settings(**overrides) -> AuthSettings:
    values = {
        "session_secret": "s" * 40,
        "secret_key": "test-secret-key",
        "app_base_url": "http://test",
        "database_url": "sqlite+aiosqlite:///:memory:",
    }
    values.update(overrides)
    return AuthSettings(_env_file=None, **values)


async def enroll_totp(db: AsyncSession, ctx: AuthContext, account) -> str:
    secret = pyotp.random_base32()
    account.mfa_secret_encrypted = ctx.cipher.encrypt(secret)
    await db.commit()
    return secret


async def csrf(client: AsyncClient) -> str:
    response = await client.get("/csrf")
    assert response.status_code == 200
    return response.json()["csrf_token"]


async def login(client: AsyncClient, username: str, secret: str, *, password: str = PASSWORD):
    """Password then TOTP; returns the response to the code submission."""
    token = await csrf(client)
    first = await client.post(
        "/login",
        data={"username": username, "password": password, "csrf_token": token},
        follow_redirects=False,
    )
    assert first.status_code == 303
    assert first.headers["location"] == "/mfa"
    return await client.post(
        "/mfa",
        data={"code": pyotp.TOTP(secret).now(), "csrf_token": token},
        follow_redirects=False,
    )
