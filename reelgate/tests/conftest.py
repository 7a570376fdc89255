"""Async test fixtures for Reelgate tests using SQLite."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reelgate.config import AuthSettings
from reelgate.context import AuthContext
from reelgate.database import get_db
from reelgate.models.base import Base
from reelgate.services import accounts
from reelgate.services.audit import AuditEmitter
from reelgate.services.sso.store import SqlHandshakeStore
from reelgate.tests.helpers import FAST_PARAMS, PASSWORD, RecordingSink, make_settings


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def auth_settings() -> AuthSettings:
    return make_settings()


@pytest.fixture
def audit_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def ctx(auth_settings, session_factory, audit_sink) -> AuthContext:
    return AuthContext.from_settings(
        auth_settings,
        handshakes=SqlHandshakeStore(session_factory),
        audit=AuditEmitter([audit_sink]),
        hasher_params=FAST_PARAMS,
    )


@pytest.fixture
def app(auth_settings, ctx):
    from reelgate.app import create_app

    return create_app(auth_settings, context=ctx)


@pytest_asyncio.fixture
async def client(app, session_factory):
    """HTTPX async test client against the Reelgate app."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def account(db: AsyncSession):
    return await accounts.create_account(
        db,
        username="alice",
        password=PASSWORD,
        email="alice@example.com",
        params=FAST_PARAMS,
    )


@pytest_asyncio.fixture
async def admin_account(db: AsyncSession):
    return await accounts.create_account(
        db,
        username="root",
        password=PASSWORD,
        groups=["administrators", "users"],
        params=FAST_PARAMS,
    )
