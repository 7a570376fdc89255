"""Async database engine, session factory, and schema bootstrap."""

from __future__ import annotations

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings

engine = create_async_engine(settings.database_url, echo=settings.echo_sql)
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency that yields an async session."""
    async with async_session_factory() as session:
        yield session


@asynccontextmanager
async def session_scope():
    """Session for work outside a request (CLI, startup tasks)."""
    async with async_session_factory() as session:
        yield session


async def create_schema(target: AsyncEngine | None = None) -> None:
    from .models import Base

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
