"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base shared by every persisted model
- get_session(): Async generator yielding an AsyncSession
- init_db() / close_db(): startup and shutdown hooks used by the app lifespan
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.backoffice.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False}
        # SQLite (local dev, tests) does not accept pool sizing arguments
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all back-office models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the module engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create all tables if they don't exist.

    Production deployments run Alembic migrations instead; this keeps local
    development and single-node deployments working without a migration step.
    """
    # Import models so they register on Base.metadata
    from src.backoffice.models import entities, sync  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
