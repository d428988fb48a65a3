"""Async SQLAlchemy engine and declarative base for the sync ledger tables.

Provides:
- Base: Declarative base shared by every model (sync_records, contact_mappings)
- get_engine(): Lazily created AsyncEngine singleton
- get_session(): Async generator yielding an AsyncSession (repository session_factory)
- init_db() / close_db(): Table creation on startup, engine disposal on shutdown

Column types are kept portable so the same models run on PostgreSQL (asyncpg)
in deployment and on SQLite (aiosqlite) in tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.enrollsync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False}
        if settings.DATABASE_URL.startswith("postgresql"):
            kwargs.update(pool_size=10, max_overflow=5, pool_pre_ping=True)
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persisted sync models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the module engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create sync tables if they don't exist (Alembic owns schema changes)."""
    # Models register themselves on Base.metadata at import time
    import src.enrollsync.sync.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
