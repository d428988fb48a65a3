"""Shared test fixtures.

Provides:
- File-backed SQLite engine (aiosqlite + NullPool, one connection per session)
  with the sync tables created
- session_factory matching the repositories' async-generator contract
- Real repositories and SyncLedger bound to that database
- Settings cache reset around every test so env overrides take effect
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

import src.enrollsync.sync.models  # noqa: F401
from src.enrollsync.config import get_settings
from src.enrollsync.core.database import Base
from src.enrollsync.sync.ledger import SyncLedger
from src.enrollsync.sync.repository import ContactMappingRepository, SyncRecordRepository


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Clear the cached Settings before and after each test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Async SQLite engine with all sync tables, one file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Async-generator session factory bound to the test engine."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def record_repository(session_factory) -> SyncRecordRepository:
    return SyncRecordRepository(session_factory=session_factory)


@pytest.fixture
def mapping_repository(session_factory) -> ContactMappingRepository:
    return ContactMappingRepository(session_factory=session_factory)


@pytest.fixture
def ledger(record_repository) -> SyncLedger:
    return SyncLedger(record_repository, stale_after_seconds=120)
