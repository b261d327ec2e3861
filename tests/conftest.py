"""
Pytest configuration and fixtures
"""

from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.config import Settings
from core.timeutil import utcnow
import models  # noqa: F401  registers every table
from models.base import Base


@pytest.fixture
def now() -> datetime:
    return utcnow().replace(microsecond=0)


@pytest.fixture
def recent(now):
    """Creation time inside the integrity window"""
    return now - timedelta(hours=1)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        FAILED_MARKER_PATH=str(tmp_path / "failed_execution.json"),
        SHUTDOWN_FLAG_PATH=str(tmp_path / "shutdown.flag"),
        TRANSFORM_USE_PROCESSES=False,
        TRANSFORM_RESERVED_CPUS=0,
        TRANSFORM_MAX_WORKERS=2,
        MIN_AVAILABLE_MEMORY_MB=0,
        SYNC_INTERVAL_SECONDS=1,
        ALERT_WEBHOOK_URL=None,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite database built from the ORM metadata"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()
