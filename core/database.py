"""
Database session management with SQLAlchemy async
"""

from typing import AsyncGenerator, Iterable

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
from core.exceptions import PreconditionError
import logging

logger = logging.getLogger(__name__)

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL.upper() == "DEBUG",
    poolclass=NullPool,
)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)

BASE_TABLES = (
    "notes",
    "note_comments",
    "notes_staging",
    "note_comments_staging",
    "sync_checkpoint",
    "sync_cycles",
    "data_gaps",
    "sync_locks",
    "regions",
    "notes_check",
    "note_comments_check",
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


async def ensure_base_tables(bind: AsyncEngine, required: Iterable[str] = BASE_TABLES) -> None:
    """
    Verify the tables a sync cycle depends on exist.

    Raises:
        PreconditionError: If any required table is missing
    """
    async with bind.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

    missing = sorted(set(required) - existing)
    if missing:
        raise PreconditionError(
            "Base tables are missing; run scripts/init_db.py first",
            context={"missing_tables": missing},
        )
    logger.debug(f"Base tables present: {', '.join(sorted(required))}")
