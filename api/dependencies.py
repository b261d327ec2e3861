from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from ingestion.marker import FailedMarker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


def get_marker() -> FailedMarker:
    return FailedMarker()
