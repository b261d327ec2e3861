"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db, get_marker
from core.timeutil import utcnow
from ingestion.marker import FailedMarker
from models.checkpoint import CHECKPOINT_ROW_ID, SyncCheckpoint
from models.data_gap import DataGap
from models.sync_lock import SyncLock
from schemas.api import CheckpointInfo, HealthCheckResponse, LockInfo
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    marker: FailedMarker = Depends(get_marker),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Sync checkpoint and whether the last integrity check passed
    - Failed-execution marker contents, if the daemon halted
    - Current lock holders and unprocessed gap count
    """

    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    checkpoint = None
    locks = []
    unprocessed_gaps = 0

    if db_connected:
        try:
            row = await db.get(SyncCheckpoint, CHECKPOINT_ROW_ID)
            if row is not None:
                checkpoint = CheckpointInfo.model_validate(row)

            result = await db.execute(select(SyncLock).order_by(SyncLock.name))
            locks = [LockInfo.model_validate(lock) for lock in result.scalars().all()]

            unprocessed_gaps = await db.scalar(
                select(func.count()).select_from(DataGap).where(DataGap.processed.is_(False))
            ) or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to read sync status: {str(e)}")

    return HealthCheckResponse(
        timestamp=utcnow(),
        database_connected=db_connected,
        checkpoint=checkpoint,
        failed_marker=marker.read(),
        locks=locks,
        unprocessed_gaps=unprocessed_gaps,
    )
