"""
Recent sync cycle history
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import CycleListResponse, SyncCycleResponse
from models.base import CycleStatus
from models.sync_cycle import SyncCycle
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Cycles"])


@router.get("/cycles", response_model=CycleListResponse)
async def get_cycles(
    limit: int = Query(20, ge=1, le=200, description="Number of recent cycles to return"),
    status: Optional[CycleStatus] = Query(None, description="Filter by cycle outcome"),
    db: AsyncSession = Depends(get_db)
):
    query = select(SyncCycle)
    count_query = select(func.count()).select_from(SyncCycle)
    if status is not None:
        query = query.where(SyncCycle.status == status)
        count_query = count_query.where(SyncCycle.status == status)

    result = await db.execute(query.order_by(SyncCycle.started_at.desc()).limit(limit))
    cycles = result.scalars().all()

    return CycleListResponse(
        items=[SyncCycleResponse.model_validate(cycle) for cycle in cycles],
        total_cycles=(await db.execute(count_query)).scalar() or 0,
    )
