"""
Gap records awaiting (or done with) reconciliation
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import DataGapResponse, GapListResponse, PaginationMetadata
from models.data_gap import DataGap
from typing import Optional
import time
import uuid
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Gaps"])


@router.get("/gaps", response_model=GapListResponse)
async def get_gaps(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    processed: Optional[bool] = Query(None, description="Filter by reconciliation state"),
    blocking: Optional[bool] = Query(None, description="Only gaps that withheld the checkpoint"),
    db: AsyncSession = Depends(get_db)
):
    """Newest gaps first."""
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    filters = []
    if processed is not None:
        filters.append(DataGap.processed.is_(processed))
    if blocking is not None:
        filters.append(DataGap.blocking.is_(blocking))

    count_query = select(func.count()).select_from(DataGap)
    query = select(DataGap)
    if filters:
        count_query = count_query.where(and_(*filters))
        query = query.where(and_(*filters))

    total_items = (await db.execute(count_query)).scalar() or 0
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

    query = query.order_by(DataGap.detected_at.desc(), DataGap.id.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)
    gaps = (await db.execute(query)).scalars().all()

    logger.info(
        f"[{request_id}] Returned {len(gaps)} gaps "
        f"(total: {(time.time() - start_time) * 1000:.2f}ms)"
    )

    return GapListResponse(
        items=[DataGapResponse.model_validate(gap) for gap in gaps],
        pagination=PaginationMetadata(
            current_page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1
        ),
        filters_applied={k: v for k, v in {
            "processed": processed,
            "blocking": blocking,
        }.items() if v is not None}
    )
