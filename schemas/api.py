"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID
from core.timeutil import utcnow
from models.base import CycleStatus, GapKind, SyncMode

# ============================================================================
# Health Check Schemas
# ============================================================================

class CheckpointInfo(BaseModel):
    """Sync checkpoint as seen by the health check"""
    timestamp: Optional[datetime]
    integrity_passed: bool
    last_cycle_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LockInfo(BaseModel):
    """Current holder of a sync lock"""
    name: str
    hostname: str
    pid: int
    acquired_at: datetime
    heartbeat_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    checkpoint: Optional[CheckpointInfo] = None
    failed_marker: Optional[Dict[str, Any]] = None
    locks: List[LockInfo] = Field(default_factory=list)
    unprocessed_gaps: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """
        unhealthy: database unreachable or the daemon halted (marker present)
        degraded: the last integrity check withheld the checkpoint
        """
        if not self.database_connected or self.failed_marker is not None:
            self.status = "unhealthy"
        elif self.checkpoint is not None and not self.checkpoint.integrity_passed:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2024-01-15T10:30:00Z",
            "database_connected": True,
            "checkpoint": {
                "timestamp": "2024-01-15T10:29:12",
                "integrity_passed": True,
            },
            "failed_marker": None,
            "locks": [],
            "unprocessed_gaps": 2,
        }
    })


# ============================================================================
# Gap / Cycle Schemas
# ============================================================================

class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class DataGapResponse(BaseModel):
    id: int
    cycle_id: Optional[UUID]
    gap_kind: GapKind
    gap_count: int
    total_count: int
    gap_percentage: float
    identifiers: List[int] = Field(default_factory=list)
    error_details: Optional[str]
    blocking: bool
    processed: bool
    detected_at: datetime
    processed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class GapListResponse(BaseModel):
    """Paginated gap records"""
    items: List[DataGapResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class SyncCycleResponse(BaseModel):
    cycle_id: UUID
    cycle_number: int
    mode: SyncMode
    status: CycleStatus
    state: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_seconds: Optional[float]
    records_fetched: Optional[int] = 0
    partitions: Optional[int] = 0
    notes_inserted: Optional[int] = 0
    notes_updated: Optional[int] = 0
    comments_inserted: Optional[int] = 0
    integrity_ratio: Optional[float]
    checkpoint_before: Optional[datetime]
    checkpoint_after: Optional[datetime]
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class CycleListResponse(BaseModel):
    items: List[SyncCycleResponse]
    total_cycles: int


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
