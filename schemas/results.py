"""
Explicit results handed between pipeline stages.

The loader returns a LoadResult that the integrity gate consumes inside the
same transaction; nothing about the merge is kept as session state.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from uuid import UUID


class LoadResult(BaseModel):
    """Outcome of staging + merge, including the post-merge integrity ratio"""

    notes_inserted: int = 0
    notes_updated: int = 0
    comments_inserted: int = 0
    orphan_comments: int = 0

    integrity_ratio: float = 0.0
    recent_total: int = 0
    recent_without_comments: int = 0
    unannotated_ids: List[int] = Field(default_factory=list)
    total_comments: int = 0

    newest_timestamp: Optional[datetime] = None


class GateDecision(BaseModel):
    """What the integrity gate decided for one cycle"""

    passed: bool
    permissive: bool = False
    integrity_ratio: float
    threshold: float
    checkpoint_before: Optional[datetime] = None
    checkpoint_after: Optional[datetime] = None
    gap_id: Optional[int] = None

    @property
    def advanced(self) -> bool:
        if self.checkpoint_after is None:
            return False
        return self.checkpoint_before is None or self.checkpoint_after > self.checkpoint_before


class CycleResult(BaseModel):
    """Summary of one orchestrator cycle"""

    cycle_id: UUID
    cycle_number: int
    mode: str
    status: str
    records_fetched: int = 0
    partitions: int = 0
    load: Optional[LoadResult] = None
    decision: Optional[GateDecision] = None
    duration_seconds: float = 0.0
    had_updates: bool = True


class ReconcileResult(BaseModel):
    """Writes performed by one gap reconciler run"""

    snapshot_notes: int = 0
    notes_inserted: int = 0
    comments_inserted: int = 0
    notes_hidden: int = 0
    gaps_processed: int = 0

    @property
    def total_writes(self) -> int:
        return self.notes_inserted + self.comments_inserted + self.notes_hidden + self.gaps_processed
