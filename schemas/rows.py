"""
Typed rows produced by the extraction transform and consumed by the loader
"""

from pydantic import BaseModel, Field, field_validator
from typing import Iterable, List, Optional
from datetime import datetime
from models.base import NoteStatus, CommentAction


class NoteRow(BaseModel):
    """One note as read from a feed document"""

    note_id: int = Field(..., gt=0)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    created_at: datetime
    closed_at: Optional[datetime] = None
    status: NoteStatus
    region_id: Optional[int] = None


class CommentRow(BaseModel):
    """One comment of a note; sequence is its 1-based position in the note"""

    note_id: int = Field(..., gt=0)
    sequence: int = Field(..., ge=1)
    action: CommentAction
    created_at: datetime
    user_id: Optional[int] = None
    username: Optional[str] = None
    body: Optional[str] = None

    @field_validator("username", "body", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class RowBatch(BaseModel):
    """
    Rows extracted from one partition.

    Batches are independent: the loader merge is order-free, so consolidating
    them only concatenates.
    """

    partition_index: int = 0
    notes: List[NoteRow] = Field(default_factory=list)
    comments: List[CommentRow] = Field(default_factory=list)

    @property
    def note_count(self) -> int:
        return len(self.notes)

    @property
    def comment_count(self) -> int:
        return len(self.comments)

    def newest_timestamp(self) -> Optional[datetime]:
        """Newest creation, closure or comment timestamp in the batch"""
        stamps = [n.created_at for n in self.notes]
        stamps.extend(n.closed_at for n in self.notes if n.closed_at is not None)
        stamps.extend(c.created_at for c in self.comments)
        return max(stamps) if stamps else None

    @classmethod
    def consolidate(cls, batches: Iterable["RowBatch"]) -> "RowBatch":
        """Concatenate batches in partition order"""
        merged = cls(partition_index=0)
        for batch in sorted(batches, key=lambda b: b.partition_index):
            merged.notes.extend(batch.notes)
            merged.comments.extend(batch.comments)
        return merged
