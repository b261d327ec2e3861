"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base and shared enums (NoteStatus, CommentAction,
          SyncMode, CycleStatus, GapKind, ZoneKind)
    note: Durable notes and comments plus their staging and check copies
    checkpoint: Single-row sync checkpoint
    sync_cycle: Per-cycle audit trail
    data_gap: Completeness shortfalls awaiting reconciliation
    sync_lock: Owner records of named exclusivity locks
    region: Country and maritime boundaries

Database Schema:
    Column types are portable (generic JSON and Uuid) so the same metadata
    builds on PostgreSQL in production and SQLite in tests.

Relationships:
    - Note → NoteComment (one-to-many, keyed by note_id + sequence)
    - SyncCycle → DataGap (one-to-many via cycle_id)
"""

from models.base import Base, NoteStatus, CommentAction, SyncMode, CycleStatus, GapKind, ZoneKind
from models.note import (
    Note,
    NoteComment,
    NoteStaging,
    NoteCommentStaging,
    NoteCheck,
    NoteCommentCheck,
)
from models.checkpoint import SyncCheckpoint
from models.sync_cycle import SyncCycle
from models.data_gap import DataGap
from models.sync_lock import SyncLock
from models.region import Region

__all__ = [
    "Base",
    "NoteStatus",
    "CommentAction",
    "SyncMode",
    "CycleStatus",
    "GapKind",
    "ZoneKind",
    "Note",
    "NoteComment",
    "NoteStaging",
    "NoteCommentStaging",
    "NoteCheck",
    "NoteCommentCheck",
    "SyncCheckpoint",
    "SyncCycle",
    "DataGap",
    "SyncLock",
    "Region",
]
