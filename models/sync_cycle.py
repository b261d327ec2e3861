from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, Uuid, JSON
from core.timeutil import utcnow
import uuid
from models.base import Base, SyncMode, CycleStatus


class SyncCycle(Base):
    """
    Audit row for each orchestrator cycle.

    Purpose:
    - Trail of every cycle with the mode it ran in
    - Checkpoint movement per cycle
    - Stage that failed and why, for the operator
    """
    __tablename__ = "sync_cycles"

    cycle_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    cycle_number = Column(Integer, nullable=False, default=0)

    mode = Column(Enum(SyncMode), nullable=False, default=SyncMode.INCREMENTAL)
    status = Column(Enum(CycleStatus), nullable=False, default=CycleStatus.RUNNING, index=True)
    state = Column(String(50), nullable=True)  # last orchestrator state reached

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_fetched = Column(Integer, default=0)
    partitions = Column(Integer, default=0)
    notes_inserted = Column(Integer, default=0)
    notes_updated = Column(Integer, default=0)
    comments_inserted = Column(Integer, default=0)
    integrity_ratio = Column(Float, nullable=True)

    # Checkpoint info
    checkpoint_before = Column(DateTime, nullable=True)
    checkpoint_after = Column(DateTime, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_sync_cycle_status_started", "status", "started_at"),
    )
