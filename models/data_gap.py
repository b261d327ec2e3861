from sqlalchemy import Column, Integer, Enum, DateTime, Float, Text, Boolean, Index, Uuid, JSON
from core.timeutil import utcnow
from models.base import Base, GapKind


class DataGap(Base):
    """
    A detected completeness shortfall awaiting reconciliation.

    Written by the integrity gate (processed = False) and flipped to
    processed by the gap reconciler once a snapshot has been applied.
    """
    __tablename__ = "data_gaps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(Uuid, nullable=True)

    gap_kind = Column(Enum(GapKind), nullable=False)
    gap_count = Column(Integer, nullable=False)
    total_count = Column(Integer, nullable=False)
    gap_percentage = Column(Float, nullable=False)
    identifiers = Column(JSON, nullable=False, default=list)
    error_details = Column(Text, nullable=True)
    blocking = Column(Boolean, nullable=False, default=False)  # withheld the checkpoint

    processed = Column(Boolean, nullable=False, default=False)
    detected_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_data_gaps_processed", "processed", "detected_at"),
    )
