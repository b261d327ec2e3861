from sqlalchemy import Column, Integer, DateTime, Boolean, Uuid
from core.timeutil import utcnow
from models.base import Base

CHECKPOINT_ROW_ID = 1


class SyncCheckpoint(Base):
    """
    High-water mark of fully integrated source data.

    Design:
    - Exactly one row (id = 1)
    - timestamp only ever moves forward
    - Written only by the integrity gate, in the same transaction as the
      merge whose integrity it vouches for
    """
    __tablename__ = "sync_checkpoint"

    id = Column(Integer, primary_key=True, autoincrement=False, default=CHECKPOINT_ROW_ID)

    timestamp = Column(DateTime, nullable=False)
    integrity_passed = Column(Boolean, nullable=False, default=True)
    last_cycle_id = Column(Uuid, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
