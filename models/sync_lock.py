from sqlalchemy import Column, String, Integer, DateTime
from core.timeutil import utcnow
from models.base import Base


class SyncLock(Base):
    """
    Owner record of a named exclusivity lock.

    A row exists while the lock is held. The owner is identified by a random
    token plus process identity (hostname, pid); heartbeat_at is refreshed
    while the owner is alive so a dead owner's row can be reclaimed.
    """
    __tablename__ = "sync_locks"

    name = Column(String(100), primary_key=True)
    owner_token = Column(String(64), nullable=False)
    hostname = Column(String(255), nullable=False)
    pid = Column(Integer, nullable=False)

    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    heartbeat_at = Column(DateTime, nullable=False, default=utcnow)
