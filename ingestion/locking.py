"""
System-wide exclusivity lock backed by an owner row in ``sync_locks``.

The owner record carries a random token plus process identity (hostname,
pid) and a heartbeat. A row left behind by a dead process is reclaimed
deterministically:

- same host and the pid no longer exists, or
- heartbeat older than ``stale_after``

Otherwise acquisition fails fast with LockContentionError.
"""

import asyncio
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Optional

import psutil
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.exceptions import DatabaseError, LockContentionError
from core.timeutil import utcnow
from models.sync_lock import SyncLock

logger = logging.getLogger(__name__)


class ExclusivityLock:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        stale_after: timedelta = timedelta(seconds=300),
        heartbeat_interval: float = 30.0,
        hostname: Optional[str] = None,
        pid: Optional[int] = None,
        pid_alive: Callable[[int], bool] = psutil.pid_exists,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.name = name
        self.stale_after = stale_after
        self.heartbeat_interval = heartbeat_interval
        self.hostname = hostname or socket.gethostname()
        self.pid = pid if pid is not None else os.getpid()
        self.token = uuid.uuid4().hex
        self._pid_alive = pid_alive
        self._clock = clock

        self.held = False
        self.lost = False
        self._heartbeat_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        name: Optional[str] = None,
        config: Settings = default_settings,
    ) -> "ExclusivityLock":
        return cls(
            session_factory,
            name=name or config.LOCK_NAME,
            stale_after=timedelta(seconds=config.LOCK_STALE_SECONDS),
            heartbeat_interval=config.LOCK_HEARTBEAT_SECONDS,
        )

    def describe(self, row: SyncLock) -> Dict[str, Any]:
        return {
            "hostname": row.hostname,
            "pid": row.pid,
            "acquired_at": row.acquired_at.isoformat() if row.acquired_at else None,
            "heartbeat_at": row.heartbeat_at.isoformat() if row.heartbeat_at else None,
        }

    def is_stale(self, row: SyncLock) -> bool:
        if self._clock() - row.heartbeat_at > self.stale_after:
            return True
        return row.hostname == self.hostname and not self._pid_alive(row.pid)

    async def acquire(self) -> None:
        """
        Take the lock or fail fast.

        Raises:
            LockContentionError: A live owner holds the lock
            DatabaseError: The lock table could not be read or written
        """
        now = self._clock()
        owner = dict(owner_token=self.token, hostname=self.hostname, pid=self.pid,
                     acquired_at=now, heartbeat_at=now)

        async with self.session_factory() as session:
            try:
                row = await session.get(SyncLock, self.name)

                if row is None:
                    session.add(SyncLock(name=self.name, **owner))
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        raise LockContentionError(self.name)

                elif row.owner_token == self.token:
                    row.heartbeat_at = now
                    await session.commit()

                elif self.is_stale(row):
                    previous = self.describe(row)
                    result = await session.execute(
                        update(SyncLock)
                        .where(SyncLock.name == self.name, SyncLock.owner_token == row.owner_token)
                        .values(**owner)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        await session.rollback()
                        raise LockContentionError(self.name, previous)
                    await session.commit()
                    logger.warning(f"Reclaimed stale lock '{self.name}' from {previous}")

                else:
                    raise LockContentionError(self.name, self.describe(row))

            except SQLAlchemyError as e:
                raise DatabaseError(
                    f"Failed to acquire lock '{self.name}'",
                    context={"operation": "LOCK", "table_name": "sync_locks"},
                    original_exception=e,
                )

        self.held = True
        self.lost = False
        logger.info(f"Acquired lock '{self.name}' (pid {self.pid} on {self.hostname})")

    async def heartbeat(self) -> bool:
        """Refresh the heartbeat; False means the lock was taken over."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncLock)
                .where(SyncLock.name == self.name, SyncLock.owner_token == self.token)
                .values(heartbeat_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            self.lost = True
            logger.error(f"Lock '{self.name}' is no longer owned by this process")
            return False
        return True

    async def release(self) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(SyncLock)
                .where(SyncLock.name == self.name, SyncLock.owner_token == self.token)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        self.held = False
        logger.info(f"Released lock '{self.name}'")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if not await self.heartbeat():
                    return
            except SQLAlchemyError as e:
                logger.warning(f"Heartbeat for lock '{self.name}' failed: {e}")

    @asynccontextmanager
    async def hold(self) -> AsyncIterator["ExclusivityLock"]:
        """Hold the lock for the block; it is released on every exit path."""
        await self.acquire()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            yield self
        finally:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
            await self.release()
