"""
FIFO slot pool for the rate-limited fetcher.

Every download is represented by a DownloadTicket. Tickets are admitted into
a fixed number of slots strictly in arrival order: a freed slot is handed
directly to the ticket at the head of the queue, so a newcomer can never
overtake a waiter. A lease is owned by the asyncio task that acquired it;
leases whose owner task has finished without releasing, or that outlived the
lease timeout, are reclaimed.
"""

import asyncio
import enum
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TicketState(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DownloadTicket:
    resource_id: str
    arrival: int
    state: TicketState = TicketState.QUEUED
    retry_count: int = 0
    error: Optional[BaseException] = field(default=None, repr=False)


@dataclass
class SlotLease:
    lease_id: int
    ticket: DownloadTicket
    owner: Optional["asyncio.Task"]
    acquired_at: float


class SlotPool:
    """
    Bounded pool of download slots with FIFO admission.

    Attributes:
        size: Maximum concurrent in-flight downloads
        lease_timeout: Seconds after which a held lease counts as abandoned
    """

    def __init__(
        self,
        size: int,
        lease_timeout: float = 900.0,
        reclaim_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if size < 1:
            raise ValueError("slot pool size must be at least 1")
        self.size = size
        self.lease_timeout = lease_timeout
        self.reclaim_interval = reclaim_interval
        self._clock = clock

        self._arrivals = itertools.count()
        self._lease_ids = itertools.count(1)
        self._leases: Dict[int, SlotLease] = {}
        self._waiters: Deque[Tuple[DownloadTicket, Optional[asyncio.Task], asyncio.Future]] = deque()

    def new_ticket(self, resource_id: str) -> DownloadTicket:
        """Create a ticket; its arrival number fixes its place in line."""
        return DownloadTicket(resource_id=resource_id, arrival=next(self._arrivals))

    @property
    def in_use(self) -> int:
        return len(self._leases)

    @property
    def waiting(self) -> int:
        return sum(1 for _, _, fut in self._waiters if not fut.done())

    async def acquire(self, ticket: DownloadTicket) -> SlotLease:
        """Wait for a slot in FIFO order."""
        self.reclaim_stale()
        owner = asyncio.current_task()

        if not self.waiting and len(self._leases) < self.size:
            return self._grant(ticket, owner)

        ticket.state = TicketState.QUEUED
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append((ticket, owner, future))
        try:
            while True:
                try:
                    return await asyncio.wait_for(asyncio.shield(future), self.reclaim_interval)
                except asyncio.TimeoutError:
                    self.reclaim_stale()
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                self.release(future.result())
            else:
                future.cancel()
            raise

    def release(self, lease: SlotLease) -> None:
        if self._leases.pop(lease.lease_id, None) is None:
            return
        self._hand_off()

    @asynccontextmanager
    async def slot(self, ticket: DownloadTicket) -> AsyncIterator[SlotLease]:
        lease = await self.acquire(ticket)
        try:
            yield lease
        finally:
            self.release(lease)

    def reclaim_stale(self) -> int:
        """Release leases whose owner died or that exceeded the lease timeout."""
        now = self._clock()
        reclaimed = 0
        for lease in list(self._leases.values()):
            dead_owner = lease.owner is not None and lease.owner.done()
            expired = now - lease.acquired_at > self.lease_timeout
            if dead_owner or expired:
                reason = "owner finished" if dead_owner else "lease expired"
                logger.warning(
                    f"Reclaiming slot lease {lease.lease_id} for {lease.ticket.resource_id} ({reason})"
                )
                self._leases.pop(lease.lease_id, None)
                reclaimed += 1
        if reclaimed:
            self._hand_off()
        return reclaimed

    def _grant(self, ticket: DownloadTicket, owner: Optional[asyncio.Task]) -> SlotLease:
        lease = SlotLease(
            lease_id=next(self._lease_ids),
            ticket=ticket,
            owner=owner,
            acquired_at=self._clock(),
        )
        self._leases[lease.lease_id] = lease
        ticket.state = TicketState.ACTIVE
        return lease

    def _hand_off(self) -> None:
        while self._waiters and len(self._leases) < self.size:
            ticket, owner, future = self._waiters.popleft()
            if future.done():
                continue
            future.set_result(self._grant(ticket, owner))
