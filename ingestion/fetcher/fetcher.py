"""
Rate-limited fetcher for resource-by-identifier downloads.

Used for boundary geometries and snapshot documents. All callers share one
fetcher per upstream service, so the concurrency ceiling, the FIFO queue and
the circuit breaker see every request made to that service.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from core.config import Settings, settings as default_settings
from core.exceptions import (
    CircuitOpenError,
    FetchError,
    FetchExhaustedError,
    NonRetryableError,
    RetryableError,
    ShutdownInProgress,
)
from ingestion.fetcher.http import Endpoint, send
from ingestion.fetcher.policy import CircuitBreaker, RetryPolicy
from ingestion.fetcher.slots import DownloadTicket, SlotPool, TicketState

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    ticket: DownloadTicket
    payload: Optional[bytes] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FetchReport:
    """Per-ticket outcomes of a fetch_many call, in admission order"""
    outcomes: List[FetchOutcome]

    @property
    def succeeded(self) -> List[FetchOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[FetchOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def payloads(self) -> Dict[str, bytes]:
        return {o.ticket.resource_id: o.payload for o in self.outcomes if o.ok}


class RateLimitedFetcher:
    """
    Bounded-concurrency downloader with FIFO admission, retry and circuit breaking.

    A ticket holds a slot only while its request is in flight. After a
    retryable failure the slot is released, the ticket sleeps out its
    backoff and re-enters the queue at the tail. A circuit-open rejection
    is not an attempt: the ticket waits for the cooldown and queues again.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        client: httpx.AsyncClient,
        pool: SlotPool,
        policy: RetryPolicy,
        breaker: CircuitBreaker,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.endpoint = endpoint
        self.client = client
        self.pool = pool
        self.policy = policy
        self.breaker = breaker
        self._sleep = sleep
        self._closing = False

    @classmethod
    def from_settings(
        cls,
        endpoint: Endpoint,
        client: httpx.AsyncClient,
        name: str,
        config: Settings = default_settings,
    ) -> "RateLimitedFetcher":
        return cls(
            endpoint=endpoint,
            client=client,
            pool=SlotPool(config.FETCH_MAX_CONCURRENCY, lease_timeout=config.SLOT_LEASE_TIMEOUT_SECONDS),
            policy=RetryPolicy.from_settings(config),
            breaker=CircuitBreaker.from_settings(name, config),
        )

    def shutdown(self) -> None:
        """Stop admitting new tickets; tickets already created run to completion."""
        self._closing = True

    async def fetch(self, resource_id: str) -> bytes:
        """
        Download one resource.

        Raises:
            FetchExhaustedError: All attempts failed with retryable errors
            NonRetryableError: A permanent failure (404, 401, ...)
            ShutdownInProgress: The fetcher is shutting down
        """
        return await self._run(self._new_ticket(resource_id))

    async def fetch_many(self, resource_ids: Iterable[str]) -> FetchReport:
        """
        Download several resources; failures are reported per ticket, never dropped.
        """
        tickets = [self._new_ticket(rid) for rid in resource_ids]
        outcomes = await asyncio.gather(*(self._run_reported(t) for t in tickets))
        report = FetchReport(outcomes=list(outcomes))
        if report.failed:
            logger.warning(
                f"{len(report.failed)} of {len(tickets)} downloads failed: "
                f"{', '.join(o.ticket.resource_id for o in report.failed[:20])}"
            )
        return report

    def _new_ticket(self, resource_id: str) -> DownloadTicket:
        if self._closing:
            raise ShutdownInProgress(
                "Fetcher is shutting down; not accepting new downloads",
                context={"resource_id": resource_id},
            )
        return self.pool.new_ticket(resource_id)

    async def _run_reported(self, ticket: DownloadTicket) -> FetchOutcome:
        try:
            payload = await self._run(ticket)
        except FetchError as e:
            return FetchOutcome(ticket=ticket, error=e)
        return FetchOutcome(ticket=ticket, payload=payload)

    async def _run(self, ticket: DownloadTicket) -> bytes:
        while True:
            attempt = ticket.retry_count + 1
            try:
                async with self.pool.slot(ticket):
                    probing = self.breaker.before_request()
                    try:
                        request = self.endpoint.build_request(self.client, ticket.resource_id)
                        payload = await send(self.client, request, ticket.resource_id)
                    except (RetryableError, NonRetryableError):
                        raise
                    except BaseException:
                        # no outcome will be recorded for this attempt
                        ticket.state = TicketState.FAILED
                        if probing:
                            self.breaker.release_probe()
                        raise

            except CircuitOpenError as e:
                ticket.state = TicketState.QUEUED
                logger.info(
                    f"{ticket.resource_id}: circuit '{self.breaker.name}' open, waiting {e.retry_in:.1f}s",
                    extra={"resource_id": ticket.resource_id, "attempt": attempt,
                           "wait_seconds": e.retry_in, "outcome": "circuit_open"},
                )
                await self._sleep(e.retry_in)
                continue

            except RetryableError as e:
                ticket.retry_count += 1
                ticket.error = e
                self.breaker.record_failure()
                if not self.policy.should_retry(e, ticket.retry_count):
                    ticket.state = TicketState.FAILED
                    logger.error(
                        f"{ticket.resource_id}: attempt {attempt}/{self.policy.max_attempts} failed, "
                        f"retries exhausted: {e.message}",
                        extra={"resource_id": ticket.resource_id, "attempt": attempt,
                               "wait_seconds": 0, "outcome": "exhausted"},
                    )
                    raise FetchExhaustedError(ticket.resource_id, ticket.retry_count, e)

                delay = self.policy.delay_for(ticket.retry_count, e)
                ticket.state = TicketState.QUEUED
                logger.warning(
                    f"{ticket.resource_id}: attempt {attempt}/{self.policy.max_attempts} failed "
                    f"({type(e).__name__}), requeueing after {delay:.1f}s",
                    extra={"resource_id": ticket.resource_id, "attempt": attempt,
                           "wait_seconds": delay, "outcome": "retry"},
                )
                await self._sleep(delay)
                continue

            except NonRetryableError as e:
                ticket.error = e
                ticket.state = TicketState.FAILED
                self.breaker.record_success()
                logger.error(
                    f"{ticket.resource_id}: attempt {attempt} failed permanently: {e.message}",
                    extra={"resource_id": ticket.resource_id, "attempt": attempt,
                           "wait_seconds": 0, "outcome": "failed"},
                )
                raise

            self.breaker.record_success()
            ticket.state = TicketState.DONE
            logger.info(
                f"{ticket.resource_id}: downloaded {len(payload)} bytes on attempt {attempt}",
                extra={"resource_id": ticket.resource_id, "attempt": attempt,
                       "wait_seconds": 0, "outcome": "success"},
            )
            return payload
