# ============================================================================
# File: ingestion/runner.py
# Description: Sync orchestrator driving fetch -> partition -> transform -> load -> gate
# ============================================================================
"""
Sync Orchestrator - top-level state machine of the notes sync daemon.

Per cycle:

    Idle -> FetchingIncremental -> (DelegatingFullResync | ProcessingIncremental)
         -> Committing -> Idle

- Refuses to start while a failed-execution marker exists
- Holds the exclusivity lock for the whole daemon lifetime
- Delegates to a full resynchronization from the snapshot when the
  incremental feed returns as many notes as it is allowed to
- Loader merge and integrity gate share one transaction
- Any fatal error writes the marker, alerts, and stops the process with a
  distinct exit code
"""

import asyncio
import enum
import logging
import time
import uuid
from pathlib import Path
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.database import ensure_base_tables
from core.exceptions import (
    FatalSyncError,
    PreviousFailureError,
    ShutdownInProgress,
    SyncException,
    LockContentionError,
    exit_code_for,
)
from core.timeutil import utcnow
from ingestion.extractors.notes_api import NotesApiClient
from ingestion.extractors.planet import PlanetSnapshotSource
from ingestion.integrity import IntegrityGate, read_checkpoint
from ingestion.loaders.notes_loader import NotesLoader
from ingestion.locking import ExclusivityLock
from ingestion.marker import AlertNotifier, FailedMarker
from ingestion.regions import NullRegionLookup, RegionLookup
from ingestion.transformers.parallel import ParallelTransformer
from ingestion.transformers.partitioner import Partitioner, count_records
from models.base import CycleStatus, SyncMode
from models.sync_cycle import SyncCycle
from schemas.results import CycleResult, GateDecision, LoadResult

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    IDLE = "idle"
    FETCHING_INCREMENTAL = "fetching_incremental"
    DELEGATING_FULL_RESYNC = "delegating_full_resync"
    PROCESSING_INCREMENTAL = "processing_incremental"
    COMMITTING = "committing"


class SyncOrchestrator:
    """
    Responsibilities:
    - Choose incremental vs full resynchronization per cycle
    - Drive the pipeline and own the commit
    - Keep the singleton lock and the cycle cadence
    - Convert fatal errors into an operator-visible halt
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notes_api: NotesApiClient,
        snapshot_source: PlanetSnapshotSource,
        lock: ExclusivityLock,
        marker: FailedMarker,
        partitioner: Optional[Partitioner] = None,
        transformer: Optional[ParallelTransformer] = None,
        region_lookup: Optional[RegionLookup] = None,
        alerter: Optional[AlertNotifier] = None,
        engine: Optional[AsyncEngine] = None,
        config: Settings = default_settings,
        clock: Callable = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.session_factory = session_factory
        self.notes_api = notes_api
        self.snapshot_source = snapshot_source
        self.lock = lock
        self.marker = marker
        self.partitioner = partitioner or Partitioner(config.PARTITION_SEARCH_WINDOW_BYTES)
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.transformer = transformer or ParallelTransformer.from_settings(
            config, shutdown_event=self.shutdown_event
        )
        self.region_lookup = region_lookup or NullRegionLookup()
        self.alerter = alerter or AlertNotifier(config.ALERT_WEBHOOK_URL)
        self.engine = engine
        self.config = config
        self._clock = clock
        self._monotonic = monotonic

        self.state = SyncState.IDLE
        self.current_cycle_id: Optional[UUID] = None
        self.failed_state: Optional[SyncState] = None

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Cooperative shutdown: in-flight work completes, no new work starts."""
        if not self.shutdown_event.is_set():
            logger.info("Shutdown requested; finishing in-flight work")
        self.shutdown_event.set()
        self.transformer.shutdown_event.set()
        self.snapshot_source.fetcher.shutdown()

    async def run_once(self) -> CycleResult:
        """Run a single cycle under the lock."""
        self._check_marker()
        await self._check_preconditions()
        async with self.lock.hold():
            return await self._guarded_cycle(1)

    async def run_forever(self) -> int:
        """
        Daemon loop. Returns the number of cycles run.

        Sleeps for the remainder of the cadence after each cycle, or not at
        all when the cycle took longer than the cadence.
        """
        self._check_marker()
        cycles = 0
        await self._check_preconditions()
        async with self.lock.hold():
            while not self._should_stop():
                cycles += 1
                started = self._monotonic()
                try:
                    await self._guarded_cycle(cycles)
                except ShutdownInProgress:
                    logger.info("Cycle interrupted by shutdown")
                    break

                delay = self.next_delay(self._monotonic() - started)
                if delay > 0:
                    logger.debug(f"Sleeping {delay:.1f}s until next cycle")
                    await self._wait(delay)
        logger.info(f"Sync daemon stopped after {cycles} cycles")
        return cycles

    def next_delay(self, elapsed: float) -> float:
        return max(0.0, self.config.SYNC_INTERVAL_SECONDS - elapsed)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, cycle_number: int) -> CycleResult:
        """
        One cycle; the caller holds the lock.

        Raises:
            ShutdownInProgress: Shutdown interrupted the cycle (nothing committed)
            SyncException / SQLAlchemyError: Any failure; the caller decides to halt
        """
        cycle_id = uuid.uuid4()
        self.current_cycle_id = cycle_id
        self.failed_state = None
        started = self._monotonic()
        mode = SyncMode.INCREMENTAL

        async with self.session_factory() as session:
            checkpoint = await read_checkpoint(session)
            before = checkpoint.timestamp if checkpoint else None

        await self._record_start(cycle_id, cycle_number, before)

        try:
            # --------------------------------------------------
            # PHASE 1: FETCH
            # --------------------------------------------------
            self._enter(SyncState.FETCHING_INCREMENTAL, cycle_id)

            if before is None:
                logger.info("No checkpoint yet; rebuilding from the snapshot")
                mode = SyncMode.FULL_RESYNC
                self._enter(SyncState.DELEGATING_FULL_RESYNC, cycle_id)
                document = await self.snapshot_source.download()
            else:
                if not await self.notes_api.has_updates_since(before):
                    logger.info(f"No updates since {before.isoformat()}")
                    result = CycleResult(
                        cycle_id=cycle_id,
                        cycle_number=cycle_number,
                        mode=mode.value,
                        status=CycleStatus.SKIPPED.value,
                        duration_seconds=self._monotonic() - started,
                        had_updates=False,
                    )
                    await self._record_end(result, before=before)
                    return result

                ceiling = self.config.INCREMENTAL_MAX_RECORDS
                document = await self.notes_api.fetch_since(before, ceiling)
                fetched = count_records(document)

                if fetched >= ceiling:
                    logger.warning(
                        f"Incremental feed returned {fetched} notes (ceiling {ceiling}); "
                        f"delegating cycle to full resynchronization"
                    )
                    mode = SyncMode.FULL_RESYNC
                    self._enter(SyncState.DELEGATING_FULL_RESYNC, cycle_id)
                    document = await self.snapshot_source.download()
                else:
                    self._enter(SyncState.PROCESSING_INCREMENTAL, cycle_id)

            records_fetched = count_records(document)

            # --------------------------------------------------
            # PHASE 2: PARTITION + TRANSFORM
            # --------------------------------------------------
            workers = self.transformer.worker_count()
            partitions = self.partitioner.split(document, self.transformer.target_partitions(workers))
            batch = await self.transformer.transform_all(document, partitions, workers)
            del document

            # --------------------------------------------------
            # PHASE 3: LOAD + GATE + COMMIT (one transaction)
            # --------------------------------------------------
            self._enter(SyncState.COMMITTING, cycle_id)
            load, decision = await self._commit(batch, cycle_id)

            result = CycleResult(
                cycle_id=cycle_id,
                cycle_number=cycle_number,
                mode=mode.value,
                status=(CycleStatus.SUCCESS if decision.passed else CycleStatus.WITHHELD).value,
                records_fetched=records_fetched,
                partitions=len(partitions),
                load=load,
                decision=decision,
                duration_seconds=self._monotonic() - started,
            )
            await self._record_end(result, before=before)
            logger.info(
                f"Cycle {cycle_number} ({mode.value}) finished: {result.status}, "
                f"{records_fetched} notes in {result.duration_seconds:.1f}s",
                extra={"cycle_id": str(cycle_id), "state": self.state.value},
            )
            return result

        except Exception as e:
            self.failed_state = self.state
            await self._record_failure(cycle_id, e, mode)
            raise

        finally:
            self._enter(SyncState.IDLE, cycle_id)

    async def _commit(self, batch, cycle_id: UUID):
        async with self.session_factory() as session:
            try:
                loader = NotesLoader.from_settings(session, self.region_lookup, self.config)
                load: LoadResult = await loader.load(batch)
                gate = IntegrityGate.from_settings(session, self.config)
                decision: GateDecision = await gate.evaluate(load, cycle_id)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return load, decision

    # ------------------------------------------------------------------
    # Halting
    # ------------------------------------------------------------------

    async def _guarded_cycle(self, cycle_number: int) -> CycleResult:
        if self.lock.lost:
            raise await self._halt(
                LockContentionError(self.lock.name, {"reason": "lock taken over while running"}),
                cycle_number,
            )
        try:
            return await self.run_cycle(cycle_number)
        except ShutdownInProgress:
            raise
        except Exception as e:
            raise await self._halt(e, cycle_number)

    async def _halt(self, error: BaseException, cycle_number: Optional[int] = None) -> FatalSyncError:
        stage = (self.failed_state or self.state).value
        details = self.marker.write(error, self.current_cycle_id, cycle_number, stage)
        await self.alerter.notify(details)

        exit_code = exit_code_for(error)
        logger.critical(
            f"Sync halted in stage '{stage}' (exit code {int(exit_code)}): {error}",
            extra={"cycle_id": str(self.current_cycle_id), "state": stage},
        )
        return FatalSyncError(
            "Sync halted; operator must clear the failed-execution marker",
            exit_code=exit_code,
            context={"cycle_id": str(self.current_cycle_id), "stage": stage},
            original_exception=error if isinstance(error, Exception) else None,
        )

    def _check_marker(self) -> None:
        if self.marker.exists():
            raise PreviousFailureError(
                f"Failed-execution marker {self.marker.path} exists; refusing to run",
                context={"marker": self.marker.read()},
            )

    async def _check_preconditions(self) -> None:
        if self.engine is None:
            return
        try:
            await ensure_base_tables(self.engine)
        except SyncException as e:
            raise await self._halt(e)

    def _should_stop(self) -> bool:
        if self.shutdown_event.is_set():
            return True
        flag = Path(self.config.SHUTDOWN_FLAG_PATH)
        if flag.exists():
            logger.info(f"Shutdown flag {flag} found")
            flag.unlink(missing_ok=True)
            self.request_shutdown()
            return True
        return False

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _enter(self, state: SyncState, cycle_id: UUID) -> None:
        self.state = state
        logger.debug(f"State -> {state.value}", extra={"cycle_id": str(cycle_id), "state": state.value})

    # ------------------------------------------------------------------
    # Cycle audit trail
    # ------------------------------------------------------------------

    async def _record_start(self, cycle_id: UUID, cycle_number: int, before) -> None:
        async with self.session_factory() as session:
            session.add(SyncCycle(
                cycle_id=cycle_id,
                cycle_number=cycle_number,
                status=CycleStatus.RUNNING,
                state=SyncState.FETCHING_INCREMENTAL.value,
                started_at=self._clock(),
                checkpoint_before=before,
            ))
            await session.commit()

    async def _record_end(self, result: CycleResult, before) -> None:
        async with self.session_factory() as session:
            cycle = await session.get(SyncCycle, result.cycle_id)
            if cycle is None:
                return
            cycle.mode = SyncMode(result.mode)
            cycle.status = CycleStatus(result.status)
            cycle.state = self.state.value
            cycle.completed_at = self._clock()
            cycle.duration_seconds = result.duration_seconds
            cycle.records_fetched = result.records_fetched
            cycle.partitions = result.partitions
            if result.load is not None:
                cycle.notes_inserted = result.load.notes_inserted
                cycle.notes_updated = result.load.notes_updated
                cycle.comments_inserted = result.load.comments_inserted
                cycle.integrity_ratio = result.load.integrity_ratio
            cycle.checkpoint_after = result.decision.checkpoint_after if result.decision else before
            await session.commit()

    async def _record_failure(self, cycle_id: UUID, error: Exception, mode: SyncMode) -> None:
        try:
            async with self.session_factory() as session:
                cycle = await session.get(SyncCycle, cycle_id)
                if cycle is None:
                    return
                cycle.mode = mode
                cycle.status = CycleStatus.FAILED
                cycle.state = self.state.value
                cycle.completed_at = self._clock()
                cycle.error_message = str(error)[:2000]
                cycle.error_details = error.to_dict() if isinstance(error, SyncException) else {
                    "error_type": type(error).__name__
                }
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record failure of cycle {cycle_id}: {e}")
