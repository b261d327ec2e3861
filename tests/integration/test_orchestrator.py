"""
Sync orchestrator cycles end to end against SQLite with stubbed sources
"""

from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from core.exceptions import (
    FatalSyncError,
    FetchExhaustedError,
    LockContentionError,
    NetworkError,
    PreviousFailureError,
)
from core.exit_codes import ExitCode
from ingestion.integrity import read_checkpoint
from ingestion.locking import ExclusivityLock
from ingestion.marker import AlertNotifier, FailedMarker
from ingestion.runner import SyncOrchestrator, SyncState
from models.base import CycleStatus, SyncMode
from models.checkpoint import CHECKPOINT_ROW_ID, SyncCheckpoint
from models.data_gap import DataGap
from models.note import Note
from models.sync_cycle import SyncCycle
from tests.helpers import api_document, api_note, snapshot_document, snapshot_note


def make_orchestrator(session_factory, config, api_doc=None, snapshot_doc=None, hostname="host-a"):
    notes_api = MagicMock()
    notes_api.has_updates_since = AsyncMock(return_value=True)
    notes_api.fetch_since = AsyncMock(return_value=api_doc or api_document([]))

    snapshot_source = MagicMock()
    snapshot_source.download = AsyncMock(return_value=snapshot_doc or snapshot_document([]))

    return SyncOrchestrator(
        session_factory,
        notes_api=notes_api,
        snapshot_source=snapshot_source,
        lock=ExclusivityLock(session_factory, config.LOCK_NAME, heartbeat_interval=3600, hostname=hostname),
        marker=FailedMarker(config.FAILED_MARKER_PATH),
        alerter=AlertNotifier(webhook_url=None),
        config=config,
    )


async def seed_checkpoint(session_factory, timestamp):
    async with session_factory() as session:
        session.add(SyncCheckpoint(id=CHECKPOINT_ROW_ID, timestamp=timestamp, integrity_passed=True))
        await session.commit()


async def cycles(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(SyncCycle).order_by(SyncCycle.started_at))).scalars().all()


async def note_count(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Note))


@pytest.mark.asyncio
async def test_incremental_cycle_advances_checkpoint(session_factory, test_settings, now, recent):
    await seed_checkpoint(session_factory, now - timedelta(hours=2))
    orchestrator = make_orchestrator(
        session_factory,
        test_settings,
        api_doc=api_document([api_note(i, recent, comments=2) for i in range(1, 6)]),
    )

    result = await orchestrator.run_once()

    assert result.mode == SyncMode.INCREMENTAL.value
    assert result.status == CycleStatus.SUCCESS.value
    assert result.records_fetched == 5
    assert result.load.notes_inserted == 5
    assert result.load.comments_inserted == 10
    assert result.decision.checkpoint_after == recent
    assert orchestrator.state is SyncState.IDLE
    orchestrator.snapshot_source.download.assert_not_awaited()

    async with session_factory() as session:
        assert (await read_checkpoint(session)).timestamp == recent
    [cycle] = await cycles(session_factory)
    assert cycle.status == CycleStatus.SUCCESS
    assert cycle.notes_inserted == 5
    assert cycle.checkpoint_after == recent


@pytest.mark.asyncio
async def test_missing_checkpoint_rebuilds_from_snapshot(session_factory, test_settings, recent):
    orchestrator = make_orchestrator(
        session_factory,
        test_settings,
        snapshot_doc=snapshot_document([snapshot_note(i, recent) for i in range(1, 4)]),
    )

    result = await orchestrator.run_once()

    assert result.mode == SyncMode.FULL_RESYNC.value
    assert result.status == CycleStatus.SUCCESS.value
    orchestrator.notes_api.fetch_since.assert_not_awaited()
    assert await note_count(session_factory) == 3
    async with session_factory() as session:
        assert (await read_checkpoint(session)).timestamp == recent


@pytest.mark.asyncio
async def test_feed_at_ceiling_delegates_to_snapshot(session_factory, test_settings, now, recent):
    config = test_settings.model_copy(update={"INCREMENTAL_MAX_RECORDS": 2})
    await seed_checkpoint(session_factory, now - timedelta(days=30))
    old = now - timedelta(days=10)
    orchestrator = make_orchestrator(
        session_factory,
        config,
        api_doc=api_document([api_note(1, recent), api_note(2, recent)]),
        snapshot_doc=snapshot_document([snapshot_note(i, old) for i in range(1, 5)]),
    )

    result = await orchestrator.run_once()

    assert result.mode == SyncMode.FULL_RESYNC.value
    assert result.records_fetched == 4
    orchestrator.notes_api.fetch_since.assert_awaited_once()
    assert orchestrator.notes_api.fetch_since.await_args.args[1] == 2
    orchestrator.snapshot_source.download.assert_awaited_once()
    assert await note_count(session_factory) == 4


@pytest.mark.asyncio
async def test_idle_feed_skips_cycle(session_factory, test_settings, now):
    checkpoint = now - timedelta(hours=1)
    await seed_checkpoint(session_factory, checkpoint)
    orchestrator = make_orchestrator(session_factory, test_settings)
    orchestrator.notes_api.has_updates_since.return_value = False

    result = await orchestrator.run_once()

    assert result.status == CycleStatus.SKIPPED.value
    assert result.had_updates is False
    orchestrator.notes_api.fetch_since.assert_not_awaited()
    [cycle] = await cycles(session_factory)
    assert cycle.status == CycleStatus.SKIPPED
    assert cycle.checkpoint_after == checkpoint


@pytest.mark.asyncio
async def test_failed_integrity_withholds_checkpoint(session_factory, test_settings, now, recent):
    before = now - timedelta(hours=2)
    await seed_checkpoint(session_factory, before)
    orchestrator = make_orchestrator(
        session_factory,
        test_settings,
        api_doc=api_document(
            [api_note(i, recent) for i in range(1, 6)]
            + [api_note(i, recent, comments=0) for i in range(6, 11)]
        ),
    )

    result = await orchestrator.run_once()

    assert result.status == CycleStatus.WITHHELD.value
    assert result.decision.passed is False
    assert await note_count(session_factory) == 10
    async with session_factory() as session:
        assert (await read_checkpoint(session)).timestamp == before
        gap = (await session.execute(select(DataGap))).scalar_one()
    assert gap.blocking is True
    assert gap.identifiers == [6, 7, 8, 9, 10]
    assert not Path(test_settings.FAILED_MARKER_PATH).exists()


@pytest.mark.asyncio
async def test_fatal_error_writes_marker_and_halts(session_factory, test_settings, now):
    await seed_checkpoint(session_factory, now - timedelta(hours=1))
    orchestrator = make_orchestrator(session_factory, test_settings)
    orchestrator.notes_api.fetch_since.side_effect = FetchExhaustedError(
        "notes-search", 7, NetworkError("connection reset")
    )

    with pytest.raises(FatalSyncError) as exc_info:
        await orchestrator.run_once()

    assert exc_info.value.exit_code == ExitCode.INTEGRITY_HALT
    marker = FailedMarker(test_settings.FAILED_MARKER_PATH).read()
    assert marker["stage"] == SyncState.FETCHING_INCREMENTAL.value
    assert marker["error"]["error_type"] == "FetchExhaustedError"

    [cycle] = await cycles(session_factory)
    assert cycle.status == CycleStatus.FAILED
    assert str(cycle.cycle_id) == marker["cycle_id"]

    # nothing was committed and the lock was released
    assert await note_count(session_factory) == 0
    with pytest.raises(PreviousFailureError):
        await make_orchestrator(session_factory, test_settings).run_once()


@pytest.mark.asyncio
async def test_lock_contention_exits_without_side_effects(session_factory, test_settings):
    other = ExclusivityLock(
        session_factory, test_settings.LOCK_NAME, heartbeat_interval=3600, hostname="host-b"
    )
    await other.acquire()
    orchestrator = make_orchestrator(session_factory, test_settings)

    with pytest.raises(LockContentionError):
        await orchestrator.run_once()

    assert not Path(test_settings.FAILED_MARKER_PATH).exists()
    assert await cycles(session_factory) == []
    orchestrator.notes_api.has_updates_since.assert_not_awaited()


@pytest.mark.asyncio
async def test_shutdown_flag_stops_daemon(session_factory, test_settings, now):
    await seed_checkpoint(session_factory, now - timedelta(hours=1))
    orchestrator = make_orchestrator(session_factory, test_settings)
    flag = Path(test_settings.SHUTDOWN_FLAG_PATH)

    async def no_updates(since):
        flag.touch()
        return False

    orchestrator.notes_api.has_updates_since.side_effect = no_updates

    assert await orchestrator.run_forever() == 1
    assert not flag.exists()
    assert orchestrator.shutdown_event.is_set()
    orchestrator.snapshot_source.fetcher.shutdown.assert_called_once()


@pytest.mark.asyncio
async def test_shutdown_before_transform_commits_nothing(session_factory, test_settings, now, recent):
    await seed_checkpoint(session_factory, now - timedelta(hours=1))
    orchestrator = make_orchestrator(
        session_factory,
        test_settings,
        api_doc=api_document([api_note(1, recent)]),
    )

    async def fetch_then_stop(since, limit):
        orchestrator.request_shutdown()
        return api_document([api_note(1, recent)])

    orchestrator.notes_api.fetch_since.side_effect = fetch_then_stop

    assert await orchestrator.run_forever() == 1
    assert await note_count(session_factory) == 0
    assert not Path(test_settings.FAILED_MARKER_PATH).exists()


def test_next_delay_never_negative(test_settings):
    config = test_settings.model_copy(update={"SYNC_INTERVAL_SECONDS": 60})
    orchestrator = make_orchestrator(MagicMock(), config)

    assert orchestrator.next_delay(15.0) == 45.0
    assert orchestrator.next_delay(90.0) == 0.0
