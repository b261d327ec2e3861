import pytest

from core.database import BASE_TABLES, ensure_base_tables
from core.exceptions import FatalSyncError, PreconditionError
from core.exit_codes import ExitCode
from ingestion.locking import ExclusivityLock
from ingestion.marker import AlertNotifier, FailedMarker
from ingestion.runner import SyncOrchestrator
from models.note import NoteComment


@pytest.mark.asyncio
async def test_base_tables_present(test_engine):
    await ensure_base_tables(test_engine)


@pytest.mark.asyncio
async def test_missing_table_is_precondition_error(test_engine):
    with pytest.raises(PreconditionError) as exc_info:
        await ensure_base_tables(test_engine, required=BASE_TABLES + ("regions_archive",))
    assert exc_info.value.context["missing_tables"] == ["regions_archive"]


@pytest.mark.asyncio
async def test_orchestrator_halts_without_base_tables(test_engine, session_factory, test_settings):
    async with test_engine.begin() as conn:
        await conn.run_sync(NoteComment.__table__.drop)

    orchestrator = SyncOrchestrator(
        session_factory,
        notes_api=None,
        snapshot_source=None,
        lock=ExclusivityLock(session_factory, test_settings.LOCK_NAME, heartbeat_interval=3600),
        marker=FailedMarker(test_settings.FAILED_MARKER_PATH),
        alerter=AlertNotifier(webhook_url=None),
        engine=test_engine,
        config=test_settings,
    )

    with pytest.raises(FatalSyncError) as exc_info:
        await orchestrator.run_once()

    assert exc_info.value.exit_code == ExitCode.PRECONDITION_FAILED
    assert FailedMarker(test_settings.FAILED_MARKER_PATH).read()["error"]["error_type"] == "PreconditionError"
