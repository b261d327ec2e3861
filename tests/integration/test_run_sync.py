"""
Daemon entry point: exit codes seen by the process supervisor
"""

import functools
import importlib.util
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import ingestion.factory
from core.exceptions import ShutdownInProgress
from core.exit_codes import ExitCode
from ingestion.marker import FailedMarker

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "run_sync.py"


def load_run_sync():
    spec = importlib.util.spec_from_file_location("run_sync_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.asyncio
async def test_empty_database_exits_precondition_failed_with_marker(tmp_path, test_settings):
    script = load_run_sync()
    empty = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", poolclass=NullPool)
    sessions = async_sessionmaker(empty, class_=AsyncSession, expire_on_commit=False)

    with patch.object(ingestion.factory, "engine", empty), \
            patch.object(ingestion.factory, "async_session_maker", sessions), \
            patch.object(script, "engine", empty), \
            patch.object(script, "build_orchestrator",
                         functools.partial(ingestion.factory.build_orchestrator, config=test_settings)):
        code = await script.run_sync(once=True)

    assert code == ExitCode.PRECONDITION_FAILED
    details = FailedMarker(test_settings.FAILED_MARKER_PATH).read()
    assert details["error"]["error_type"] == "PreconditionError"
    assert "regions" in details["error"]["context"]["missing_tables"]


@pytest.mark.asyncio
async def test_shutdown_during_cycle_exits_cleanly():
    script = load_run_sync()
    orchestrator = MagicMock()
    orchestrator.run_once = AsyncMock(side_effect=ShutdownInProgress("Fetcher is shutting down"))

    with patch.object(script, "engine", MagicMock(dispose=AsyncMock())), \
            patch.object(script, "build_orchestrator", MagicMock(return_value=orchestrator)):
        code = await script.run_sync(once=True)

    assert code == ExitCode.OK
    orchestrator.run_once.assert_awaited_once()
