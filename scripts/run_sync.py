"""
Run the notes sync daemon.

    python scripts/run_sync.py          # loop until SIGINT/SIGTERM or the shutdown flag
    python scripts/run_sync.py --once   # single cycle

Exit codes are listed in core/exit_codes.py.
"""

import asyncio
import logging
import signal
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from pydantic import ValidationError
from core.exit_codes import ExitCode

try:
    from core.config import settings
except ValidationError as e:
    print(f"Invalid configuration: {e}", file=sys.stderr)
    sys.exit(int(ExitCode.CONFIGURATION_ERROR))

from core.database import engine
from core.exceptions import FatalSyncError, ShutdownInProgress, SyncException, exit_code_for
from core.logging import setup_logging
from ingestion.factory import build_orchestrator
from ingestion.fetcher.http import build_client

setup_logging()
logger = logging.getLogger(__name__)


async def run_sync(once: bool) -> int:
    shutdown_event = asyncio.Event()

    try:
        async with build_client() as client:
            orchestrator = build_orchestrator(client, shutdown_event)

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, orchestrator.request_shutdown)

            if once:
                result = await orchestrator.run_once()
                logger.info(f"Cycle finished: {result.status} ({result.mode})")
            else:
                await orchestrator.run_forever()
        return int(ExitCode.OK)

    except ShutdownInProgress:
        logger.info("Shutdown requested; in-flight cycle abandoned without advancing the checkpoint")
        return int(ExitCode.OK)
    except FatalSyncError as e:
        logger.critical(str(e))
        return int(e.exit_code)
    except SyncException as e:
        # Refusals before any cycle ran: lock contention, leftover marker
        logger.error(str(e))
        return int(exit_code_for(e))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(run_sync("--once" in sys.argv[1:])))
