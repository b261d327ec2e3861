"""
Run the gap reconciler once, outside the scheduler.
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import engine
from core.exceptions import SyncException, exit_code_for
from core.exit_codes import ExitCode
from core.logging import setup_logging
from ingestion.factory import build_reconciler
from ingestion.fetcher.http import build_client

setup_logging()
logger = logging.getLogger(__name__)


async def run_reconciler() -> int:
    try:
        async with build_client() as client:
            reconciler = build_reconciler(client)
            result = await reconciler.run()
        logger.info(
            f"Reconciler finished: {result.notes_inserted} notes and {result.comments_inserted} comments inserted, "
            f"{result.notes_hidden} hidden, {result.gaps_processed} gaps processed"
        )
        return int(ExitCode.OK)
    except SyncException as e:
        logger.error(f"Reconciler failed: {str(e)}")
        return int(exit_code_for(e))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(run_reconciler()))
