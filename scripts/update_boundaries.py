"""
Refresh country and maritime boundaries from the boundary source.
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
from ingestion.factory import build_boundary_updater
from ingestion.fetcher.http import build_client

setup_logging()
logger = logging.getLogger(__name__)


async def update_boundaries() -> int:
    try:
        async with build_client() as client:
            results = await build_boundary_updater(client).refresh_all()
    except SyncException as e:
        logger.error(f"Boundary refresh failed: {str(e)}")
        return int(exit_code_for(e))
    finally:
        await engine.dispose()

    incomplete = False
    for result in results:
        logger.info(f"{result.kind.value}: {result.stored}/{result.listed} stored")
        if result.failed_ids:
            incomplete = True
            logger.warning(f"{result.kind.value}: not downloaded: {', '.join(result.failed_ids)}")
    return int(ExitCode.GENERAL_ERROR if incomplete else ExitCode.OK)


if __name__ == "__main__":
    sys.exit(asyncio.run(update_boundaries()))
