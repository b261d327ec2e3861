"""
Create every table of the notes store.

Usage:
    python scripts/init_db.py

Safe to re-run: existing tables are left alone. Afterwards the base-table
precondition the sync daemon checks at startup is verified.
"""

import asyncio
import logging
import os
import sys

sys.path.append(os.getcwd())

from core.database import engine, ensure_base_tables
from core.exceptions import PreconditionError
from core.exit_codes import ExitCode
from core.logging import setup_logging
from models import Base

setup_logging()
logger = logging.getLogger(__name__)


async def init_database() -> int:
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

        await ensure_base_tables(engine)
    except PreconditionError as e:
        logger.error(str(e))
        return ExitCode.PRECONDITION_FAILED
    finally:
        await engine.dispose()
    return ExitCode.OK


if __name__ == "__main__":
    sys.exit(asyncio.run(init_database()))
