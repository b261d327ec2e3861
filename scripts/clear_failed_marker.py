"""
Operator command: show and remove the failed-execution marker so the sync
daemon may start again.

    python scripts/clear_failed_marker.py          # show and clear
    python scripts/clear_failed_marker.py --show   # show only
"""

import json
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from ingestion.marker import FailedMarker

setup_logging()
logger = logging.getLogger(__name__)


def clear_failed_marker(show_only: bool = False) -> int:
    marker = FailedMarker()
    details = marker.read()
    if details is None:
        logger.info(f"No failed-execution marker at {marker.path}")
        return 0

    print(json.dumps(details, indent=2))
    if not show_only:
        marker.clear()
    return 0


if __name__ == "__main__":
    sys.exit(clear_failed_marker("--show" in sys.argv[1:]))
