"""
Full snapshot source.

The snapshot is one large compressed document describing every note as of
its publication time. It is downloaded through the rate-limited fetcher
like any other external resource.
"""

import asyncio
import bz2
import logging

from core.config import settings
from core.exceptions import DataFormatError
from ingestion.fetcher.fetcher import RateLimitedFetcher

logger = logging.getLogger(__name__)


class PlanetSnapshotSource:
    def __init__(self, fetcher: RateLimitedFetcher, path: str = settings.PLANET_NOTES_PATH):
        self.fetcher = fetcher
        self.path = path

    async def download(self) -> bytes:
        """Download and decompress the snapshot document."""
        payload = await self.fetcher.fetch(self.path)
        logger.info(f"Downloaded snapshot {self.path}: {len(payload)} bytes")

        if self.path.endswith(".bz2"):
            try:
                payload = await asyncio.to_thread(bz2.decompress, payload)
            except (OSError, ValueError) as e:
                raise DataFormatError(
                    "Snapshot is not a valid bzip2 stream",
                    context={"path": self.path, "size": len(payload)},
                    original_exception=e,
                )
            logger.info(f"Decompressed snapshot to {len(payload)} bytes")
        return payload
