"""
Split a raw feed document into byte ranges that start on note boundaries.

A cut is only ever placed immediately before a ``<note`` start tag, so every
note element lies entirely inside one partition. Partitions never overlap
and together cover the whole document.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from core.config import settings

logger = logging.getLogger(__name__)

# Start tag of a note element in both feed formats (<note id=...>, <note lon=...>)
RECORD_MARKER = re.compile(rb"<note[\s>/]")
_MARKER_PREFIX = b"<note"
_MARKER_LENGTH = len(_MARKER_PREFIX) + 1


def count_records(document: bytes) -> int:
    """Number of note elements in a document"""
    return sum(1 for _ in RECORD_MARKER.finditer(document))


@dataclass(frozen=True)
class Partition:
    index: int
    start: int
    end: int
    worker: Optional[int] = None

    @property
    def length(self) -> int:
        return self.end - self.start


class Partitioner:
    """
    Attributes:
        search_window: Bytes scanned forward, then backward, from each
            candidate offset when looking for a note boundary
    """

    def __init__(self, search_window: int = settings.PARTITION_SEARCH_WINDOW_BYTES):
        if search_window < 1:
            raise ValueError("search_window must be positive")
        self.search_window = search_window

    def split(self, document: bytes, target_count: int) -> List[Partition]:
        """
        Split ``document`` into at most ``target_count`` partitions.

        Falls back to a single partition (with a warning) when the document
        has no note boundary at all, or when a candidate offset has none
        within the search window.
        """
        if target_count < 1:
            raise ValueError("target_count must be at least 1")

        size = len(document)
        whole = [Partition(index=0, start=0, end=size)]

        if RECORD_MARKER.search(document) is None:
            if size:
                logger.warning(
                    f"No note boundary in {size}-byte document; processing as a single partition"
                )
            return whole
        if target_count == 1:
            return whole

        cuts = set()
        for i in range(1, target_count):
            candidate = (size * i) // target_count
            boundary = self._find_boundary(document, candidate)
            if boundary is None:
                logger.warning(
                    f"No note boundary within {self.search_window} bytes of offset {candidate}; "
                    f"processing {size}-byte document as a single partition"
                )
                return whole
            if 0 < boundary < size:
                cuts.add(boundary)

        edges = [0] + sorted(cuts) + [size]
        partitions = [
            Partition(index=i, start=edges[i], end=edges[i + 1])
            for i in range(len(edges) - 1)
        ]
        logger.debug(f"Split {size} bytes into {len(partitions)} partitions (target {target_count})")
        return partitions

    def _find_boundary(self, document: bytes, offset: int) -> Optional[int]:
        size = len(document)

        forward_end = min(size, offset + self.search_window + _MARKER_LENGTH)
        match = RECORD_MARKER.search(document, offset, forward_end)
        if match is not None:
            return match.start()

        lower = max(0, offset - self.search_window)
        position = offset
        while True:
            position = document.rfind(_MARKER_PREFIX, lower, position + len(_MARKER_PREFIX) - 1)
            if position < 0:
                return None
            if RECORD_MARKER.match(document, position):
                return position
            if position == lower:
                return None
