"""
Region lookup capability used by the loader for newly seen notes.

The loader depends only on the RegionLookup protocol. Precise
point-in-polygon assignment belongs to an external geometry service;
StoredRegionLookup is a bounding-box approximation over the boundaries the
BoundaryUpdater keeps in the ``regions`` table.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import ZoneKind
from models.region import Region

logger = logging.getLogger(__name__)


class RegionLookup(Protocol):
    async def region_of(self, latitude: float, longitude: float) -> Optional[int]:
        ...


class NullRegionLookup:
    """Leaves every note unassigned"""

    async def region_of(self, latitude: float, longitude: float) -> Optional[int]:
        return None


@dataclass(frozen=True)
class _Box:
    region_id: int
    kind: ZoneKind
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    @property
    def area(self) -> float:
        return (self.max_lat - self.min_lat) * (self.max_lon - self.min_lon)

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.min_lat <= latitude <= self.max_lat and self.min_lon <= longitude <= self.max_lon


class StoredRegionLookup:
    """
    Smallest stored bounding box containing the point; countries win over
    maritime zones.
    """

    def __init__(self, boxes: Optional[List[_Box]] = None):
        self._boxes = boxes or []

    @classmethod
    async def load(cls, session: AsyncSession) -> "StoredRegionLookup":
        result = await session.execute(
            select(Region).where(
                Region.min_lat.is_not(None),
                Region.min_lon.is_not(None),
                Region.max_lat.is_not(None),
                Region.max_lon.is_not(None),
            )
        )
        boxes = [
            _Box(r.region_id, r.kind, r.min_lat, r.min_lon, r.max_lat, r.max_lon)
            for r in result.scalars().all()
        ]
        logger.info(f"Loaded {len(boxes)} region bounding boxes")
        return cls(boxes)

    async def region_of(self, latitude: float, longitude: float) -> Optional[int]:
        candidates = [b for b in self._boxes if b.contains(latitude, longitude)]
        if not candidates:
            return None
        candidates.sort(key=lambda b: (b.kind is not ZoneKind.COUNTRY, b.area))
        return candidates[0].region_id


class DeferredRegionLookup:
    """
    StoredRegionLookup loaded on the first lookup instead of at wiring time,
    so a store without its base tables fails the startup precondition check
    rather than the constructor.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory
        self._lookup: Optional[StoredRegionLookup] = None
        self._loading = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._lookup is not None

    async def region_of(self, latitude: float, longitude: float) -> Optional[int]:
        if self._lookup is None:
            async with self._loading:
                if self._lookup is None:
                    async with self.session_factory() as session:
                        self._lookup = await StoredRegionLookup.load(session)
        return await self._lookup.region_of(latitude, longitude)
