"""
Boundary updater: keeps the ``regions`` table in line with the boundary source.

For each zone kind the list of relation ids is downloaded first, then every
relation geometry is fetched through the shared rate-limited fetcher.
Exhausted tickets are reported back, never silently dropped.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import DatabaseError, DataFormatError
from core.timeutil import utcnow
from ingestion.fetcher.fetcher import RateLimitedFetcher
from ingestion.fetcher.http import LIST_PREFIX
from ingestion.loaders.staging import upsert_insert
from models.base import ZoneKind
from models.region import Region

logger = logging.getLogger(__name__)


@dataclass
class BoundaryRefreshResult:
    kind: ZoneKind
    listed: int = 0
    stored: int = 0
    failed_ids: List[str] = field(default_factory=list)
    invalid_ids: List[str] = field(default_factory=list)


def parse_relation_ids(payload: bytes) -> List[str]:
    """One numeric id per line (Overpass csv output)"""
    ids = []
    for line in payload.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if line.isdigit():
            ids.append(line)
    return ids


def parse_boundary(relation_id: str, payload: bytes, kind: ZoneKind) -> Dict[str, Any]:
    """
    Turn an Overpass JSON response for one relation into a ``regions`` row.

    Geometry is the list of outer rings as ``[lon, lat]`` coordinate lists;
    the bounding box covers every outer-way node.
    """
    try:
        elements = json.loads(payload)["elements"]
    except (ValueError, KeyError, TypeError) as e:
        raise DataFormatError(
            f"Malformed boundary document for relation {relation_id}",
            context={"relation_id": relation_id},
            original_exception=e,
        )

    nodes = {e["id"]: (e["lon"], e["lat"]) for e in elements if e.get("type") == "node"}
    ways = {e["id"]: e.get("nodes", []) for e in elements if e.get("type") == "way"}
    relation = next(
        (e for e in elements if e.get("type") == "relation" and str(e.get("id")) == relation_id),
        None,
    )
    if relation is None:
        raise DataFormatError(
            f"Relation {relation_id} missing from boundary document",
            context={"relation_id": relation_id},
        )

    rings = []
    for member in relation.get("members", []):
        if member.get("type") != "way" or member.get("role", "outer") != "outer":
            continue
        ring = [list(nodes[n]) for n in ways.get(member.get("ref"), []) if n in nodes]
        if ring:
            rings.append(ring)

    points = [p for ring in rings for p in ring]
    tags = relation.get("tags", {})
    row: Dict[str, Any] = {
        "region_id": int(relation_id),
        "kind": kind,
        "name": tags.get("name:en") or tags.get("name"),
        "geometry": {"type": "MultiLineString", "coordinates": rings} if rings else None,
        "min_lat": None,
        "min_lon": None,
        "max_lat": None,
        "max_lon": None,
        "updated_at": utcnow(),
    }
    if points:
        row["min_lon"] = min(p[0] for p in points)
        row["max_lon"] = max(p[0] for p in points)
        row["min_lat"] = min(p[1] for p in points)
        row["max_lat"] = max(p[1] for p in points)
    return row


class BoundaryUpdater:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], fetcher: RateLimitedFetcher):
        self.session_factory = session_factory
        self.fetcher = fetcher

    async def refresh_all(self) -> List[BoundaryRefreshResult]:
        return [await self.refresh(kind) for kind in ZoneKind]

    async def refresh(self, kind: ZoneKind) -> BoundaryRefreshResult:
        result = BoundaryRefreshResult(kind=kind)

        ids = parse_relation_ids(await self.fetcher.fetch(f"{LIST_PREFIX}{kind.value}"))
        result.listed = len(ids)
        logger.info(f"Boundary source lists {len(ids)} {kind.value} relations")

        report = await self.fetcher.fetch_many(ids)
        result.failed_ids = [o.ticket.resource_id for o in report.failed]
        for outcome in report.failed:
            logger.error(
                f"Boundary {outcome.ticket.resource_id} not downloaded: {outcome.error}",
                extra={"resource_id": outcome.ticket.resource_id, "outcome": "failed"},
            )

        rows = []
        for relation_id, payload in report.payloads.items():
            try:
                rows.append(parse_boundary(relation_id, payload, kind))
            except DataFormatError as e:
                logger.warning(str(e))
                result.invalid_ids.append(relation_id)

        result.stored = await self._store(rows)
        logger.info(
            f"Stored {result.stored} {kind.value} boundaries "
            f"({len(result.failed_ids)} failed, {len(result.invalid_ids)} invalid)"
        )
        return result

    async def _store(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        async with self.session_factory() as session:
            try:
                for row in rows:
                    stmt = upsert_insert(session, Region).values(**row)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[Region.region_id],
                        set_={
                            c: getattr(stmt.excluded, c)
                            for c in ("kind", "name", "geometry", "min_lat", "min_lon",
                                      "max_lat", "max_lon", "updated_at")
                        },
                    )
                    await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(
                    "Failed to store boundaries",
                    context={"operation": "UPSERT", "table_name": "regions", "rows": len(rows)},
                    original_exception=e,
                )
        return len(rows)
