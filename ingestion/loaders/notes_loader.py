"""
Load row batches into the durable store with idempotent upserts.

Two phases run inside the caller's transaction:

1. Stage: truncate the cycle staging tables and bulk-insert the batch.
2. Merge: upsert staged notes into ``notes`` and insert-if-absent staged
   comments into ``note_comments``.

Afterwards the integrity ratio is computed over recently created notes.
Nothing is committed here; the integrity gate decides in the same
transaction and the orchestrator commits.
"""

from datetime import timedelta
from typing import Callable, List, Optional
import logging

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, settings as default_settings
from core.exceptions import DatabaseError, UpsertError
from core.timeutil import utcnow
from ingestion.loaders.staging import StagingWriter, chunked, upsert_insert
from ingestion.regions import NullRegionLookup, RegionLookup
from models.note import Note, NoteComment, NoteCommentStaging, NoteStaging
from schemas.results import LoadResult
from schemas.rows import RowBatch

logger = logging.getLogger(__name__)

NOTE_COLUMNS = ("note_id", "latitude", "longitude", "created_at", "closed_at", "status", "region_id")
COMMENT_COLUMNS = ("note_id", "sequence", "action", "created_at", "user_id", "username", "body")


class NotesLoader:
    """
    Stage + merge loader.

    Ensures:
    - Loading the same batch twice leaves the same notes and comments
    - A conflicting note only updates status, closure and region, and keeps
      an existing region unless the incoming row carries one
    - Comments are never updated, only inserted when absent
    - Region lookup runs only for notes not yet in the store
    """

    def __init__(
        self,
        db_session: AsyncSession,
        region_lookup: Optional[RegionLookup] = None,
        batch_size: int = 500,
        integrity_window: timedelta = timedelta(hours=24),
        integrity_grace: timedelta = timedelta(0),
        gap_max_identifiers: int = 1000,
        clock: Callable = utcnow,
    ):
        self.db = db_session
        self.region_lookup = region_lookup or NullRegionLookup()
        self.batch_size = batch_size
        self.integrity_window = integrity_window
        self.integrity_grace = integrity_grace
        self.gap_max_identifiers = gap_max_identifiers
        self._clock = clock
        self.staging = StagingWriter(db_session, NoteStaging, NoteCommentStaging, batch_size)

    @classmethod
    def from_settings(
        cls,
        db_session: AsyncSession,
        region_lookup: Optional[RegionLookup] = None,
        config: Settings = default_settings,
        **kwargs,
    ) -> "NotesLoader":
        return cls(
            db_session,
            region_lookup=region_lookup,
            batch_size=config.LOAD_BATCH_SIZE,
            integrity_window=timedelta(hours=config.INTEGRITY_WINDOW_HOURS),
            integrity_grace=timedelta(minutes=config.INTEGRITY_GRACE_MINUTES),
            gap_max_identifiers=config.GAP_MAX_IDENTIFIERS,
            **kwargs,
        )

    async def load(self, batch: RowBatch) -> LoadResult:
        """
        Stage and merge a batch, then measure integrity.

        Returns:
            LoadResult with insert/update counts, the integrity ratio and the
            newest timestamp seen in the batch

        Raises:
            DatabaseError: Staging or integrity queries failed
            UpsertError: The merge into durable tables failed
        """
        # --------------------------------------------------
        # PHASE 1: STAGING
        # --------------------------------------------------
        staged_notes, staged_comments = await self.staging.write(batch)

        # --------------------------------------------------
        # PHASE 2: REGION LOOKUP (NEW NOTES ONLY)
        # --------------------------------------------------
        new_ids = await self._resolve_new_note_regions()

        # --------------------------------------------------
        # PHASE 3: MERGE
        # --------------------------------------------------
        try:
            comments_before = await self._count(NoteComment)
            await self._merge_notes()
            orphans = await self._merge_comments()
            comments_after = await self._count(NoteComment)
        except SQLAlchemyError as e:
            raise UpsertError(
                "Failed to merge staging into durable tables",
                context={
                    "staged_notes": staged_notes,
                    "staged_comments": staged_comments,
                    "operation": "UPSERT",
                    "table_name": "notes, note_comments",
                },
                original_exception=e,
            )

        if orphans:
            logger.warning(f"Skipped {orphans} staged comments whose note is not in the store")

        # --------------------------------------------------
        # PHASE 4: INTEGRITY RATIO
        # --------------------------------------------------
        result = await self._measure_integrity()
        result.notes_inserted = len(new_ids)
        result.notes_updated = staged_notes - len(new_ids)
        result.comments_inserted = comments_after - comments_before
        result.orphan_comments = orphans
        result.total_comments = comments_after
        result.newest_timestamp = batch.newest_timestamp()

        logger.info(
            f"Merged {result.notes_inserted} new and {result.notes_updated} updated notes, "
            f"{result.comments_inserted} new comments; integrity ratio "
            f"{result.recent_without_comments}/{result.recent_total} = {result.integrity_ratio:.2%}"
        )
        return result

    async def _resolve_new_note_regions(self) -> List[int]:
        try:
            result = await self.db.execute(
                select(NoteStaging.note_id, NoteStaging.latitude, NoteStaging.longitude, NoteStaging.region_id)
                .outerjoin(Note, Note.note_id == NoteStaging.note_id)
                .where(Note.note_id.is_(None))
                .order_by(NoteStaging.note_id)
            )
            rows = result.all()

            for row in rows:
                if row.region_id is not None:
                    continue
                region_id = await self.region_lookup.region_of(row.latitude, row.longitude)
                if region_id is not None:
                    await self.db.execute(
                        update(NoteStaging)
                        .where(NoteStaging.note_id == row.note_id)
                        .values(region_id=region_id)
                    )
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to resolve regions for new notes",
                context={"operation": "SELECT/UPDATE", "table_name": "notes_staging"},
                original_exception=e,
            )
        return [row.note_id for row in rows]

    async def _merge_notes(self) -> None:
        now = self._clock()
        columns = [getattr(NoteStaging, c) for c in NOTE_COLUMNS]
        rows = [dict(r) for r in (await self.db.execute(select(*columns))).mappings().all()]

        for chunk in chunked(rows, self.batch_size):
            values = [{**row, "inserted_at": now, "updated_at": now} for row in chunk]
            stmt = upsert_insert(self.db, Note).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Note.note_id],
                set_={
                    "status": stmt.excluded.status,
                    "closed_at": func.coalesce(stmt.excluded.closed_at, Note.closed_at),
                    "region_id": func.coalesce(stmt.excluded.region_id, Note.region_id),
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await self.db.execute(stmt)

    async def _merge_comments(self) -> int:
        columns = [getattr(NoteCommentStaging, c) for c in COMMENT_COLUMNS]
        note_exists = exists().where(Note.note_id == NoteCommentStaging.note_id)

        rows = [
            dict(r)
            for r in (await self.db.execute(select(*columns).where(note_exists))).mappings().all()
        ]
        orphans = await self.db.scalar(
            select(func.count()).select_from(NoteCommentStaging).where(~note_exists)
        )

        for chunk in chunked(rows, self.batch_size):
            stmt = upsert_insert(self.db, NoteComment).values(list(chunk))
            stmt = stmt.on_conflict_do_nothing(index_elements=[NoteComment.note_id, NoteComment.sequence])
            await self.db.execute(stmt)
        return orphans or 0

    async def _count(self, model) -> int:
        return await self.db.scalar(select(func.count()).select_from(model)) or 0

    async def _measure_integrity(self) -> LoadResult:
        now = self._clock()
        window = and_(
            Note.created_at >= now - self.integrity_window,
            Note.created_at <= now - self.integrity_grace,
        )
        without_comments = ~exists().where(NoteComment.note_id == Note.note_id)

        try:
            total = await self.db.scalar(select(func.count()).select_from(Note).where(window)) or 0
            missing = await self.db.scalar(
                select(func.count()).select_from(Note).where(window, without_comments)
            ) or 0
            ids = (
                await self.db.execute(
                    select(Note.note_id)
                    .where(window, without_comments)
                    .order_by(Note.note_id)
                    .limit(self.gap_max_identifiers)
                )
            ).scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to compute integrity ratio",
                context={"operation": "SELECT", "table_name": "notes"},
                original_exception=e,
            )

        return LoadResult(
            integrity_ratio=(missing / total) if total else 0.0,
            recent_total=total,
            recent_without_comments=missing,
            unannotated_ids=list(ids),
        )
