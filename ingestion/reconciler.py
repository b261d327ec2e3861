"""
Gap reconciler: repairs the durable store from the authoritative snapshot.

Runs out of band (daily by default), never inside the sync loop. The
snapshot is staged into the ``*_check`` tables and diffed against the
store over notes created before the start of the current UTC day, so it
does not race the orchestrator on fresh data:

- notes and comments present in the snapshot but missing locally are inserted
- notes present locally but absent from the snapshot are marked hidden

A second run against a consistent store performs no writes.
"""

import logging
from datetime import datetime, time as dtime
from typing import Callable, List, Optional

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.exceptions import DataFormatError, UpsertError
from core.timeutil import utcnow
from ingestion.extractors.planet import PlanetSnapshotSource
from ingestion.loaders.notes_loader import COMMENT_COLUMNS, NOTE_COLUMNS
from ingestion.loaders.staging import StagingWriter, chunked, upsert_insert
from ingestion.locking import ExclusivityLock
from ingestion.regions import NullRegionLookup, RegionLookup
from ingestion.transformers.parallel import ParallelTransformer
from ingestion.transformers.partitioner import Partitioner
from models.base import NoteStatus
from models.data_gap import DataGap
from models.note import Note, NoteCheck, NoteComment, NoteCommentCheck
from schemas.results import ReconcileResult
from schemas.rows import RowBatch

logger = logging.getLogger(__name__)


class GapReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshot_source: PlanetSnapshotSource,
        lock: ExclusivityLock,
        partitioner: Optional[Partitioner] = None,
        transformer: Optional[ParallelTransformer] = None,
        region_lookup: Optional[RegionLookup] = None,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.snapshot_source = snapshot_source
        self.lock = lock
        self.partitioner = partitioner or Partitioner(config.PARTITION_SEARCH_WINDOW_BYTES)
        self.transformer = transformer or ParallelTransformer.from_settings(config)
        self.region_lookup = region_lookup or NullRegionLookup()
        self.batch_size = config.LOAD_BATCH_SIZE
        self._clock = clock

    def cutoff(self) -> datetime:
        """Start of the current UTC day; newer notes belong to the sync loop."""
        return datetime.combine(self._clock().date(), dtime.min)

    async def run(self) -> ReconcileResult:
        """
        Download, stage, diff and repair under the reconciler lock.

        Raises:
            LockContentionError: Another reconciler is running
            FetchExhaustedError / DataFormatError: The snapshot could not be obtained
            UpsertError: Writing corrections failed (nothing is committed)
        """
        async with self.lock.hold():
            batch = await self._snapshot_rows()
            if batch.note_count == 0:
                raise DataFormatError(
                    "Snapshot contains no notes; refusing to diff against it",
                    context={"resource": self.snapshot_source.path},
                )
            return await self.apply(batch)

    async def _snapshot_rows(self) -> RowBatch:
        document = await self.snapshot_source.download()
        workers = self.transformer.worker_count()
        partitions = self.partitioner.split(document, self.transformer.target_partitions(workers))
        return await self.transformer.transform_all(document, partitions, workers)

    async def apply(self, batch: RowBatch) -> ReconcileResult:
        """Diff an already-transformed snapshot against the store and commit the corrections."""
        cutoff = self.cutoff()
        result = ReconcileResult()

        async with self.session_factory() as session:
            try:
                staging = StagingWriter(session, NoteCheck, NoteCommentCheck, self.batch_size)
                result.snapshot_notes, _ = await staging.write(batch)

                result.notes_inserted = await self._insert_missing_notes(session, cutoff)
                result.comments_inserted = await self._insert_missing_comments(session, cutoff)
                result.notes_hidden = await self._hide_removed_notes(session, cutoff)
                result.gaps_processed = await self._close_gaps(session, cutoff)

                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise UpsertError(
                    "Failed to apply snapshot corrections",
                    context={"operation": "RECONCILE", "table_name": "notes, note_comments"},
                    original_exception=e,
                )
            except Exception:
                await session.rollback()
                raise

        logger.info(
            f"Reconciled against {result.snapshot_notes} snapshot notes (before {cutoff.date()}): "
            f"{result.notes_inserted} notes and {result.comments_inserted} comments inserted, "
            f"{result.notes_hidden} notes hidden, {result.gaps_processed} gaps processed"
        )
        return result

    async def _insert_missing_notes(self, session: AsyncSession, cutoff: datetime) -> int:
        columns = [getattr(NoteCheck, c) for c in NOTE_COLUMNS]
        missing = ~exists().where(Note.note_id == NoteCheck.note_id)
        rows = [
            dict(r)
            for r in (
                await session.execute(
                    select(*columns)
                    .where(NoteCheck.created_at < cutoff, missing)
                    .order_by(NoteCheck.note_id)
                )
            ).mappings().all()
        ]
        if not rows:
            return 0

        now = self._clock()
        for row in rows:
            if row["region_id"] is None:
                row["region_id"] = await self.region_lookup.region_of(row["latitude"], row["longitude"])
            row["inserted_at"] = now
            row["updated_at"] = now

        for chunk in chunked(rows, self.batch_size):
            stmt = upsert_insert(session, Note).values(list(chunk))
            await session.execute(stmt.on_conflict_do_nothing(index_elements=[Note.note_id]))
        return len(rows)

    async def _insert_missing_comments(self, session: AsyncSession, cutoff: datetime) -> int:
        columns = [getattr(NoteCommentCheck, c) for c in COMMENT_COLUMNS]
        note_exists = exists().where(Note.note_id == NoteCommentCheck.note_id)
        comment_missing = ~exists().where(
            and_(
                NoteComment.note_id == NoteCommentCheck.note_id,
                NoteComment.sequence == NoteCommentCheck.sequence,
            )
        )
        rows: List[dict] = [
            dict(r)
            for r in (
                await session.execute(
                    select(*columns).where(
                        NoteCommentCheck.created_at < cutoff, note_exists, comment_missing
                    )
                )
            ).mappings().all()
        ]
        for chunk in chunked(rows, self.batch_size):
            stmt = upsert_insert(session, NoteComment).values(list(chunk))
            await session.execute(
                stmt.on_conflict_do_nothing(index_elements=[NoteComment.note_id, NoteComment.sequence])
            )
        return len(rows)

    async def _hide_removed_notes(self, session: AsyncSession, cutoff: datetime) -> int:
        now = self._clock()
        result = await session.execute(
            update(Note)
            .where(
                Note.created_at < cutoff,
                Note.status != NoteStatus.HIDDEN,
                ~exists().where(NoteCheck.note_id == Note.note_id),
            )
            .values(
                status=NoteStatus.HIDDEN,
                closed_at=func.coalesce(Note.closed_at, now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _close_gaps(self, session: AsyncSession, cutoff: datetime) -> int:
        # gaps recorded today concern notes this pass did not diff
        result = await session.execute(
            update(DataGap)
            .where(DataGap.processed.is_(False), DataGap.detected_at < cutoff)
            .values(processed=True, processed_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
