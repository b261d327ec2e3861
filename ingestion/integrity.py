"""
Integrity gate: decides whether the sync checkpoint may advance.

Runs in the loader's transaction and consumes the LoadResult the loader
returned. It never commits.
"""

from datetime import datetime
from typing import Callable, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, settings as default_settings
from core.exceptions import CheckpointError
from core.timeutil import utcnow
from models.base import GapKind
from models.checkpoint import CHECKPOINT_ROW_ID, SyncCheckpoint
from models.data_gap import DataGap
from schemas.results import GateDecision, LoadResult

logger = logging.getLogger(__name__)


async def read_checkpoint(session: AsyncSession) -> Optional[SyncCheckpoint]:
    try:
        return await session.get(SyncCheckpoint, CHECKPOINT_ROW_ID)
    except SQLAlchemyError as e:
        raise CheckpointError(
            "Failed to read sync checkpoint",
            context={"operation": "read"},
            original_exception=e,
        )


class IntegrityGate:
    """
    Pass/Fail per cycle.

    - Pass when the store holds no comments at all (nothing to compare
      against) or when the integrity ratio is within the threshold.
      The checkpoint moves to max(current, newest timestamp ingested); a
      nonzero ratio is still recorded as a non-blocking gap.
    - Fail otherwise: a blocking gap is recorded and the checkpoint stays
      where it is, so the next cycle reprocesses the same window.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        threshold: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.threshold = threshold
        self._clock = clock

    @classmethod
    def from_settings(cls, db_session: AsyncSession, config: Settings = default_settings) -> "IntegrityGate":
        return cls(db_session, threshold=config.INTEGRITY_THRESHOLD)

    async def evaluate(self, load: LoadResult, cycle_id: Optional[UUID] = None) -> GateDecision:
        checkpoint = await read_checkpoint(self.db)
        before = checkpoint.timestamp if checkpoint else None

        permissive = load.total_comments == 0
        passed = permissive or load.integrity_ratio <= self.threshold

        if not passed:
            gap = await self._record_gap(load, cycle_id, blocking=True)
            if checkpoint is not None:
                checkpoint.integrity_passed = False
                checkpoint.last_cycle_id = cycle_id
                await self._flush()
            logger.warning(
                f"Integrity check failed: {load.recent_without_comments} of {load.recent_total} "
                f"recent notes have no comments ({load.integrity_ratio:.2%} > {self.threshold:.2%}); "
                f"checkpoint held at {before}"
            )
            return GateDecision(
                passed=False,
                integrity_ratio=load.integrity_ratio,
                threshold=self.threshold,
                checkpoint_before=before,
                checkpoint_after=before,
                gap_id=gap.id,
            )

        gap_id = None
        if permissive:
            logger.info("No comments in store yet; integrity check is permissive")
        elif load.recent_without_comments > 0:
            gap = await self._record_gap(load, cycle_id, blocking=False)
            gap_id = gap.id
            logger.info(
                f"Integrity within tolerance ({load.integrity_ratio:.2%}); "
                f"recorded {load.recent_without_comments} notes for reconciliation"
            )

        after = self._advance(before, load.newest_timestamp)
        if after is not None:
            if checkpoint is None:
                self.db.add(SyncCheckpoint(
                    id=CHECKPOINT_ROW_ID,
                    timestamp=after,
                    integrity_passed=True,
                    last_cycle_id=cycle_id,
                ))
            else:
                checkpoint.timestamp = after
                checkpoint.integrity_passed = True
                checkpoint.last_cycle_id = cycle_id
            await self._flush()

        if after != before:
            logger.info(f"Checkpoint advanced from {before} to {after}")

        return GateDecision(
            passed=True,
            permissive=permissive,
            integrity_ratio=load.integrity_ratio,
            threshold=self.threshold,
            checkpoint_before=before,
            checkpoint_after=after,
            gap_id=gap_id,
        )

    @staticmethod
    def _advance(current: Optional[datetime], observed: Optional[datetime]) -> Optional[datetime]:
        """The checkpoint never moves backwards"""
        if observed is None:
            return current
        if current is None:
            return observed
        return max(current, observed)

    async def _record_gap(self, load: LoadResult, cycle_id: Optional[UUID], blocking: bool) -> DataGap:
        gap = DataGap(
            cycle_id=cycle_id,
            gap_kind=GapKind.NOTES_WITHOUT_COMMENTS,
            gap_count=load.recent_without_comments,
            total_count=load.recent_total,
            gap_percentage=round(load.integrity_ratio * 100, 2),
            identifiers=list(load.unannotated_ids),
            error_details=(
                f"{load.recent_without_comments} recent notes without comments "
                f"(threshold {self.threshold:.2%})"
            ),
            blocking=blocking,
            processed=False,
            detected_at=self._clock(),
        )
        self.db.add(gap)
        await self._flush()
        return gap

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to write integrity decision",
                context={"operation": "write"},
                original_exception=e,
            )
