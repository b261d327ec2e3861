"""
Bulk staging of row batches and dialect-aware upsert statements.

Staging tables are truncated, never dropped, between runs. Both the cycle
staging tables and the reconciler's check tables go through StagingWriter.
"""

from typing import Any, Dict, Iterable, Iterator, List, Sequence, Tuple, Type
import logging

from sqlalchemy import delete, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import DatabaseError
from schemas.rows import CommentRow, NoteRow, RowBatch

logger = logging.getLogger(__name__)


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def upsert_insert(session: AsyncSession, model):
    """INSERT construct supporting ON CONFLICT for the session's dialect"""
    name = dialect_name(session)
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise DatabaseError(
        f"Upserts are not supported on dialect '{name}'",
        context={"dialect": name, "table_name": model.__tablename__},
    )


def chunked(rows: Sequence[Dict[str, Any]], size: int) -> Iterator[Sequence[Dict[str, Any]]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


def dedupe_batch(batch: RowBatch) -> Tuple[List[NoteRow], List[CommentRow]]:
    """
    One row per note (last occurrence wins) and per (note, sequence)
    (first occurrence wins), so a single INSERT never hits the same key twice.
    """
    notes: Dict[int, NoteRow] = {}
    for note in batch.notes:
        notes[note.note_id] = note
    comments: Dict[Tuple[int, int], CommentRow] = {}
    for comment in batch.comments:
        comments.setdefault((comment.note_id, comment.sequence), comment)
    return list(notes.values()), list(comments.values())


class StagingWriter:
    def __init__(self, session: AsyncSession, note_model: Type, comment_model: Type, batch_size: int = 500):
        self.db = session
        self.note_model = note_model
        self.comment_model = comment_model
        self.batch_size = batch_size

    @property
    def tables(self) -> List[str]:
        return [self.comment_model.__tablename__, self.note_model.__tablename__]

    async def truncate(self) -> None:
        try:
            if dialect_name(self.db) == "postgresql":
                await self.db.execute(text(f"TRUNCATE TABLE {', '.join(self.tables)}"))
            else:
                await self.db.execute(delete(self.comment_model))
                await self.db.execute(delete(self.note_model))
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to truncate staging tables",
                context={"operation": "TRUNCATE", "table_name": ", ".join(self.tables)},
                original_exception=e,
            )

    async def write(self, batch: RowBatch) -> Tuple[int, int]:
        """Truncate, then bulk-insert the batch. Returns (notes, comments) staged."""
        await self.truncate()
        notes, comments = dedupe_batch(batch)
        await self._insert(self.note_model, (n.model_dump() for n in notes))
        await self._insert(self.comment_model, (c.model_dump() for c in comments))
        logger.info(
            f"Staged {len(notes)} notes and {len(comments)} comments "
            f"into {self.note_model.__tablename__}"
        )
        return len(notes), len(comments)

    async def _insert(self, model: Type, rows: Iterable[Dict[str, Any]]) -> None:
        rows = list(rows)
        if not rows:
            return
        try:
            for chunk in chunked(rows, self.batch_size):
                await self.db.execute(model.__table__.insert(), list(chunk))
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Bulk insert into staging failed",
                context={"operation": "INSERT", "table_name": model.__tablename__, "rows": len(rows)},
                original_exception=e,
            )
