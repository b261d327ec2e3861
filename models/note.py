from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Float, Text, Index, ForeignKey
from core.timeutil import utcnow
from models.base import Base, NoteStatus, CommentAction


class NoteColumns:
    """Columns shared by the durable, staging and check note tables"""
    note_id = Column(BigInteger, primary_key=True, autoincrement=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    status = Column(Enum(NoteStatus), nullable=False)
    region_id = Column(BigInteger, nullable=True)


class CommentColumns:
    """Columns shared by the durable, staging and check comment tables"""
    sequence = Column(Integer, primary_key=True, autoincrement=False)
    action = Column(Enum(CommentAction), nullable=False)
    created_at = Column(DateTime, nullable=False)
    user_id = Column(BigInteger, nullable=True)
    username = Column(String(256), nullable=True)
    body = Column(Text, nullable=True)


class Note(NoteColumns, Base):
    """
    Durable note record.

    The identifier is issued by the upstream service and never changes;
    status, closure and region are the only fields a merge may update.
    """
    __tablename__ = "notes"

    inserted_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_notes_created_at", "created_at"),
        Index("idx_notes_closed_at", "closed_at"),
    )


class NoteComment(CommentColumns, Base):
    """
    Durable comment attached to a note.

    (note_id, sequence) is the primary key: a sequence number is assigned
    once by upstream order and is never reused or updated.
    """
    __tablename__ = "note_comments"

    note_id = Column(BigInteger, ForeignKey("notes.note_id"), primary_key=True, autoincrement=False)

    __table_args__ = (
        Index("idx_note_comments_created_at", "created_at"),
    )


class NoteStaging(NoteColumns, Base):
    """Per-cycle staging; truncated at the start of every load"""
    __tablename__ = "notes_staging"


class NoteCommentStaging(CommentColumns, Base):
    __tablename__ = "note_comments_staging"

    note_id = Column(BigInteger, primary_key=True, autoincrement=False)


class NoteCheck(NoteColumns, Base):
    """Snapshot copy used by the gap reconciler"""
    __tablename__ = "notes_check"


class NoteCommentCheck(CommentColumns, Base):
    __tablename__ = "note_comments_check"

    note_id = Column(BigInteger, primary_key=True, autoincrement=False)
