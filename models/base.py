from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class NoteStatus(str, enum.Enum):
    """Lifecycle status of a note"""
    OPEN = "open"
    CLOSED = "closed"
    REOPENED = "reopened"
    HIDDEN = "hidden"  # present locally, gone upstream


class CommentAction(str, enum.Enum):
    """Kind of event a note comment records"""
    OPENED = "opened"
    COMMENTED = "commented"
    CLOSED = "closed"
    REOPENED = "reopened"
    HIDDEN = "hidden"


class SyncMode(str, enum.Enum):
    """How a sync cycle sourced its data"""
    INCREMENTAL = "incremental"
    FULL_RESYNC = "full_resync"


class CycleStatus(str, enum.Enum):
    """Outcome of a sync cycle"""
    RUNNING = "running"
    SUCCESS = "success"
    WITHHELD = "withheld"  # committed, checkpoint not advanced
    SKIPPED = "skipped"
    FAILED = "failed"


class GapKind(str, enum.Enum):
    """Kinds of completeness shortfall recorded for reconciliation"""
    NOTES_WITHOUT_COMMENTS = "notes_without_comments"


class ZoneKind(str, enum.Enum):
    """Boundary dataset a region belongs to"""
    COUNTRY = "country"
    MARITIME = "maritime"
