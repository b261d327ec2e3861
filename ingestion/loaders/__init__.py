"""
Database loaders.

Modules:
    staging: Staging-table writer and dialect-aware upsert helpers
    notes_loader: Stage + merge loader computing the integrity ratio
"""

from ingestion.loaders.staging import StagingWriter, upsert_insert
from ingestion.loaders.notes_loader import NotesLoader

__all__ = ["StagingWriter", "upsert_insert", "NotesLoader"]
