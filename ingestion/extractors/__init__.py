"""
Feed sources.

Modules:
    notes_api: Incremental notes search API client
    planet: Full snapshot download
"""

from ingestion.extractors.notes_api import NotesApiClient
from ingestion.extractors.planet import PlanetSnapshotSource

__all__ = ["NotesApiClient", "PlanetSnapshotSource"]
