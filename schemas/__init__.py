"""
Pydantic schemas for data validation and serialization.

Schemas:
    rows: NoteRow / CommentRow / RowBatch produced by the transformers
    results: LoadResult, GateDecision, CycleResult, ReconcileResult
    api: Operator API response models

Usage:
    from schemas.rows import RowBatch
    from schemas.results import LoadResult
    from schemas.api import HealthCheckResponse

Validation:
    Rows are validated when the transformer builds them, so a malformed
    note is reported against its partition instead of failing the load.
"""

__all__ = [
    "rows",
    "results",
    "api",
]
