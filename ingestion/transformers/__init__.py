"""
Document partitioning and parallel transformation.

Modules:
    partitioner: Split raw documents at note boundaries
    notes_xml: Extraction transform for both notes feed formats
    parallel: Bounded worker pool running the transform per partition
"""

from ingestion.transformers.partitioner import Partition, Partitioner, count_records
from ingestion.transformers.notes_xml import extract_rows
from ingestion.transformers.parallel import ParallelTransformer

__all__ = [
    "Partition",
    "Partitioner",
    "count_records",
    "extract_rows",
    "ParallelTransformer",
]
