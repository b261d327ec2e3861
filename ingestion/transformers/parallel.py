"""
Run the extraction transform over partitions with a bounded worker pool.
"""

import asyncio
import functools
import logging
import os
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

import psutil

from core.config import Settings, settings as default_settings
from core.exceptions import ShutdownInProgress, TransformationError
from ingestion.transformers.notes_xml import extract_rows
from ingestion.transformers.partitioner import Partition
from schemas.rows import RowBatch

logger = logging.getLogger(__name__)

TransformFn = Callable[[bytes, int], RowBatch]


def available_memory_mb() -> int:
    return psutil.virtual_memory().available // (1024 * 1024)


class ParallelTransformer:
    """
    Bounded worker pool for the extraction transform.

    Pool size is the CPU count minus a fixed reserve (never below one, never
    above ``max_workers``). When available memory drops under the safety
    threshold the pool collapses to a single worker instead of failing.

    Attributes:
        transform: Picklable ``(chunk, partition_index) -> RowBatch`` function
        use_processes: Process pool (production) or thread pool
        shutdown_event: Once set, no further partitions are dispatched
    """

    def __init__(
        self,
        transform: TransformFn = extract_rows,
        reserved_cpus: int = 2,
        max_workers: int = 16,
        partitions_per_worker: int = 3,
        min_available_memory_mb: int = 1024,
        use_processes: bool = True,
        memory_probe: Callable[[], int] = available_memory_mb,
        cpu_count: Optional[int] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.transform = transform
        self.reserved_cpus = reserved_cpus
        self.max_workers = max_workers
        self.partitions_per_worker = partitions_per_worker
        self.min_available_memory_mb = min_available_memory_mb
        self.use_processes = use_processes
        self._memory_probe = memory_probe
        self._cpu_count = cpu_count
        self.shutdown_event = shutdown_event or asyncio.Event()

    @classmethod
    def from_settings(cls, config: Settings = default_settings, **kwargs) -> "ParallelTransformer":
        return cls(
            reserved_cpus=config.TRANSFORM_RESERVED_CPUS,
            max_workers=config.TRANSFORM_MAX_WORKERS,
            partitions_per_worker=config.PARTITIONS_PER_WORKER,
            min_available_memory_mb=config.MIN_AVAILABLE_MEMORY_MB,
            use_processes=config.TRANSFORM_USE_PROCESSES,
            **kwargs,
        )

    def worker_count(self) -> int:
        cpus = self._cpu_count or os.cpu_count() or 1
        workers = max(1, min(cpus - self.reserved_cpus, self.max_workers))

        available = self._memory_probe()
        if available < self.min_available_memory_mb:
            logger.warning(
                f"Only {available} MB memory available (< {self.min_available_memory_mb} MB); "
                f"transforming serially"
            )
            return 1
        return workers

    def target_partitions(self, workers: Optional[int] = None) -> int:
        """More partitions than workers, so cheap partitions free workers for expensive ones"""
        return (workers or self.worker_count()) * self.partitions_per_worker

    def _executor(self, workers: int) -> Executor:
        if self.use_processes and workers > 1:
            return ProcessPoolExecutor(max_workers=workers)
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="transform")

    async def transform_all(
        self,
        document: bytes,
        partitions: Sequence[Partition],
        workers: Optional[int] = None,
    ) -> RowBatch:
        """
        Transform every partition and consolidate the batches.

        Raises:
            TransformationError: A partition failed to transform
            ShutdownInProgress: Shutdown was requested before every partition ran
        """
        workers = workers or self.worker_count()
        assigned: List[Partition] = [replace(p, worker=p.index % workers) for p in partitions]
        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(workers)
        skipped: List[int] = []

        logger.info(f"Transforming {len(assigned)} partitions with {workers} workers")

        executor = self._executor(workers)
        try:
            async def run(partition: Partition) -> Optional[RowBatch]:
                async with semaphore:
                    if self.shutdown_event.is_set():
                        skipped.append(partition.index)
                        return None
                    chunk = document[partition.start:partition.end]
                    try:
                        return await loop.run_in_executor(executor, self.transform, chunk, partition.index)
                    except TransformationError:
                        raise
                    except Exception as e:
                        raise TransformationError(
                            f"Transform failed for partition {partition.index}",
                            context={
                                "partition_index": partition.index,
                                "byte_range": [partition.start, partition.end],
                                "worker": partition.worker,
                            },
                            original_exception=e,
                        )

            tasks = [asyncio.ensure_future(run(p)) for p in assigned]
            try:
                results = await asyncio.gather(*tasks)
            except BaseException:
                # one failed partition abandons the rest of the batch
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        finally:
            await loop.run_in_executor(
                None, functools.partial(executor.shutdown, wait=True, cancel_futures=True)
            )

        if skipped:
            raise ShutdownInProgress(
                "Shutdown requested during transform",
                context={"skipped_partitions": len(skipped), "total_partitions": len(assigned)},
            )

        batch = RowBatch.consolidate(r for r in results if r is not None)
        logger.info(
            f"Transform produced {batch.note_count} notes and {batch.comment_count} comments"
        )
        return batch
