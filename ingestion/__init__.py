"""
Notes sync engine components.

Modules:
    runner: SyncOrchestrator, the per-cycle state machine and daemon loop
    integrity: IntegrityGate deciding whether the checkpoint may advance
    reconciler: GapReconciler repairing the store from the snapshot
    boundaries: BoundaryUpdater keeping region geometries current
    locking: ExclusivityLock, the singleton owner row
    marker: FailedMarker and AlertNotifier, the operator surface
    regions: Region lookup capability used for new notes
    scheduler: APScheduler jobs for the reconciler and boundary refresh
    factory: Wiring of the above from settings

Subpackages:
    fetcher: Rate-limited fetcher (slot pool, retry policy, circuit breaker)
    extractors: Incremental notes API and full snapshot sources
    transformers: Partitioner and parallel XML-to-rows transform
    loaders: Staging and merge into the durable store

Data flow:
    Orchestrator -> Fetcher -> Partitioner -> Transformer (parallel)
    -> Loader -> Integrity Gate -> (checkpoint advance | gap record)

Usage:
    from ingestion.fetcher.http import build_client
    from ingestion.factory import build_orchestrator

    async with build_client() as client:
        orchestrator = build_orchestrator(client)
        result = await orchestrator.run_once()
"""

__all__ = [
    "runner",
    "integrity",
    "reconciler",
    "boundaries",
    "locking",
    "marker",
    "regions",
    "scheduler",
    "factory",
]
