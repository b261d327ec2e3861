"""
Wiring of sync components from settings.

Scripts, the scheduler and the API build their components here so that one
HTTP client and one fetcher per upstream service are shared by everything
in the process.
"""

import asyncio
from typing import Optional

import httpx

from core.config import Settings, settings as default_settings
from core.database import async_session_maker, engine
from ingestion.boundaries import BoundaryUpdater
from ingestion.extractors.notes_api import NotesApiClient
from ingestion.extractors.planet import PlanetSnapshotSource
from ingestion.fetcher.fetcher import RateLimitedFetcher
from ingestion.fetcher.http import OverpassEndpoint, PlanetEndpoint
from ingestion.locking import ExclusivityLock
from ingestion.marker import AlertNotifier, FailedMarker
from ingestion.reconciler import GapReconciler
from ingestion.regions import DeferredRegionLookup
from ingestion.runner import SyncOrchestrator


def build_snapshot_source(client: httpx.AsyncClient, config: Settings = default_settings) -> PlanetSnapshotSource:
    fetcher = RateLimitedFetcher.from_settings(PlanetEndpoint(config.PLANET_URL), client, "planet", config)
    return PlanetSnapshotSource(fetcher, config.PLANET_NOTES_PATH)


def build_orchestrator(
    client: httpx.AsyncClient,
    shutdown_event: Optional[asyncio.Event] = None,
    config: Settings = default_settings,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory=async_session_maker,
        notes_api=NotesApiClient.from_settings(client, config),
        snapshot_source=build_snapshot_source(client, config),
        lock=ExclusivityLock.from_settings(async_session_maker, config=config),
        marker=FailedMarker(config.FAILED_MARKER_PATH),
        region_lookup=DeferredRegionLookup(async_session_maker),
        alerter=AlertNotifier(config.ALERT_WEBHOOK_URL, client=client),
        engine=engine,
        config=config,
        shutdown_event=shutdown_event,
    )


def build_reconciler(client: httpx.AsyncClient, config: Settings = default_settings) -> GapReconciler:
    return GapReconciler(
        session_factory=async_session_maker,
        snapshot_source=build_snapshot_source(client, config),
        lock=ExclusivityLock.from_settings(async_session_maker, name=f"{config.LOCK_NAME}-reconciler", config=config),
        region_lookup=DeferredRegionLookup(async_session_maker),
        config=config,
    )


def build_boundary_updater(client: httpx.AsyncClient, config: Settings = default_settings) -> BoundaryUpdater:
    fetcher = RateLimitedFetcher.from_settings(
        OverpassEndpoint(config.OVERPASS_INTERPRETER_URL), client, "overpass", config
    )
    return BoundaryUpdater(async_session_maker, fetcher)
