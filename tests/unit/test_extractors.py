"""
Incremental feed client and snapshot source tests
"""

import bz2
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from core.exceptions import DataFormatError, FetchExhaustedError
from ingestion.extractors.notes_api import NotesApiClient
from ingestion.extractors.planet import PlanetSnapshotSource
from ingestion.fetcher.policy import CircuitBreaker, RetryPolicy
from tests.helpers import api_document, api_note

SINCE = datetime(2024, 1, 15, 10, 0, 0)


def make_client(handler, max_attempts=2):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    api = NotesApiClient(
        http,
        base_url="https://api.test/api/0.6/",
        policy=RetryPolicy(max_attempts=max_attempts, base_delay=0, jitter=0),
        breaker=CircuitBreaker("notes-api", failure_threshold=10),
    )
    return api, http


def test_search_params():
    api = NotesApiClient(MagicMock(), base_url="https://api.test")
    assert api.search_params(SINCE, 10000) == {
        "limit": 10000,
        "closed": -1,
        "sort": "updated_at",
        "from": "2024-01-15T10:00:00Z",
    }


@pytest.mark.asyncio
async def test_fetch_since_returns_raw_document():
    seen = []
    document = api_document([api_note(1, SINCE), api_note(2, SINCE)])

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, content=document)

    api, http = make_client(handler)
    async with http:
        assert await api.fetch_since(SINCE, 500) == document

    assert seen[0].path == "/api/0.6/notes/search.xml"
    assert seen[0].params["limit"] == "500"
    assert seen[0].params["from"] == "2024-01-15T10:00:00Z"


@pytest.mark.asyncio
async def test_has_updates_since_probes_with_limit_one():
    params = []

    def handler(request):
        params.append(dict(request.url.params))
        return httpx.Response(200, content=api_document([]))

    api, http = make_client(handler)
    async with http:
        assert await api.has_updates_since(SINCE) is False
    assert [p["limit"] for p in params] == ["1"]
    assert params[0]["from"] == "2024-01-15T10:00:01Z"


@pytest.mark.asyncio
async def test_note_at_checkpoint_is_not_an_update():
    def handler(request):
        if request.url.params["from"] <= "2024-01-15T10:00:00Z":
            return httpx.Response(200, content=api_document([api_note(7, SINCE)]))
        return httpx.Response(200, content=api_document([]))

    api, http = make_client(handler)
    async with http:
        assert await api.has_updates_since(SINCE) is False


@pytest.mark.asyncio
async def test_server_errors_exhaust_into_typed_error():
    api, http = make_client(lambda request: httpx.Response(502), max_attempts=2)
    async with http:
        with pytest.raises(FetchExhaustedError):
            await api.fetch_since(SINCE, 10)


@pytest.mark.asyncio
async def test_snapshot_is_decompressed():
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=bz2.compress(b"<osm-notes></osm-notes>"))

    source = PlanetSnapshotSource(fetcher, "/notes/planet-notes-latest.osn.bz2")

    assert await source.download() == b"<osm-notes></osm-notes>"
    fetcher.fetch.assert_awaited_once_with("/notes/planet-notes-latest.osn.bz2")


@pytest.mark.asyncio
async def test_corrupt_snapshot_raises_data_format_error():
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=b"not bzip2 at all")

    with pytest.raises(DataFormatError):
        await PlanetSnapshotSource(fetcher, "/notes/latest.osn.bz2").download()


@pytest.mark.asyncio
async def test_uncompressed_snapshot_is_passed_through():
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=b"<osm-notes/>")

    assert await PlanetSnapshotSource(fetcher, "/notes/latest.osn").download() == b"<osm-notes/>"
