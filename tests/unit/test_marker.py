"""
Failed-execution marker and alert webhook tests
"""

import json
import uuid

import httpx
import pytest

from core.exceptions import FetchExhaustedError, NetworkError
from ingestion.fetcher.policy import RetryPolicy
from ingestion.marker import AlertNotifier, FailedMarker


def test_write_read_clear(tmp_path):
    marker = FailedMarker(str(tmp_path / "state" / "failed.json"))
    cycle_id = uuid.uuid4()
    error = FetchExhaustedError("/notes/latest.osn.bz2", 7, NetworkError("reset"))

    assert not marker.exists()
    details = marker.write(error, cycle_id, cycle_number=3, stage="delegating_full_resync")

    assert marker.exists()
    stored = marker.read()
    assert stored == json.loads(json.dumps(details, default=str))
    assert stored["cycle_id"] == str(cycle_id)
    assert stored["cycle_number"] == 3
    assert stored["stage"] == "delegating_full_resync"
    assert stored["error"]["error_type"] == "FetchExhaustedError"
    assert stored["error"]["context"]["attempts"] == 7

    assert marker.clear() is True
    assert marker.clear() is False
    assert marker.read() is None


def test_plain_exceptions_are_recorded(tmp_path):
    marker = FailedMarker(str(tmp_path / "failed.json"))
    marker.write(RuntimeError("disk full"))
    assert marker.read()["error"] == {"error_type": "RuntimeError", "message": "disk full"}


@pytest.mark.asyncio
async def test_alert_disabled_without_webhook():
    assert await AlertNotifier(webhook_url=None).notify({"cycle_id": "x"}) is False


@pytest.mark.asyncio
async def test_alert_posts_details():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = AlertNotifier("https://hooks.test/alert", client=client)
        assert await notifier.notify({"cycle_id": "abc", "stage": "committing"}) is True

    assert bodies == [{"event": "sync_failed", "cycle_id": "abc", "stage": "committing"}]


@pytest.mark.asyncio
async def test_failed_alert_is_not_raised():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        notifier = AlertNotifier(
            "https://hooks.test/alert",
            client=client,
            policy=RetryPolicy(max_attempts=2, base_delay=0, jitter=0),
        )
        assert await notifier.notify({"cycle_id": "abc"}) is False
