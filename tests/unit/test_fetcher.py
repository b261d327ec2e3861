"""
Rate-limited fetcher tests against an httpx.MockTransport
"""

import asyncio

import httpx
import pytest

from core.exceptions import FetchExhaustedError, ResourceNotFoundError, ShutdownInProgress
from ingestion.fetcher.fetcher import RateLimitedFetcher
from ingestion.fetcher.http import OverpassEndpoint, PlanetEndpoint, check_response, parse_retry_after
from ingestion.fetcher.policy import CircuitBreaker, CircuitState, RetryPolicy
from ingestion.fetcher.slots import SlotPool, TicketState


class Sleeper:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)


def make_fetcher(handler, slots=2, max_attempts=3, sleeper=None, breaker=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = RateLimitedFetcher(
        endpoint=PlanetEndpoint("https://planet.test"),
        client=client,
        pool=SlotPool(slots),
        policy=RetryPolicy(max_attempts=max_attempts, base_delay=1, jitter=0, rate_limit_floor=30),
        breaker=breaker or CircuitBreaker("planet", failure_threshold=100),
        sleep=sleeper or Sleeper(),
    )
    return fetcher, client


def test_parse_retry_after():
    assert parse_retry_after("120") == 120
    assert parse_retry_after(None) is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None


def test_check_response_classifies_status_codes():
    from core.exceptions import (
        AuthenticationError,
        RateLimitError,
        RequestRejectedError,
        ServerError,
    )

    assert check_response(httpx.Response(200, content=b"x"), "r") == b"x"
    with pytest.raises(RateLimitError) as exc_info:
        check_response(httpx.Response(429, headers={"Retry-After": "5"}), "r")
    assert exc_info.value.retry_after == 5
    with pytest.raises(ServerError):
        check_response(httpx.Response(503), "r")
    with pytest.raises(AuthenticationError):
        check_response(httpx.Response(403), "r")
    with pytest.raises(ResourceNotFoundError):
        check_response(httpx.Response(404), "r")
    with pytest.raises(RequestRejectedError):
        check_response(httpx.Response(400), "r")


def test_overpass_queries():
    endpoint = OverpassEndpoint("https://overpass.test/api/interpreter", query_timeout=60)

    assert 'admin_level"="2"' in endpoint.query_for("list:country")
    assert '"boundary"="maritime"' in endpoint.query_for("list:maritime")
    assert "rel(1428125)" in endpoint.query_for("1428125")


@pytest.mark.asyncio
async def test_rate_limited_request_is_retried_after_retry_after():
    responses = [httpx.Response(429, headers={"Retry-After": "45"}), httpx.Response(200, content=b"doc")]
    sleeper = Sleeper()

    def handler(request):
        return responses.pop(0)

    fetcher, client = make_fetcher(handler, sleeper=sleeper)
    async with client:
        assert await fetcher.fetch("/notes/latest.osn") == b"doc"

    assert sleeper.calls == [45]


@pytest.mark.asyncio
async def test_retries_exhausted_raise_typed_error():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(503)

    fetcher, client = make_fetcher(handler, max_attempts=3)
    async with client:
        with pytest.raises(FetchExhaustedError) as exc_info:
            await fetcher.fetch("/notes/latest.osn")

    assert len(calls) == 3
    assert exc_info.value.resource_id == "/notes/latest.osn"
    assert exc_info.value.attempts == 3


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=b"ok")

    fetcher, client = make_fetcher(handler)
    async with client:
        assert await fetcher.fetch("/x") == b"ok"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_not_found_fails_without_retry():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(404)

    fetcher, client = make_fetcher(handler)
    async with client:
        with pytest.raises(ResourceNotFoundError):
            await fetcher.fetch("/missing")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_slot_count():
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, content=request.url.path.encode())

    fetcher, client = make_fetcher(handler, slots=2)
    async with client:
        report = await fetcher.fetch_many([f"/r{i}" for i in range(8)])

    assert peak <= 2
    assert len(report.succeeded) == 8


@pytest.mark.asyncio
async def test_fetch_many_reports_every_failure():
    def handler(request):
        if request.url.path == "/bad":
            return httpx.Response(500)
        if request.url.path == "/gone":
            return httpx.Response(404)
        return httpx.Response(200, content=b"ok")

    fetcher, client = make_fetcher(handler, max_attempts=2)
    async with client:
        report = await fetcher.fetch_many(["/a", "/bad", "/gone", "/b"])

    assert [o.ticket.resource_id for o in report.outcomes] == ["/a", "/bad", "/gone", "/b"]
    assert sorted(report.payloads) == ["/a", "/b"]
    failed = {o.ticket.resource_id: o for o in report.failed}
    assert isinstance(failed["/bad"].error, FetchExhaustedError)
    assert isinstance(failed["/gone"].error, ResourceNotFoundError)
    assert failed["/bad"].ticket.state is TicketState.FAILED
    assert failed["/bad"].ticket.retry_count == 2


@pytest.mark.asyncio
async def test_shutdown_rejects_new_tickets():
    fetcher, client = make_fetcher(lambda request: httpx.Response(200))
    fetcher.shutdown()
    async with client:
        with pytest.raises(ShutdownInProgress):
            await fetcher.fetch("/x")


@pytest.mark.asyncio
async def test_redirect_loops_are_network_errors():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) == 1:
            raise httpx.TooManyRedirects("redirect loop", request=request)
        return httpx.Response(200, content=b"ok")

    fetcher, client = make_fetcher(handler)
    async with client:
        assert await fetcher.fetch("/x") == b"ok"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_unexpected_error_during_half_open_does_not_wedge_breaker():
    now = [0.0]
    breaker = CircuitBreaker("planet", failure_threshold=2, cooldown=10, clock=lambda: now[0])

    def handler(request):
        if request.url.path == "/down":
            return httpx.Response(503)
        if request.url.path == "/boom":
            raise RuntimeError("handler blew up")
        return httpx.Response(200, content=b"ok")

    fetcher, client = make_fetcher(handler, max_attempts=1, breaker=breaker)
    async with client:
        for _ in range(2):
            with pytest.raises(FetchExhaustedError):
                await fetcher.fetch("/down")
        assert breaker.state is CircuitState.OPEN

        now[0] += 10
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(RuntimeError):
            await fetcher.fetch("/boom")

        assert await fetcher.fetch("/good") == b"ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_fetch_many_serves_tickets_in_submission_order():
    started = []
    finished = []

    async def handler(request):
        started.append(request.url.path)
        for _ in range(5):
            await asyncio.sleep(0)
        finished.append(request.url.path)
        return httpx.Response(200, content=b"ok")

    ids = [f"/r{i}" for i in range(6)]
    fetcher, client = make_fetcher(handler, slots=2)
    async with client:
        report = await fetcher.fetch_many(ids)

    assert started == ids
    assert finished == ids
    assert [o.ticket.resource_id for o in report.outcomes] == ids
