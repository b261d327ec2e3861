"""
HTTP plumbing for external downloads: endpoints and response classification.
"""

import logging
from typing import Optional, Protocol

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    NetworkError,
    RateLimitError,
    RequestRejectedError,
    ResourceNotFoundError,
    ServerError,
)
from models.base import ZoneKind

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date forms are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


def check_response(response: httpx.Response, resource: str) -> bytes:
    """
    Return the body of a successful response or raise a typed fetch error.

    Raises:
        RateLimitError: HTTP 429 (retryable)
        ServerError: HTTP 5xx (retryable)
        AuthenticationError: HTTP 401/403
        ResourceNotFoundError: HTTP 404
        RequestRejectedError: Any other 4xx
    """
    status = response.status_code
    if status < 400:
        return response.content

    context = {
        "resource": resource,
        "status_code": status,
        "response_body": response.text[:500],
    }
    if status == 429:
        raise RateLimitError(
            f"Rate limited fetching {resource}",
            context=context,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        raise ServerError(f"Server error {status} fetching {resource}", context=context)
    if status in (401, 403):
        raise AuthenticationError(f"Authentication failed for {resource}", context=context)
    if status == 404:
        raise ResourceNotFoundError(f"Resource not found: {resource}", context=context)
    raise RequestRejectedError(f"Request rejected ({status}) for {resource}", context=context)


async def send(client: httpx.AsyncClient, request: httpx.Request, resource: str) -> bytes:
    """Send a request, translating transport failures into NetworkError."""
    try:
        response = await client.send(request)
    except httpx.RequestError as e:
        raise NetworkError(
            f"Network error fetching {resource}",
            context={"resource": resource, "url": str(request.url)},
            original_exception=e,
        )
    return check_response(response, resource)


class Endpoint(Protocol):
    """Turns a resource identifier into a request."""

    def build_request(self, client: httpx.AsyncClient, resource_id: str) -> httpx.Request:
        ...


# Relation ids of every boundary of a zone kind
BOUNDARY_LIST_QUERIES = {
    ZoneKind.COUNTRY: (
        '[out:csv(::id;false)][timeout:{timeout}];'
        'relation["admin_level"="2"]["type"="boundary"]["boundary"="administrative"];out ids;'
    ),
    ZoneKind.MARITIME: (
        '[out:csv(::id;false)][timeout:{timeout}];'
        'relation["type"="boundary"]["boundary"="maritime"];out ids;'
    ),
}

BOUNDARY_GEOMETRY_QUERY = "[out:json][timeout:{timeout}];rel({relation_id});(._;>;);out;"

LIST_PREFIX = "list:"


class OverpassEndpoint:
    """
    Boundary geometry source.

    Resource ids are either a relation id (``"1428125"``) or a listing of a
    zone kind (``"list:country"``).
    """

    def __init__(self, url: str = settings.OVERPASS_INTERPRETER_URL, query_timeout: int = 180):
        self.url = url
        self.query_timeout = query_timeout

    def build_request(self, client: httpx.AsyncClient, resource_id: str) -> httpx.Request:
        return client.build_request("POST", self.url, data={"data": self.query_for(resource_id)})

    def query_for(self, resource_id: str) -> str:
        if resource_id.startswith(LIST_PREFIX):
            kind = ZoneKind(resource_id[len(LIST_PREFIX):])
            return BOUNDARY_LIST_QUERIES[kind].format(timeout=self.query_timeout)
        relation_id = int(resource_id)
        return BOUNDARY_GEOMETRY_QUERY.format(timeout=self.query_timeout, relation_id=relation_id)


class PlanetEndpoint:
    """Snapshot source; resource ids are paths under the planet server."""

    def __init__(self, base_url: str = settings.PLANET_URL):
        self.base_url = base_url.rstrip("/")

    def build_request(self, client: httpx.AsyncClient, resource_id: str) -> httpx.Request:
        path = resource_id if resource_id.startswith("/") else f"/{resource_id}"
        return client.build_request("GET", f"{self.base_url}{path}")


def build_client(timeout: float = settings.HTTP_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        headers={"User-Agent": settings.HTTP_USER_AGENT},
        follow_redirects=True,
    )
