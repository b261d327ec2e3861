"""
Incremental feed client for the notes search API.

Returns the raw XML document; parsing happens in the partitioned transform.
The client bounds its own result size, so a response holding ``limit``
notes means the checkpoint is too far behind for incremental processing.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

import httpx

from core.config import Settings, settings as default_settings
from core.timeutil import format_api_timestamp
from ingestion.fetcher.http import send
from ingestion.fetcher.policy import CircuitBreaker, RetryPolicy
from ingestion.transformers.partitioner import count_records

logger = logging.getLogger(__name__)


class NotesApiClient:
    """
    Pull notes updated since a timestamp.

    Features:
    - Shared RetryPolicy (backoff, jitter, bounded attempts)
    - Circuit breaker on the API host
    - Lightweight ``limit=1`` probe to skip idle cycles
    """

    SEARCH_PATH = "/notes/search.xml"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = default_settings.NOTES_API_URL,
        policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy.from_settings()
        self.breaker = breaker or CircuitBreaker.from_settings("notes-api")

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, config: Settings = default_settings) -> "NotesApiClient":
        return cls(
            client=client,
            base_url=config.NOTES_API_URL,
            policy=RetryPolicy.from_settings(config),
            breaker=CircuitBreaker.from_settings("notes-api", config),
        )

    def search_params(self, since: datetime, limit: int) -> Dict[str, Any]:
        return {
            "limit": limit,
            "closed": -1,
            "sort": "updated_at",
            "from": format_api_timestamp(since),
        }

    async def fetch_since(self, since: datetime, limit: int) -> bytes:
        """
        Fetch the raw document of notes updated since ``since``.

        Raises:
            FetchExhaustedError: Retries exhausted
            NonRetryableError: Permanent HTTP failure
        """
        params = self.search_params(since, limit)
        document = await self._get(params)
        logger.info(
            f"Incremental feed returned {count_records(document)} notes since {params['from']}"
        )
        return document

    async def has_updates_since(self, since: datetime) -> bool:
        # `from` is inclusive at one-second resolution; the note at the
        # checkpoint itself is already stored
        document = await self._get(self.search_params(since + timedelta(seconds=1), 1))
        return count_records(document) > 0

    async def _get(self, params: Dict[str, Any]) -> bytes:
        url = f"{self.base_url}{self.SEARCH_PATH}"
        describe = f"notes-search(from={params['from']}, limit={params['limit']})"

        async def attempt() -> bytes:
            request = self.client.build_request("GET", url, params=params)
            return await send(self.client, request, describe)

        return await self.policy.run(attempt, describe, breaker=self.breaker)
