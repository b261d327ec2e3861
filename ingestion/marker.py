"""
Operator surface: the failed-execution marker and the optional alert webhook.

While the marker file exists, no sync cycle starts. Only an operator
clears it (scripts/clear_failed_marker.py).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

from core.config import settings
from core.exceptions import FetchError, SyncException
from core.timeutil import utcnow
from ingestion.fetcher.http import send
from ingestion.fetcher.policy import RetryPolicy

logger = logging.getLogger(__name__)


class FailedMarker:
    def __init__(self, path: str = settings.FAILED_MARKER_PATH):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError):
            return {"raw": self.path.read_text(errors="replace")}

    def write(
        self,
        error: BaseException,
        cycle_id: Optional[UUID] = None,
        cycle_number: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record cause and cycle identifiers; written atomically."""
        details: Dict[str, Any] = {
            "failed_at": utcnow().isoformat(),
            "cycle_id": str(cycle_id) if cycle_id else None,
            "cycle_number": cycle_number,
            "stage": stage,
            "pid": os.getpid(),
        }
        if isinstance(error, SyncException):
            details["error"] = error.to_dict()
        else:
            details["error"] = {"error_type": type(error).__name__, "message": str(error)}

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(details, indent=2, default=str))
        os.replace(tmp, self.path)
        logger.critical(f"Wrote failed-execution marker {self.path}")
        return details

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Cleared failed-execution marker {self.path}")
        return True


class AlertNotifier:
    """Posts failure details to a webhook; a failed alert is logged, never raised."""

    def __init__(
        self,
        webhook_url: Optional[str] = settings.ALERT_WEBHOOK_URL,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.webhook_url = webhook_url
        self.client = client
        self.policy = policy or RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=10.0)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def notify(self, details: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        async def post(client: httpx.AsyncClient) -> bytes:
            request = client.build_request("POST", self.webhook_url, json={"event": "sync_failed", **details})
            return await send(client, request, "alert-webhook")

        try:
            if self.client is not None:
                await self.policy.run(lambda: post(self.client), "alert-webhook")
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    await self.policy.run(lambda: post(client), "alert-webhook")
        except FetchError as e:
            logger.error(f"Failed to deliver failure alert: {e}")
            return False
        logger.info("Failure alert delivered")
        return True
