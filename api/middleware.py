"""
Request context for the operator API: request id, latency headers and a
JSON body for unhandled errors.
"""

import logging
import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from schemas.api import ErrorResponse

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
LATENCY_HEADER = "X-API-Latency-ms"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    An incoming X-Request-ID is reused so operators can correlate a probe
    with the daemon's logs; otherwise a fresh one is issued.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"[{request_id}] {request.method} {request.url.path} failed")
            body = ErrorResponse(error=type(e).__name__, detail=str(e))
            response = JSONResponse(status_code=500, content=body.model_dump(mode="json"))

        latency_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[LATENCY_HEADER] = f"{latency_ms:.0f}"

        logger.debug(
            f"[{request_id}] {request.method} {request.url.path} -> "
            f"{response.status_code} ({latency_ms:.1f}ms)"
        )
        return response
