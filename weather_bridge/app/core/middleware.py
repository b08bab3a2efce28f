"""
Request middleware for the local endpoint.

Every request gets a correlation id (taken from X-Request-ID when the
orchestrator sends one), a timing header, and one access-log line.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from weather_bridge.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
PROCESS_TIME_HEADER = "X-Process-Time"
QUIET_PATHS = frozenset({"/health"})


def _access_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    # /health is polled by the orchestrator
    return logging.DEBUG if path in QUIET_PATHS else logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Bind request context for downstream loggers and log the outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        with log_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        ):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s failed after %.1fms",
                    request.method, path, (time.perf_counter() - start) * 1000,
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers[PROCESS_TIME_HEADER] = f"{duration_ms:.1f}ms"

            logger.log(
                _access_level(path, response.status_code),
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": response.status_code},
            )
        return response
