"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: Tracks all HTTP requests (latency, count, active)
- ErrorTrackingMiddleware: Classifies exceptions that escape the handlers
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from sahab.exceptions import SahabError
from sahab.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_DYNAMIC_SEGMENTS = (
    (re.compile(r"/media/[^/]+"), "/media/{media_id}"),
    (re.compile(r"/payments?/pay_[0-9a-f]+"), "/payment/{payment_id}"),
    (re.compile(r"/users/[^/]+"), "/users/{user_id}"),
)


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /media/med_abc123 -> /media/{media_id}
        /usage/update -> /usage/update (unchanged)
    """
    for pattern, placeholder in _DYNAMIC_SEGMENTS:
        path = pattern.sub(placeholder, path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Track request latency (histogram), count (counter) and in-flight (gauge)."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response

        finally:
            duration_seconds = time.perf_counter() - start_time
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )


class ErrorTrackingMiddleware(BaseHTTPMiddleware):
    """
    Error classification and tracking.

    Categories:
    - the error code of a SahabError (quota_exceeded, service_unavailable, ...)
    - database: sqlite3 errors
    - internal: anything else
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            track_error(
                error_type=self._classify_error(exc),
                endpoint=normalize_endpoint(request.url.path),
            )
            raise

    def _classify_error(self, exc: Exception) -> str:
        if isinstance(exc, SahabError):
            return exc.code.lower()

        if type(exc).__module__ == "sqlite3":
            return "database"

        if "RateLimitExceeded" in type(exc).__name__:
            return "rate_limit"

        return "internal"
