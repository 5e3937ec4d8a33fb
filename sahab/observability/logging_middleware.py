"""
Request-scoped structured logging.

Each request runs inside a RequestContext, so every log line written while
handling it (billing services, gateway calls, webhook reconciliation) carries
the same request_id and trace_id. The auth dependency adds user_id to that
context once the session token is verified.

Request and response lines are skipped for health checks and metric scrapes; latency
above the configured thresholds is always reported.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from sahab.observability.logging import RequestContext, get_logger, get_user_id

logger = get_logger(__name__)

QUIET_PATHS = frozenset(
    {
        "/health/liveness",
        "/health/readiness",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }
)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Bind request context and log each request once it completes.

    X-Request-ID and X-Trace-ID are taken from the request when present
    (gateway retries and the upload pipeline forward them) and echoed on
    the response.

    Example line:
        {
          "event": "HTTP request completed",
          "request_id": "req_abc123",
          "trace_id": "trace_xyz789",
          "user_id": "user_2abc",
          "method": "POST",
          "path": "/payment/webhook",
          "status_code": 200,
          "latency_ms": 38.1,
          "service": "sahab-billing"
        }
    """

    def __init__(
        self,
        app: ASGIApp,
        slow_warning_ms: float = 250.0,
        slow_error_ms: float = 2000.0,
    ):
        super().__init__(app)
        self.slow_warning_ms = slow_warning_ms
        self.slow_error_ms = slow_error_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        path = request.url.path

        with RequestContext(request_id=request_id, trace_id=trace_id):
            start_time = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=path,
                    latency_ms=_elapsed_ms(start_time),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            latency_ms = _elapsed_ms(start_time)
            fields = {
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            }

            if path not in QUIET_PATHS:
                logger.info(
                    "HTTP request completed",
                    user_id=getattr(request.state, "user_id", None) or get_user_id(),
                    **fields,
                )

            if latency_ms > self.slow_error_ms:
                logger.error("Slow request", threshold_ms=self.slow_error_ms, **fields)
            elif latency_ms > self.slow_warning_ms:
                logger.warning("Slow request", threshold_ms=self.slow_warning_ms, **fields)

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)
