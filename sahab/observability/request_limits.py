"""
Request size limiting middleware for DoS protection.

Every endpoint takes a small JSON body (webhook payloads included), so the
limit is checked against Content-Length before the body is read.
"""

import logging
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sahab.exceptions import error_body

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Enforce a request body size limit.

    Configuration:
        max_body_size: Maximum request body size in bytes (default: 1MB)
    """

    def __init__(self, app, max_body_size: int = 1 * 1024 * 1024):
        super().__init__(app)
        self.max_body_size = max_body_size

        logger.info(
            f"Request size limit middleware enabled (max: {max_body_size / 1024:.0f}KB)"
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")

        if content_length:
            try:
                content_length_int = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content=error_body("Invalid Content-Length header", "BAD_REQUEST"),
                )

            if content_length_int > self.max_body_size:
                logger.warning(
                    "Request body too large",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "content_length": content_length_int,
                        "max_allowed": self.max_body_size,
                    },
                )
                return JSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content=error_body(
                        f"Request body too large. Maximum allowed: {self.max_body_size} bytes",
                        "PAYLOAD_TOO_LARGE",
                        details={
                            "max_size_bytes": self.max_body_size,
                            "received_size_bytes": content_length_int,
                        },
                    ),
                )

        return await call_next(request)
