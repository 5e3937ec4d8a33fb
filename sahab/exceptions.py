"""
Domain exceptions and FastAPI exception handlers.

Every billing failure is a ``SahabError`` subclass carrying a stable error
code and the HTTP status it maps to. Handlers render a single error format:

    {"success": false, "error": <message>, "code": <CODE>, "request_id": <id>}

plus an optional ``details`` object for structured rejections (quota numbers).
"""

import logging
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sahab.observability.logging import get_request_id
from sahab.observability.metrics import track_error

logger = logging.getLogger(__name__)


class SahabError(Exception):
    """Base exception for billing-core failures."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def public_message(self) -> str:
        """Message safe to return to the caller."""
        return self.message


class AuthError(SahabError):
    """Missing or invalid identity."""

    code = "AUTH_ERROR"
    status_code = status.HTTP_401_UNAUTHORIZED


class ValidationError(SahabError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class QuotaExceededError(ValidationError):
    """Operation would push usage past the plan's storage limit."""

    code = "QUOTA_EXCEEDED"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class FileTooLargeError(ValidationError):
    """Single file exceeds the plan's max upload size."""

    code = "FILE_TOO_LARGE"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class TransformationLimitError(ValidationError):
    """Standalone transformation requested with no transformation units left."""

    code = "TRANSFORMATION_LIMIT_EXCEEDED"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class ForbiddenError(SahabError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(SahabError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(SahabError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class ProviderError(SahabError):
    """
    An external collaborator (payment gateway, identity provider) failed.

    The cause is logged where the error is raised; callers only ever see the
    generic public message.
    """

    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, provider: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.provider = provider

    @property
    def public_message(self) -> str:
        return "Payment service is temporarily unavailable. Please try again later."


class ConsistencyError(SahabError):
    """Local state could not be made consistent (e.g. payment settled, plan not granted)."""

    code = "CONSISTENCY_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    @property
    def public_message(self) -> str:
        return "Internal error"


class PlanCatalogError(SahabError):
    """Reference plan data is missing or malformed. Fatal configuration error."""

    code = "PLAN_CATALOG_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    @property
    def public_message(self) -> str:
        return "Internal error"


def error_body(
    message: str,
    code: str,
    request_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the standard error response body."""
    body: dict[str, Any] = {
        "success": False,
        "error": message,
        "code": code,
        "request_id": request_id if request_id is not None else get_request_id(),
    }
    if details:
        body["details"] = details
    return body


async def sahab_error_handler(request: Request, exc: SahabError) -> JSONResponse:
    """Render SahabError subclasses."""
    log_extra = {
        "path": request.url.path,
        "error_code": exc.code,
        "status_code": exc.status_code,
    }
    track_error(error_type=exc.code.lower(), endpoint=request.url.path)
    if exc.status_code >= 500:
        logger.error(f"Request failed: {exc.message}", extra=log_extra)
    else:
        logger.info(f"Request rejected: {exc.message}", extra=log_extra)

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.public_message, exc.code, details=exc.details),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework HTTP errors in the standard format."""
    error_code_map = {
        400: "BAD_REQUEST",
        401: "AUTH_ERROR",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        413: "PAYLOAD_TOO_LARGE",
        429: "RATE_LIMITED",
        503: "SERVICE_UNAVAILABLE",
    }
    code = error_code_map.get(exc.status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code} error"

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message, code),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request body / query validation failures are 400, not FastAPI's default 422."""
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Invalid request", "VALIDATION_ERROR", details={"errors": errors}),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: never leak internals."""
    logger.error(
        "Unhandled exception",
        extra={"path": request.url.path, "exception_type": type(exc).__name__},
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Internal error", "INTERNAL_ERROR"),
    )
