"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation, console output for development
- Request context propagation (request_id, user_id, trace_id)
- Redaction of gateway credentials, signatures and PII

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Standard library logging underneath: records from
  ``logging.getLogger(__name__)`` run through the same processors (extra
  fields included) via ProcessorFormatter
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

# Keys whose values never reach a log line in full
SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "authorization",
        "hmac",
        "hmac_secret",
        "password",
        "payment_token",
        "secret",
        "secret_key",
        "token",
    }
)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Inject request_id, user_id and trace_id from the current context."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id:
        event_dict["user_id"] = user_id

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    from sahab.config import get_settings

    settings = get_settings()
    event_dict["service"] = settings.logging.service_name
    event_dict["version"] = settings.logging.service_version
    event_dict["environment"] = settings.logging.environment
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact sensitive fields to prevent credential and PII leakage.

    - credentials and signatures: first 6 chars kept, rest masked
    - email: domain only (user@example.com -> ***@example.com)
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        lowered = key.lower()

        if lowered in SENSITIVE_FIELDS and isinstance(value, str):
            if len(value) > 12:
                event_dict[key] = f"{value[:6]}***"
            else:
                event_dict[key] = "***REDACTED***"

        elif lowered in {"email", "user_email"} and isinstance(value, str) and "@" in value:
            event_dict[key] = f"***@{value.split('@', 1)[1]}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type / exception_message for error aggregation."""
    exc_info = event_dict.get("exc_info")
    if exc_info is True:
        exc_info = sys.exc_info()
    if isinstance(exc_info, BaseException):
        exc_info = (type(exc_info), exc_info, exc_info.__traceback__)

    if isinstance(exc_info, tuple) and len(exc_info) == 3 and exc_info[0] is not None:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__
        event_dict["exception_message"] = str(exc_value)

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================

# Root handler installed by configure_logging; replaced on reconfiguration
_handler: logging.Handler | None = None


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging.

    structlog loggers and stdlib loggers (``logging.getLogger(__name__)`` with
    ``extra=`` fields, used by the billing modules) go through the same
    processor chain, so both get request context, redaction and the same
    renderer.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON (production):
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Payment webhook processed",
          "service": "sahab-billing",
          "request_id": "req_abc123",
          "user_id": "user_2abc",
          "payment_id": "pay_9f1c...",
          "outcome": "activated"
        }
    """
    global _handler

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        redact_sensitive_fields,
        add_timestamp,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    renderer: Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colorized)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(formatter)
    root.addHandler(_handler)
    root.setLevel(getattr(logging, log_level.upper()))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Payment initiated", payment_id=payment.id, plan_id=plan.id)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Usage:
        with RequestContext(request_id=request_id):
            logger.info("Processing webhook")  # request_id auto-injected

    Uses contextvars, so every async task sees its own values.
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._request_id_token = None
        self._user_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set user_id (even if None) so a later set_user_id() cannot leak
        # into the next request handled by this task
        self._user_id_token = user_id_var.set(self.user_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Usage:
        with OperationContext("paymob_create_order", plan_id="pro"):
            order = await client.create_order(...)
        # Logs: "paymob_create_order completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=round(duration_ms, 2),
                exception_type=exc_type.__name__,
                **self.context,
                exc_info=True,
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_user_id(user_id: str) -> None:
    """Set authenticated user ID for current context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    """Get request ID from current context."""
    return request_id_var.get()


def get_user_id() -> str | None:
    """Get user ID from current context."""
    return user_id_var.get()


def get_trace_id() -> str | None:
    """Get trace ID from current context."""
    return trace_id_var.get()
