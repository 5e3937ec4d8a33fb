"""
Per-user rate limiting.

slowapi limiter keyed by the authenticated user id, falling back to the
client address for unauthenticated requests. Only payment initiation is
limited: it opens a gateway order on every call.

Usage:
    @router.post("/payment/initiate")
    @limiter.limit(payment_initiate_limit)
    async def initiate(request: Request, ...):
        ...
"""

import logging

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from sahab.config import get_settings
from sahab.observability.metrics import track_rate_limit_exceeded

logger = logging.getLogger(__name__)


def rate_limit_key(request: Request) -> str:
    """
    Key for rate limiting.

    The auth dependency stores the verified user id on request.state before
    the endpoint (and therefore the limiter) runs.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


def payment_initiate_limit() -> str:
    """Limit string for payment initiation, read from settings on each check."""
    return get_settings().rate_limit.payment_initiate


limiter = Limiter(key_func=rate_limit_key, enabled=get_settings().rate_limit.enabled)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Count and log the violation, then answer with slowapi's 429 response."""
    user_id = getattr(request.state, "user_id", None)
    logger.warning(
        "Rate limit exceeded",
        extra={"path": request.url.path, "user_id": user_id, "limit": str(exc.detail)},
    )
    track_rate_limit_exceeded(endpoint=request.url.path)
    return _rate_limit_exceeded_handler(request, exc)
