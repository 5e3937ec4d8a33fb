"""
Circuit breakers and retries for external dependencies.

Prevents cascade failures when the payment gateway or the identity provider
experience outages.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed

Every outbound call goes through ``provider_call``, which also translates
transport failures and open circuits into ``ProviderError`` so nothing above
the client layer ever sees an httpx or pybreaker exception.
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sahab.exceptions import ProviderError
from sahab.observability.metrics import track_provider_call

logger = logging.getLogger(__name__)


class BreakerStateLogger(CircuitBreakerListener):
    """Log every breaker state change."""

    def state_change(self, cb: CircuitBreaker, old_state, new_state) -> None:
        new_name = getattr(new_state, "name", str(new_state))
        old_name = getattr(old_state, "name", str(old_state))
        extra = {
            "breaker_name": cb.name,
            "old_state": old_name,
            "state": new_name,
            "fail_count": cb.fail_counter,
            "fail_max": cb.fail_max,
        }

        if new_name == "open":
            logger.error(f"Circuit breaker OPENED: {cb.name}", extra=extra)
        elif new_name == "half-open":
            logger.warning(f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)", extra=extra)
        else:
            logger.info(f"Circuit breaker CLOSED: {cb.name} (service recovered)", extra=extra)


_listeners = [BreakerStateLogger()]

# Payment gateway: opens after 3 consecutive failures, stays open for 30 seconds
paymob_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="Paymob",
    listeners=_listeners,
)

# Identity provider: only used best-effort, so a longer open period is fine
identity_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=60,
    name="Identity",
    listeners=_listeners,
)


def get_paymob_breaker() -> CircuitBreaker:
    return paymob_breaker


def get_identity_breaker() -> CircuitBreaker:
    return identity_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    paymob_breaker.close()
    identity_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


@contextmanager
def provider_call(breaker: CircuitBreaker, provider: str, operation: str) -> Iterator[None]:
    """
    Run one outbound call through a circuit breaker.

    Args:
        breaker: Breaker guarding the provider
        provider: Provider name for logs and metrics (paymob, identity)
        operation: Operation name for logs and metrics

    Raises:
        ProviderError: Circuit open, or the call failed at the transport /
            HTTP status level. The original exception is chained.

    Usage:
        with provider_call(paymob_breaker, "paymob", "create_order"):
            response = await self._client.post(...)
            response.raise_for_status()
    """
    start = time.perf_counter()
    success = False
    try:
        with breaker.calling():
            yield
        success = True

    except CircuitBreakerError as e:
        logger.warning(
            f"{breaker.name} circuit breaker OPEN - failing fast",
            extra={"provider": provider, "operation": operation, "state": breaker.current_state},
        )
        raise ProviderError(
            f"{provider} unavailable (circuit breaker open)", provider=provider
        ) from e

    except httpx.HTTPStatusError as e:
        logger.error(
            f"{provider} {operation} returned HTTP {e.response.status_code}",
            extra={
                "provider": provider,
                "operation": operation,
                "status_code": e.response.status_code,
                "response_body": e.response.text[:500],
            },
        )
        raise ProviderError(
            f"{provider} {operation} failed with HTTP {e.response.status_code}",
            provider=provider,
        ) from e

    except httpx.HTTPError as e:
        logger.error(
            f"{provider} {operation} transport error: {type(e).__name__}",
            extra={"provider": provider, "operation": operation, "error": str(e)},
        )
        raise ProviderError(f"{provider} {operation} failed: {e}", provider=provider) from e

    finally:
        track_provider_call(provider, operation, success, time.perf_counter() - start)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 5.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Retry decorator with exponential backoff.

    Only for idempotent calls.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        exceptions: Exception types to retry on

    Usage:
        @with_retry(max_attempts=3, exceptions=(ProviderError,))
        async def authenticate():
            ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )
