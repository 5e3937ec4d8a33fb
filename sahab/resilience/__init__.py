"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when the payment gateway or the
identity provider fail.
"""

from sahab.resilience.circuit_breakers import (
    get_identity_breaker,
    get_paymob_breaker,
    reset_all_breakers,
)

__all__ = [
    "get_identity_breaker",
    "get_paymob_breaker",
    "reset_all_breakers",
]
