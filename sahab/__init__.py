"""
Sahab billing core.

Quota accounting and payment reconciliation for the Sahab media hosting
platform: users upload images and video against the storage and
transformation limits of their plan, and upgrade plans through the Paymob
payment gateway.

Key Features:
    - Per-month usage ledger with atomic, race-free counters
    - Pre-flight quota gate for uploads and transformations
    - Paymob checkout sessions and idempotent webhook reconciliation
    - Subscription activation propagated to the identity provider

Example:
    >>> from sahab import get_settings
    >>> settings = get_settings()
    >>> print(settings.database.path)
"""

from sahab.config import get_settings

__all__ = ["get_settings"]
