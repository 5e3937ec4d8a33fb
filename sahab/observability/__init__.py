"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- logging_middleware.py / middleware.py: per-request logging and metrics
- health.py: liveness and readiness checks
"""

from sahab.observability.metrics import (
    track_error,
    track_quota_decision,
    track_request,
    track_webhook_delivery,
)

__all__ = [
    "track_error",
    "track_quota_decision",
    "track_request",
    "track_webhook_delivery",
]
