"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram), count (counter) and in-flight (gauge) per endpoint
- Quota decisions by operation kind and outcome
- Usage ledger mutations
- Payment initiations and webhook deliveries by outcome
- Subscription activations
- Outbound provider calls (gateway, identity provider) and their failures
- Error rates by error type

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- user_id is never a label (unbounded cardinality)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "sahab_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s (gateway round trips)
        5.000,  # 5s
        10.000,  # 10s
    ),
)

http_requests_total = Counter(
    "sahab_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "sahab_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# QUOTA METRICS
# ============================================================================

quota_decisions_total = Counter(
    "sahab_quota_decisions_total",
    "Quota gate decisions",
    labelnames=["operation", "outcome", "plan"],
)

usage_ledger_mutations_total = Counter(
    "sahab_usage_ledger_mutations_total",
    "Usage ledger mutations",
    labelnames=["action", "result"],  # upload/delete, applied/rejected
)

storage_bytes_recorded_total = Counter(
    "sahab_storage_bytes_recorded_total",
    "Bytes added to (upload) or removed from (delete) usage ledgers",
    labelnames=["action"],
)

# ============================================================================
# PAYMENT METRICS
# ============================================================================

payment_initiations_total = Counter(
    "sahab_payment_initiations_total",
    "Payment initiation attempts",
    labelnames=["plan", "outcome"],  # created, conflict, not_found, provider_error
)

webhook_deliveries_total = Counter(
    "sahab_webhook_deliveries_total",
    "Payment webhook deliveries by reconciliation outcome",
    labelnames=["outcome"],
)

webhook_processing_duration_seconds = Histogram(
    "sahab_webhook_processing_duration_seconds",
    "Time to reconcile one webhook delivery",
    labelnames=["outcome"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000),
)

subscription_activations_total = Counter(
    "sahab_subscription_activations_total",
    "Subscription activations",
    labelnames=["plan", "success"],
)

# ============================================================================
# OUTBOUND PROVIDER METRICS
# ============================================================================

provider_request_duration_seconds = Histogram(
    "sahab_provider_request_duration_seconds",
    "Outbound provider call latency",
    labelnames=["provider", "operation", "success"],
    buckets=(0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000, 10.000, 30.000),
)

identity_propagation_failures_total = Counter(
    "sahab_identity_propagation_failures_total",
    "Subscription metadata pushes to the identity provider that failed",
)

notification_failures_total = Counter(
    "sahab_notification_failures_total",
    "Best-effort notifications that could not be delivered",
    labelnames=["type"],
)

# ============================================================================
# ERROR METRICS
# ============================================================================

errors_total = Counter(
    "sahab_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

rate_limit_exceeded_total = Counter(
    "sahab_rate_limit_exceeded_total",
    "Total rate limit violations",
    labelnames=["endpoint"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Normalized endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_quota_decision(operation: str, outcome: str, plan: str) -> None:
    quota_decisions_total.labels(operation=operation, outcome=outcome, plan=plan).inc()


def track_ledger_mutation(action: str, applied: bool, size_bytes: int = 0) -> None:
    """
    Track a usage ledger mutation.

    Args:
        action: upload, delete or resync
        applied: False when a guarded increment was rejected
        size_bytes: Bytes moved by an applied mutation
    """
    usage_ledger_mutations_total.labels(
        action=action,
        result="applied" if applied else "rejected",
    ).inc()
    if applied and size_bytes > 0:
        storage_bytes_recorded_total.labels(action=action).inc(size_bytes)


def track_payment_initiation(plan: str, outcome: str) -> None:
    payment_initiations_total.labels(plan=plan, outcome=outcome).inc()


def track_webhook_delivery(outcome: str, duration_seconds: float) -> None:
    """
    Track one webhook delivery.

    Args:
        outcome: Reconciliation outcome (activated, duplicate, bad_signature, ...)
        duration_seconds: Processing time
    """
    webhook_deliveries_total.labels(outcome=outcome).inc()
    webhook_processing_duration_seconds.labels(outcome=outcome).observe(duration_seconds)


def track_subscription_activation(plan: str, success: bool) -> None:
    subscription_activations_total.labels(
        plan=plan,
        success="true" if success else "false",
    ).inc()


def track_provider_call(
    provider: str, operation: str, success: bool, duration_seconds: float
) -> None:
    """
    Track an outbound provider call.

    Args:
        provider: paymob or identity
        operation: auth, create_order, payment_key, get_user, update_metadata
        success: Whether the call succeeded
        duration_seconds: Call duration
    """
    provider_request_duration_seconds.labels(
        provider=provider,
        operation=operation,
        success="true" if success else "false",
    ).observe(duration_seconds)


def track_identity_propagation_failure() -> None:
    identity_propagation_failures_total.inc()


def track_notification_failure(notification_type: str) -> None:
    notification_failures_total.labels(type=notification_type).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error type (validation, authentication, provider, etc.)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
    ).inc()


def track_rate_limit_exceeded(endpoint: str) -> None:
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
