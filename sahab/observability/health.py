"""
Health checks for liveness and readiness.

Provides:
- Liveness check: Is the process alive? (no I/O)
- Readiness check: Can it serve billing traffic? (database check, gateway config)

The database is critical: without it nothing can be metered or reconciled.
An unconfigured payment gateway only degrades readiness, since usage
accounting and webhook acks keep working.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from sahab.observability.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# HEALTH STATUS MODELS
# ============================================================================


class HealthStatus(str, Enum):
    """Health status enumeration."""

    HEALTHY = "healthy"  # All checks passed
    DEGRADED = "degraded"  # Some non-critical checks failed
    UNHEALTHY = "unhealthy"  # Critical checks failed


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str = Field(description="Component name")
    status: HealthStatus = Field(description="Component health status")
    message: str | None = Field(default=None, description="Status message")
    latency_ms: float | None = Field(
        default=None, description="Health check latency in milliseconds"
    )
    last_check: datetime = Field(description="Last health check timestamp")
    metadata: dict[str, Any] | None = Field(
        default=None, description="Additional component metadata"
    )


class LivenessResponse(BaseModel):
    """Minimal liveness check response."""

    status: str = Field(default="alive", description="Liveness status")
    timestamp: datetime = Field(description="Check timestamp")
    uptime_seconds: float = Field(description="Service uptime in seconds")


class ReadinessResponse(BaseModel):
    """Readiness check response with dependency checks."""

    status: HealthStatus = Field(description="Readiness status")
    timestamp: datetime = Field(description="Check timestamp")
    ready: bool = Field(description="Whether service is ready to accept traffic")
    version: str = Field(description="Service version")
    components: list[ComponentHealth] = Field(description="Component health statuses")


# ============================================================================
# HEALTH CHECKER
# ============================================================================


class HealthChecker:
    """Health check coordinator for the billing service's dependencies."""

    def __init__(self, version: str = "0.1.0"):
        self.start_time = time.time()
        self.version = version

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def check_liveness(self) -> LivenessResponse:
        """
        Liveness check: only fails if the process is dead.

        No I/O, no dependency checks.
        """
        return LivenessResponse(
            status="alive",
            timestamp=datetime.now(UTC),
            uptime_seconds=round(self.get_uptime_seconds(), 2),
        )

    async def check_readiness(self, billing_db=None, gateway=None) -> ReadinessResponse:
        """
        Readiness check: is the service ready to accept traffic?

        Args:
            billing_db: BillingDatabase (critical)
            gateway: PaymobClient (non-critical)

        Returns:
            ReadinessResponse: Readiness status with component details
        """
        components: list[ComponentHealth] = []
        overall_status = HealthStatus.HEALTHY

        if billing_db is not None:
            db_health = await self._check_database_health(billing_db)
            components.append(db_health)
            if db_health.status == HealthStatus.UNHEALTHY:
                overall_status = HealthStatus.UNHEALTHY
        else:
            overall_status = HealthStatus.UNHEALTHY
            components.append(
                ComponentHealth(
                    name="billing_database",
                    status=HealthStatus.UNHEALTHY,
                    message="Database not initialized",
                    last_check=datetime.now(UTC),
                )
            )

        if gateway is not None:
            gateway_health = self._check_gateway_config(gateway)
            components.append(gateway_health)
            if (
                gateway_health.status != HealthStatus.HEALTHY
                and overall_status == HealthStatus.HEALTHY
            ):
                overall_status = HealthStatus.DEGRADED

        ready = overall_status in [HealthStatus.HEALTHY, HealthStatus.DEGRADED]

        return ReadinessResponse(
            status=overall_status,
            timestamp=datetime.now(UTC),
            ready=ready,
            version=self.version,
            components=components,
        )

    async def _check_database_health(self, billing_db) -> ComponentHealth:
        """Run a trivial query against the billing database."""
        start_time = time.perf_counter()

        try:
            await billing_db.ping()
            latency_ms = (time.perf_counter() - start_time) * 1000

            return ComponentHealth(
                name="billing_database",
                status=HealthStatus.HEALTHY,
                message="Database responsive",
                latency_ms=round(latency_ms, 2),
                last_check=datetime.now(UTC),
            )

        except Exception as e:
            latency_ms = (time.perf_counter() - start_time) * 1000

            logger.error("Database health check failed", error=str(e), exc_info=True)

            return ComponentHealth(
                name="billing_database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database check failed: {type(e).__name__}",
                latency_ms=round(latency_ms, 2),
                last_check=datetime.now(UTC),
            )

    def _check_gateway_config(self, gateway) -> ComponentHealth:
        """Gateway is only checked for configuration; health checks never call it."""
        payments_enabled = gateway.is_enabled
        signatures_enabled = gateway.can_verify_signatures

        if payments_enabled and signatures_enabled:
            status = HealthStatus.HEALTHY
            message = "Payment gateway configured"
        elif payments_enabled:
            status = HealthStatus.DEGRADED
            message = "Webhook signatures cannot be verified"
        else:
            status = HealthStatus.DEGRADED
            message = "Payment gateway not configured (initiation disabled)"

        return ComponentHealth(
            name="payment_gateway",
            status=status,
            message=message,
            last_check=datetime.now(UTC),
            metadata={
                "payments_enabled": payments_enabled,
                "signatures_enabled": signatures_enabled,
            },
        )


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    """Get global health checker instance."""
    global _health_checker
    if _health_checker is None:
        from sahab.config import get_settings

        _health_checker = HealthChecker(version=get_settings().logging.service_version)
    return _health_checker
