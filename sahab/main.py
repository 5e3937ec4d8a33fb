"""
FastAPI application for the Sahab billing service.

Provides REST API for:
- Usage metering and quota checks for the media pipeline
- Plan upgrades through the Paymob gateway
- Paymob webhook reconciliation
- In-app notifications
- Health checks and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from sahab.billing.paymob import close_paymob_client, get_paymob_client
from sahab.config import get_settings
from sahab.exceptions import (
    SahabError,
    http_exception_handler,
    sahab_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sahab.identity.client import close_identity_client, get_identity_client
from sahab.models.plan import DEFAULT_PLANS
from sahab.observability.health import (
    LivenessResponse,
    ReadinessResponse,
    get_health_checker,
)
from sahab.observability.logging import OperationContext, configure_logging, get_logger
from sahab.observability.logging_middleware import StructuredLoggingMiddleware
from sahab.observability.metrics import generate_metrics
from sahab.observability.middleware import ErrorTrackingMiddleware, PrometheusMiddleware
from sahab.observability.request_limits import RequestSizeLimitMiddleware
from sahab.rate_limits import limiter, rate_limit_exceeded_handler
from sahab.routers import (
    notifications_router,
    payments_router,
    subscriptions_router,
    usage_router,
)
from sahab.storage.database import get_billing_db

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
    - Open and migrate the billing database
    - Seed the reference plan catalog (idempotent)
    - Create the gateway and identity provider clients
    """
    settings = get_settings()
    logger.info("=== Sahab billing service starting ===")

    try:
        db = await get_billing_db()
        logger.info("Billing database ready", path=str(db.db_path))

        if settings.database.seed_plans_on_startup:
            with OperationContext("plan_catalog_seed", plans=len(DEFAULT_PLANS)):
                inserted = await db.seed_plans(DEFAULT_PLANS)
            logger.info("Plan catalog seeded", inserted=inserted)

        gateway = get_paymob_client(settings.paymob)
        identity = get_identity_client(settings.identity)
        logger.info(
            "Provider clients ready",
            payments_enabled=gateway.is_enabled,
            webhook_signatures=gateway.can_verify_signatures,
            identity_enabled=identity.config.is_configured,
        )

        logger.info("=== Service ready ===")
        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        await close_paymob_client()
        await close_identity_client()
        logger.info("=== Shutdown complete ===")


app = FastAPI(
    title="Sahab Billing API",
    description="Quota accounting and Paymob payment reconciliation for Sahab media hosting",
    version=settings.logging.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Rate limiter state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Error responses share one format: {success, error, code, request_id}
app.add_exception_handler(SahabError, sahab_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors.origins_list
if "*" in cors_origins:
    logger.warning("CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=settings.cors.methods_list,
    allow_headers=settings.cors.headers_list,
    max_age=settings.cors.max_age,
)

# The last registered middleware runs first:
# StructuredLoggingMiddleware -> PrometheusMiddleware -> ErrorTrackingMiddleware
# -> RequestSizeLimitMiddleware -> routes. Oversized bodies are rejected inside
# the request context, so the 413 still carries X-Request-ID.
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_body_size=settings.service.max_request_body_size,
)
app.add_middleware(ErrorTrackingMiddleware)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(
    StructuredLoggingMiddleware,
    slow_warning_ms=settings.logging.slow_request_warning_ms,
    slow_error_ms=settings.logging.slow_request_error_ms,
)

app.include_router(payments_router)
app.include_router(usage_router)
app.include_router(subscriptions_router)
app.include_router(notifications_router)


@app.get("/health/liveness", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check. No I/O; fails only if the process is dead."""
    return await get_health_checker().check_liveness()


@app.get(
    "/health/readiness",
    response_model=ReadinessResponse,
    tags=["Health"],
    responses={
        200: {"description": "Service is ready"},
        503: {"description": "Service is not ready"},
    },
)
async def readiness_check(response: Response):
    """
    Readiness check.

    HTTP 200: ready (healthy or degraded)
    HTTP 503: database unavailable
    """
    try:
        db = await get_billing_db()
    except Exception as e:
        logger.error("Billing database unavailable", error=str(e))
        db = None

    readiness = await get_health_checker().check_readiness(
        billing_db=db,
        gateway=get_paymob_client(get_settings().paymob),
    )

    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.debug(
        "Readiness check completed",
        ready=readiness.ready,
        status=readiness.status.value,
    )
    return readiness


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics in exposition format."""
    metrics_data, content_type = generate_metrics()
    return Response(content=metrics_data, media_type=content_type)


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "sahab.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
    )


if __name__ == "__main__":
    run()
