"""API routers."""

from sahab.routers.notifications import router as notifications_router
from sahab.routers.payments import router as payments_router
from sahab.routers.subscriptions import router as subscriptions_router
from sahab.routers.usage import router as usage_router

__all__ = ["notifications_router", "payments_router", "subscriptions_router", "usage_router"]
