"""Subscription status endpoint."""

from typing import Any

from fastapi import APIRouter, Depends

from sahab.auth.dependencies import get_current_user_id
from sahab.billing.plan_catalog import PlanCatalog
from sahab.dependencies import get_plan_catalog
from sahab.models.usage import UsagePeriod, usage_remaining
from sahab.storage.database import BillingDatabase, get_billing_db

router = APIRouter(prefix="/subscription", tags=["Subscription"])


@router.get("/status")
async def subscription_status(
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
) -> dict[str, Any]:
    """
    Current plan, status and remaining allowance.

    Status is FREE when there is no current subscription (none, or past its
    end date). Read-only: no usage row is created.
    """
    subscription = await db.get_subscription(user_id)
    is_active = subscription is not None and subscription.is_current()
    plan = await plan_catalog.plan_for_user(user_id)
    usage = await db.get_usage(user_id, UsagePeriod.current())

    storage_used_mb = usage.storage_used_mb if usage else 0
    transformations_used = usage.transformations_used if usage else 0

    return {
        "success": True,
        "subscription": {
            "plan": {
                **plan.model_dump(),
                "priceEGP": plan.price_major,
            },
            "status": subscription.status.value if is_active else "FREE",
            "startDate": subscription.start_date.isoformat() if is_active else None,
            "endDate": subscription.end_date.isoformat() if is_active else None,
            "usage": {
                "storageUsed": storage_used_mb,
                "transformationsUsed": transformations_used,
                "uploadsCount": usage.uploads_count if usage else 0,
                "storageRemaining": round(
                    usage_remaining(storage_used_mb, plan.storage_limit), 2
                ),
                "transformationsRemaining": int(
                    usage_remaining(transformations_used, plan.transformations_limit)
                ),
            },
        },
    }
