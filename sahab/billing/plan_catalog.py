"""
Plan catalog: plan limits by plan id.

Plans are small reference data; lookups go to the database each time so an
operator editing a row takes effect without a restart.
"""

import logging
from typing import Literal

from sahab.exceptions import NotFoundError, PlanCatalogError
from sahab.models.plan import FREE_PLAN_ID, FREE_PLAN_NAME, Plan, PlanLimits
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Lookup of plan limits, with the Free plan as the fallback for 'no plan'."""

    def __init__(self, db: BillingDatabase):
        self.db = db

    async def get_plan(self, plan_id: str) -> Plan:
        """
        Get a plan by id.

        Raises:
            NotFoundError: Unknown plan id
        """
        plan = await self.db.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        return plan

    async def free_plan(self) -> Plan:
        """
        The implicit plan of every user without a current subscription.

        Raises:
            PlanCatalogError: Free plan missing from the catalog (fatal)
        """
        plan = await self.db.get_plan(FREE_PLAN_ID)
        if plan is None:
            plan = await self.db.get_plan_by_name(FREE_PLAN_NAME)
        if plan is None:
            logger.critical("Free plan missing from plan catalog")
            raise PlanCatalogError("Free plan is not configured")
        return plan

    async def limits_for(self, plan_id: str | None) -> PlanLimits:
        """
        Limits for a plan id; None means the Free plan.

        A subscription pointing at a plan that no longer exists is treated
        as a catalog error rather than silently downgraded.
        """
        if plan_id is None:
            return PlanLimits.from_plan(await self.free_plan())

        plan = await self.db.get_plan(plan_id)
        if plan is None:
            logger.error("Subscription references unknown plan", extra={"plan_id": plan_id})
            raise PlanCatalogError(f"Plan referenced by subscription not found: {plan_id}")
        return PlanLimits.from_plan(plan)

    async def plan_id_for_user(self, user_id: str) -> str | None:
        """
        Plan id of the user's current subscription, or None for the Free plan.

        ACTIVE rows past their end date count as expired.
        """
        subscription = await self.db.get_subscription(user_id)
        if subscription is None or not subscription.is_current():
            return None
        return subscription.plan_id

    async def limits_for_user(self, user_id: str) -> PlanLimits:
        return await self.limits_for(await self.plan_id_for_user(user_id))

    async def plan_for_user(self, user_id: str) -> Plan:
        """The full plan a user is currently on (Free without a current subscription)."""
        plan_id = await self.plan_id_for_user(user_id)
        if plan_id is None:
            return await self.free_plan()

        plan = await self.db.get_plan(plan_id)
        if plan is None:
            logger.error("Subscription references unknown plan", extra={"plan_id": plan_id})
            raise PlanCatalogError(f"Plan referenced by subscription not found: {plan_id}")
        return plan

    async def list_plans(self) -> list[Plan]:
        return await self.db.list_plans()

    async def upgrade_suggestion(
        self, limits: PlanLimits, resource: Literal["storage", "uploads", "transformations"]
    ) -> str:
        """
        One-line upsell for a user who ran into ``resource`` on their plan.

        Points at the cheapest catalog plan that raises that limit; on the
        top plan the user is sent to support instead.
        """
        current = {
            "storage": limits.storage_limit_mb,
            "uploads": limits.max_upload_size_mb,
            "transformations": limits.transformations_limit,
        }[resource]

        for plan in await self.db.list_plans():
            raised = {
                "storage": plan.storage_limit,
                "uploads": plan.max_upload_size,
                "transformations": plan.transformations_limit,
            }[resource]
            if plan.id == limits.plan_id or raised <= current:
                continue
            if resource == "transformations":
                return f"Upgrade to {plan.name} for {raised:,} monthly transformations"
            return (
                f"Upgrade to {plan.name} for {_format_mb(plan.storage_limit)} storage "
                f"and {_format_mb(plan.max_upload_size)} uploads"
            )

        return "Contact support for custom enterprise solutions"


def _format_mb(mb: int) -> str:
    if mb >= 1000 and mb % 1000 == 0:
        return f"{mb // 1000:,} GB"
    return f"{mb:,} MB"
