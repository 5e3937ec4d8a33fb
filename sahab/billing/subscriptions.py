"""
Subscription activation.

Local state is the source of truth: the subscription row is upserted first
(one atomic statement keyed on user_id), then the identity provider's copy of
the plan is refreshed best-effort. A provider outage never undoes or blocks
an activation the user has paid for.
"""

import calendar
import logging
from datetime import UTC, datetime

from sahab.billing.plan_catalog import PlanCatalog
from sahab.exceptions import ProviderError
from sahab.identity.client import IdentityClient
from sahab.models.subscription import Subscription
from sahab.observability.metrics import (
    track_identity_propagation_failure,
    track_subscription_activation,
)
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


def add_months(moment: datetime, months: int) -> datetime:
    """
    Same wall-clock time ``months`` calendar months later.

    The day is clamped to the target month's length (Jan 31 + 1 -> Feb 28/29).
    """
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class SubscriptionActivator:
    """Grants a plan to a user for one subscription period."""

    def __init__(
        self,
        db: BillingDatabase,
        plan_catalog: PlanCatalog,
        identity_client: IdentityClient | None = None,
        period_months: int = 1,
    ):
        """
        Initialize subscription activator.

        Args:
            db: Billing database
            plan_catalog: Plan lookup
            identity_client: Identity provider client (None disables propagation)
            period_months: Length of one paid period
        """
        self.db = db
        self.plan_catalog = plan_catalog
        self.identity_client = identity_client
        self.period_months = period_months

    async def activate(
        self, user_id: str, plan_id: str, now: datetime | None = None
    ) -> Subscription:
        """
        Make ``plan_id`` the user's ACTIVE plan until now + one period.

        Idempotent in effect: replaying it for the same user and plan leaves
        one row with that plan.

        Raises:
            NotFoundError: Unknown plan
            sqlite3.Error: Subscription row could not be written
        """
        plan = await self.plan_catalog.get_plan(plan_id)
        start = now or datetime.now(UTC)
        end = add_months(start, self.period_months)

        try:
            subscription = await self.db.upsert_subscription(user_id, plan.id, start, end)
        except Exception:
            track_subscription_activation(plan.id, success=False)
            raise

        track_subscription_activation(plan.id, success=True)
        logger.info(
            "Subscription activated",
            extra={
                "user_id": user_id,
                "plan_id": plan.id,
                "end_date": end.isoformat(),
            },
        )

        await self._propagate(user_id, plan.name, subscription)
        return subscription

    async def _propagate(self, user_id: str, plan_name: str, subscription: Subscription) -> None:
        """Push plan name, status and end date to the identity provider (best-effort)."""
        if self.identity_client is None:
            return

        try:
            await self.identity_client.update_user_metadata(
                user_id,
                {
                    "subscriptionPlan": plan_name,
                    "subscriptionStatus": subscription.status.value,
                    "subscriptionEndDate": subscription.end_date.isoformat(),
                },
            )
        except ProviderError as e:
            track_identity_propagation_failure()
            logger.warning(
                "Failed to propagate subscription to identity provider",
                extra={"user_id": user_id, "plan_name": plan_name, "error": str(e)},
            )
