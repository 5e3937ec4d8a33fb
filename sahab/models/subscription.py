"""Per-user subscription (at most one row per user)."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class Subscription(BaseModel):
    """
    A user's paid plan for the current period.

    A missing row means the implicit Free plan. ACTIVE with an end_date in
    the past is treated as expired by ``is_current``.
    """

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE)
    start_date: datetime
    end_date: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def is_current(self, now: datetime | None = None) -> bool:
        """ACTIVE and not yet past its end date."""
        now = now or datetime.now(UTC)
        return self.status == SubscriptionStatus.ACTIVE and self.end_date > now
