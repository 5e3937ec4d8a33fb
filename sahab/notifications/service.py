"""
Best-effort in-app notifications.

A notification failing to persist must never fail the operation that
triggered it; failures are logged and counted, then dropped.
"""

import logging
import sqlite3
import uuid
from typing import Any

from sahab.models.notification import Notification, NotificationType
from sahab.models.usage import UsageLevel, usage_level
from sahab.observability.metrics import track_notification_failure
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

_LEVEL_TYPES = {
    UsageLevel.WARNING: NotificationType.USAGE_WARNING,
    UsageLevel.CRITICAL: NotificationType.USAGE_CRITICAL,
    UsageLevel.EXCEEDED: NotificationType.USAGE_EXCEEDED,
}


class NotificationService:
    """Creates notification rows for payment and usage events."""

    def __init__(
        self,
        db: BillingDatabase,
        warning_threshold: float = 80.0,
        critical_threshold: float = 95.0,
    ):
        self.db = db
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

    async def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        action_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        """
        Persist one notification.

        Returns:
            Notification, or None if it could not be stored
        """
        notification = Notification(
            id=f"ntf_{uuid.uuid4().hex}",
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            action_url=action_url,
            metadata=metadata or {},
        )
        try:
            return await self.db.create_notification(notification)
        except sqlite3.Error as e:
            track_notification_failure(notification_type.value)
            logger.error(
                "Failed to store notification",
                extra={
                    "user_id": user_id,
                    "notification_type": notification_type.value,
                    "error": str(e),
                },
            )
            return None

    async def payment_succeeded(
        self, user_id: str, plan_name: str, amount_minor: int, payment_id: str
    ) -> Notification | None:
        amount = amount_minor / 100
        return await self.notify(
            user_id,
            NotificationType.PAYMENT_SUCCESS,
            title="Payment Successful",
            message=f"Your payment for {plan_name} plan ({amount:g} EGP) was successful",
            action_url="/subscription",
            metadata={"plan_name": plan_name, "amount": amount, "payment_id": payment_id},
        )

    async def payment_failed(
        self, user_id: str, plan_name: str, reason: str, payment_id: str
    ) -> Notification | None:
        return await self.notify(
            user_id,
            NotificationType.PAYMENT_FAILED,
            title="Payment Failed",
            message=f"Payment for {plan_name} failed: {reason}",
            action_url="/subscription",
            metadata={"plan_name": plan_name, "reason": reason, "payment_id": payment_id},
        )

    async def usage_crossed(
        self,
        user_id: str,
        resource: str,
        before_percentage: float,
        after_percentage: float,
        current: float,
        limit: float,
        unit: str = "",
    ) -> Notification | None:
        """
        Notify when usage moves into a higher warning level.

        Nothing is sent while usage stays within the same level, so repeated
        uploads at 85% do not produce a notification each.
        """
        before = usage_level(before_percentage, self.warning_threshold, self.critical_threshold)
        after = usage_level(after_percentage, self.warning_threshold, self.critical_threshold)
        if after == UsageLevel.SAFE or after == before:
            return None

        order = list(UsageLevel)
        if order.index(after) < order.index(before):
            return None

        suffix = f" {unit}" if unit else ""
        return await self.notify(
            user_id,
            _LEVEL_TYPES[after],
            title=f"{resource.capitalize()} Usage Alert",
            message=(
                f"You've used {after_percentage:.0f}% of your {resource} "
                f"({current:g}{suffix} / {limit:g}{suffix})"
            ),
            action_url="/dashboard",
            metadata={
                "resource_type": resource,
                "percentage": after_percentage,
                "current": current,
                "limit": limit,
            },
        )
