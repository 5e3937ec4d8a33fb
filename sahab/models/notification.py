"""In-app notifications."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    USAGE_WARNING = "USAGE_WARNING"
    USAGE_CRITICAL = "USAGE_CRITICAL"
    USAGE_EXCEEDED = "USAGE_EXCEEDED"


class Notification(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    action_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
