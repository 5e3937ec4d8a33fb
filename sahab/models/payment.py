"""Payments recorded against the gateway's order id."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(BaseModel):
    """
    A payment attempt for one plan upgrade.

    provider_txn_id holds the gateway's order id and is the idempotency key
    for webhook deliveries. Only PENDING->SUCCESS and PENDING->FAILED exist.
    """

    id: str
    user_id: str
    plan_id: str
    amount: int = Field(..., ge=0, description="Minor units")
    currency: str = Field(default="EGP")
    status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    provider: str = Field(default="paymob")
    provider_txn_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
