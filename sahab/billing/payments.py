"""
Payment initiation.

The gateway order is opened first and the local PENDING payment is written
only after the gateway confirmed it. A gateway failure therefore leaves no
row behind, and every PENDING row has a real order id the webhook can match.
"""

import logging
import sqlite3
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel

from sahab.billing.paymob import PROVIDER_NAME, BillingData, PaymobClient
from sahab.billing.plan_catalog import PlanCatalog
from sahab.exceptions import (
    AuthError,
    ConflictError,
    ConsistencyError,
    ProviderError,
    ValidationError,
)
from sahab.identity.client import IdentityClient
from sahab.models.payment import Payment, PaymentStatus
from sahab.models.plan import Plan
from sahab.observability.metrics import track_payment_initiation
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class PaymentIntent(BaseModel):
    """What the client needs to send the user to checkout."""

    payment_id: str
    payment_url: str
    order_id: str
    amount_minor: int
    currency: str
    plan: Plan

    @property
    def amount_major(self) -> float:
        return self.amount_minor / 100


class PaymentIntentFactory:
    """Opens a gateway checkout session and records the PENDING payment."""

    def __init__(
        self,
        db: BillingDatabase,
        plan_catalog: PlanCatalog,
        gateway: PaymobClient,
        identity_client: IdentityClient | None = None,
    ):
        """
        Initialize payment intent factory.

        Args:
            db: Billing database
            plan_catalog: Plan lookup
            gateway: Payment gateway client
            identity_client: Source of billing details when the caller passes none
        """
        self.db = db
        self.plan_catalog = plan_catalog
        self.gateway = gateway
        self.identity_client = identity_client

    async def initiate(
        self, user_id: str | None, plan_id: str, billing: BillingData | None = None
    ) -> PaymentIntent:
        """
        Start an upgrade to ``plan_id``.

        Args:
            user_id: Authenticated user (None -> AuthError)
            plan_id: Plan to buy
            billing: Customer details for the gateway (looked up from the
                identity provider when omitted, after the plan checks)

        Returns:
            PaymentIntent: Redirect URL and the recorded payment id

        Raises:
            AuthError: No authenticated user
            NotFoundError: Unknown plan
            ConflictError: Free plan, or the user already holds this plan
            ValidationError: The user has no email address
            ProviderError: Gateway failure (no payment row was written)
        """
        if not user_id:
            raise AuthError("Authentication required")

        plan = await self.plan_catalog.get_plan(plan_id)

        if plan.is_free:
            track_payment_initiation(plan.id, "conflict")
            raise ConflictError("The Free plan does not require payment")

        current_plan_id = await self.plan_catalog.plan_id_for_user(user_id)
        if current_plan_id == plan.id:
            track_payment_initiation(plan.id, "conflict")
            raise ConflictError(f"You are already subscribed to the {plan.name} plan")

        if billing is None:
            billing = await self._billing_data(user_id)

        try:
            session = await self.gateway.create_payment_session(
                amount_cents=plan.price,
                plan_name=plan.name,
                billing=billing,
                currency=plan.currency,
            )
        except ProviderError as e:
            track_payment_initiation(plan.id, "provider_error")
            logger.error(
                "Payment session could not be opened",
                extra={"user_id": user_id, "plan_id": plan.id, "error": str(e)},
            )
            raise

        now = datetime.now(UTC)
        payment = Payment(
            id=f"pay_{uuid.uuid4().hex}",
            user_id=user_id,
            plan_id=plan.id,
            amount=plan.price,
            currency=plan.currency,
            status=PaymentStatus.PENDING,
            provider=PROVIDER_NAME,
            provider_txn_id=session.order_id,
            metadata={
                "paymobOrderId": session.order_id,
                "amountCents": session.amount_cents,
                "planName": plan.name,
                "userEmail": billing.email,
                "createdAt": now.isoformat(),
            },
            created_at=now,
            updated_at=now,
        )

        try:
            await self.db.create_payment(payment)
        except sqlite3.IntegrityError as e:
            # Gateway handed out an order id we already recorded
            track_payment_initiation(plan.id, "duplicate_order")
            logger.error(
                "Gateway order id already recorded",
                extra={"order_id": session.order_id, "user_id": user_id},
            )
            raise ConsistencyError(f"Duplicate gateway order id {session.order_id}") from e

        track_payment_initiation(plan.id, "created")
        logger.info(
            "Payment initiated",
            extra={
                "user_id": user_id,
                "payment_id": payment.id,
                "plan_id": plan.id,
                "order_id": session.order_id,
                "amount": plan.price,
            },
        )

        return PaymentIntent(
            payment_id=payment.id,
            payment_url=session.payment_url,
            order_id=session.order_id,
            amount_minor=plan.price,
            currency=plan.currency,
            plan=plan,
        )

    async def _billing_data(self, user_id: str) -> BillingData:
        """Billing details from the identity provider's user profile."""
        if self.identity_client is None:
            raise ProviderError("No source for billing details", provider="identity")

        user = await self.identity_client.get_user(user_id)
        if not user.email:
            raise ValidationError("User email is required for payment processing")

        return BillingData(
            email=user.email,
            first_name=user.first_name or "User",
            last_name=user.last_name or "NA",
        )
