"""
Payment webhook reconciliation.

The gateway delivers transaction callbacks at least once, possibly many
times and in any order. Reconciliation turns them into at most one
PENDING -> SUCCESS/FAILED transition per payment:

1. Signature: verified over the raw body before anything is parsed
2. Parse into a GatewayEvent (unparsable -> ack, recorded)
3. Look up the payment by gateway order id (unknown -> ack, recorded)
4. Terminal payments are never touched again (duplicate -> ack)
5. Atomic compare-and-set PENDING -> SUCCESS/FAILED, event merged into metadata
6. SUCCESS activates the subscription; if that fails the payment is forced
   to FAILED with an error marker and the gateway gets a 500
7. Best-effort user notification

Any other failure after the signature check (a locked or unavailable
datastore) is logged and acknowledged; only activation failure asks the
gateway to retry.

Outcome table (HTTP status returned to the gateway):

    bad signature              401   payment untouched
    unparsable body            200   payment untouched
    unknown order              200   payment untouched
    already terminal           200   payment untouched
    still pending at gateway   200   payment untouched
    success + activation ok    200   SUCCESS
    success + activation fails 500   FAILED + error marker
    gateway reports failure    200   FAILED
    amount/currency mismatch   200   FAILED + error marker
    internal error             200   unchanged, or as far as it got
"""

import json
import logging
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from sahab.billing.paymob import PROVIDER_NAME, EventParseError, GatewayEvent, PaymobClient
from sahab.billing.subscriptions import SubscriptionActivator
from sahab.models.payment import Payment, PaymentStatus
from sahab.notifications.service import NotificationService
from sahab.observability.metrics import track_error, track_webhook_delivery
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    """What one delivery did."""

    BAD_SIGNATURE = "bad_signature"
    UNPARSABLE = "unparsable"
    UNKNOWN_ORDER = "unknown_order"
    DUPLICATE = "duplicate"
    PENDING = "pending"
    ACTIVATED = "activated"
    ACTIVATION_FAILED = "activation_failed"
    PAYMENT_FAILED = "payment_failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    INTERNAL_ERROR = "internal_error"

    @property
    def http_status(self) -> int:
        if self is WebhookOutcome.BAD_SIGNATURE:
            return 401
        if self is WebhookOutcome.ACTIVATION_FAILED:
            return 500
        return 200


_MESSAGES = {
    WebhookOutcome.BAD_SIGNATURE: "Invalid signature",
    WebhookOutcome.UNPARSABLE: "Webhook received but payload could not be processed",
    WebhookOutcome.UNKNOWN_ORDER: "Payment record not found",
    WebhookOutcome.DUPLICATE: "Payment already processed",
    WebhookOutcome.PENDING: "Transaction still pending",
    WebhookOutcome.ACTIVATED: "Payment success processed successfully",
    WebhookOutcome.ACTIVATION_FAILED: "Subscription activation failed",
    WebhookOutcome.PAYMENT_FAILED: "Payment failed processed successfully",
    WebhookOutcome.AMOUNT_MISMATCH: "Payment amount mismatch",
    WebhookOutcome.INTERNAL_ERROR: "Webhook received but could not be processed",
}


class WebhookResult(BaseModel):
    """Acknowledgement returned to the gateway."""

    outcome: WebhookOutcome
    payment_id: str | None = None
    order_id: str | None = None

    @property
    def http_status(self) -> int:
        return self.outcome.http_status

    @property
    def message(self) -> str:
        return _MESSAGES[self.outcome]

    def body(self) -> dict[str, Any]:
        if self.http_status == 200:
            return {"success": True, "message": self.message}
        return {"success": False, "error": self.message}


class WebhookReconciler:
    """
    Handle payment gateway webhook deliveries.

    Processes transaction callbacks and settles local payments accordingly.
    """

    def __init__(
        self,
        db: BillingDatabase,
        gateway: PaymobClient,
        activator: SubscriptionActivator,
        notifications: NotificationService | None = None,
        require_signature: bool = False,
    ):
        """
        Initialize webhook reconciler.

        Args:
            db: Billing database
            gateway: Gateway client (signature verification, event parsing)
            activator: Subscription activator for successful payments
            notifications: Best-effort user notifications
            require_signature: Reject deliveries without a signature
        """
        self.db = db
        self.gateway = gateway
        self.activator = activator
        self.notifications = notifications
        self.require_signature = require_signature

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """
        Process one delivery.

        Args:
            raw_body: Request body exactly as received
            signature: HMAC from the request, if any

        Returns:
            WebhookResult: Outcome and HTTP status for the gateway
        """
        start = time.perf_counter()
        result = await self._handle(raw_body, signature)
        duration = time.perf_counter() - start

        track_webhook_delivery(result.outcome.value, duration)
        log = logger.error if result.http_status >= 500 else logger.info
        log(
            "Payment webhook processed",
            extra={
                "outcome": result.outcome.value,
                "payment_id": result.payment_id,
                "order_id": result.order_id,
                "latency_ms": round(duration * 1000, 2),
            },
        )
        return result

    async def _handle(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        # 1. Authenticate before anything else is read
        if signature:
            if not self.gateway.verify_signature(raw_body, signature):
                return WebhookResult(outcome=WebhookOutcome.BAD_SIGNATURE)
        elif self.require_signature:
            logger.warning("Unsigned webhook delivery rejected")
            return WebhookResult(outcome=WebhookOutcome.BAD_SIGNATURE)
        else:
            logger.warning("Unsigned webhook delivery accepted")

        try:
            return await self._reconcile(raw_body)
        except Exception as e:
            logger.error(
                "Webhook processing failed",
                extra={"error_type": type(e).__name__, "error": str(e)},
                exc_info=True,
            )
            track_error(error_type="webhook_internal", endpoint="/payment/webhook")
            return WebhookResult(outcome=WebhookOutcome.INTERNAL_ERROR)

    async def _reconcile(self, raw_body: bytes) -> WebhookResult:
        # 2. Parse
        try:
            event = self.gateway.parse_event(json.loads(raw_body))
        except (ValueError, EventParseError) as e:
            logger.warning("Unprocessable webhook payload", extra={"error": str(e)})
            await self._record(WebhookOutcome.UNPARSABLE, detail=str(e)[:500])
            return WebhookResult(outcome=WebhookOutcome.UNPARSABLE)

        # 3. Match to a local payment
        payment = await self.db.get_payment_by_provider_txn(PROVIDER_NAME, event.order_id)
        if payment is None:
            logger.warning(
                "Webhook for unknown order",
                extra={"order_id": event.order_id, "transaction_id": event.transaction_id},
            )
            await self._record(WebhookOutcome.UNKNOWN_ORDER, event)
            return WebhookResult(outcome=WebhookOutcome.UNKNOWN_ORDER, order_id=event.order_id)

        # 4. Terminal payments are final
        if payment.status.is_terminal:
            return await self._duplicate(payment, event)

        if event.pending and not event.success:
            await self._record(WebhookOutcome.PENDING, event, payment)
            return WebhookResult(
                outcome=WebhookOutcome.PENDING, payment_id=payment.id, order_id=event.order_id
            )

        # 5. Settle
        if event.success and not self._amount_matches(payment, event):
            return await self._settle_mismatch(payment, event)

        target = PaymentStatus.SUCCESS if event.success else PaymentStatus.FAILED
        transitioned = await self.db.transition_payment(
            payment.id,
            PaymentStatus.PENDING,
            target,
            metadata_patch=self._event_metadata(event),
        )
        if not transitioned:
            # A concurrent delivery of the same order settled it first
            return await self._duplicate(payment, event)

        if target == PaymentStatus.FAILED:
            await self._record(WebhookOutcome.PAYMENT_FAILED, event, payment)
            await self._notify_failed(payment, "Payment processing failed")
            return WebhookResult(
                outcome=WebhookOutcome.PAYMENT_FAILED,
                payment_id=payment.id,
                order_id=event.order_id,
            )

        # 6. Activate
        try:
            await self.activator.activate(payment.user_id, payment.plan_id)
        except Exception as e:
            return await self._activation_failed(payment, event, e)

        await self._record(WebhookOutcome.ACTIVATED, event, payment)

        # 7. Notify
        if self.notifications is not None:
            plan_name = payment.metadata.get("planName", payment.plan_id)
            await self.notifications.payment_succeeded(
                payment.user_id, plan_name, payment.amount, payment.id
            )

        return WebhookResult(
            outcome=WebhookOutcome.ACTIVATED, payment_id=payment.id, order_id=event.order_id
        )

    async def _duplicate(self, payment: Payment, event: GatewayEvent) -> WebhookResult:
        logger.info(
            "Payment already processed",
            extra={"payment_id": payment.id, "order_id": event.order_id},
        )
        await self._record(WebhookOutcome.DUPLICATE, event, payment)
        return WebhookResult(
            outcome=WebhookOutcome.DUPLICATE, payment_id=payment.id, order_id=event.order_id
        )

    async def _settle_mismatch(self, payment: Payment, event: GatewayEvent) -> WebhookResult:
        logger.error(
            "Webhook amount does not match payment",
            extra={
                "payment_id": payment.id,
                "expected_amount": payment.amount,
                "expected_currency": payment.currency,
                "amount_cents": event.amount_cents,
                "currency": event.currency,
            },
        )
        patch = self._event_metadata(event)
        patch.update(
            {
                "error": "Amount mismatch",
                "errorDetails": (
                    f"expected {payment.amount} {payment.currency}, "
                    f"received {event.amount_cents} {event.currency}"
                ),
                "failedAt": datetime.now(UTC).isoformat(),
            }
        )
        transitioned = await self.db.transition_payment(
            payment.id, PaymentStatus.PENDING, PaymentStatus.FAILED, metadata_patch=patch
        )
        if not transitioned:
            return await self._duplicate(payment, event)

        await self._record(WebhookOutcome.AMOUNT_MISMATCH, event, payment)
        return WebhookResult(
            outcome=WebhookOutcome.AMOUNT_MISMATCH, payment_id=payment.id, order_id=event.order_id
        )

    async def _activation_failed(
        self, payment: Payment, event: GatewayEvent, error: Exception
    ) -> WebhookResult:
        logger.error(
            "Subscription activation failed after successful payment",
            extra={
                "payment_id": payment.id,
                "user_id": payment.user_id,
                "plan_id": payment.plan_id,
                "error": str(error),
            },
            exc_info=(type(error), error, error.__traceback__),
        )

        # The 500 must reach the gateway even if the datastore is what failed
        forced = False
        try:
            forced = await self.db.transition_payment(
                payment.id,
                PaymentStatus.SUCCESS,
                PaymentStatus.FAILED,
                metadata_patch={
                    "error": "Subscription activation failed",
                    "errorDetails": str(error)[:500],
                    "failedAt": datetime.now(UTC).isoformat(),
                },
            )
            await self._record(
                WebhookOutcome.ACTIVATION_FAILED, event, payment, detail=str(error)
            )
        except Exception:
            logger.exception(
                "Could not record activation failure", extra={"payment_id": payment.id}
            )

        if not forced:
            logger.critical(
                "Payment could not be marked FAILED after activation failure",
                extra={"payment_id": payment.id},
            )

        return WebhookResult(
            outcome=WebhookOutcome.ACTIVATION_FAILED,
            payment_id=payment.id,
            order_id=event.order_id,
        )

    async def _notify_failed(self, payment: Payment, reason: str) -> None:
        if self.notifications is None:
            return
        plan_name = payment.metadata.get("planName", payment.plan_id)
        await self.notifications.payment_failed(payment.user_id, plan_name, reason, payment.id)

    @staticmethod
    def _amount_matches(payment: Payment, event: GatewayEvent) -> bool:
        return (
            event.amount_cents == payment.amount
            and event.currency.upper() == payment.currency.upper()
        )

    @staticmethod
    def _event_metadata(event: GatewayEvent) -> dict[str, Any]:
        return {
            "webhookData": {
                "transactionId": event.transaction_id,
                "orderId": event.order_id,
                "merchantOrderId": event.merchant_order_id,
                "amountCents": event.amount_cents,
                "currency": event.currency,
                "success": event.success,
                "pending": event.pending,
                "createdAt": event.created_at.isoformat() if event.created_at else None,
            },
            "rawEvent": event.raw,
            "processedAt": datetime.now(UTC).isoformat(),
        }

    async def _record(
        self,
        outcome: WebhookOutcome,
        event: GatewayEvent | None = None,
        payment: Payment | None = None,
        detail: str | None = None,
    ) -> None:
        await self.db.record_webhook_event(
            provider=PROVIDER_NAME,
            outcome=outcome.value,
            order_id=event.order_id if event else None,
            transaction_id=event.transaction_id if event else None,
            payment_id=payment.id if payment else None,
            detail=detail,
        )
