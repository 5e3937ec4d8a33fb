"""
Payment endpoints.

- POST /payment/initiate: open a gateway checkout for a plan upgrade
- POST /payment/webhook: gateway transaction callbacks (no user auth; HMAC)
- GET /payment/webhook: liveness for gateway dashboard setup
- GET /payment/history: the caller's payments, newest first
"""

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from sahab.auth.dependencies import get_current_user_id
from sahab.billing.payments import PaymentIntentFactory
from sahab.billing.webhooks import WebhookReconciler
from sahab.dependencies import get_payment_factory, get_webhook_reconciler
from sahab.rate_limits import limiter, payment_initiate_limit
from sahab.storage.database import BillingDatabase, get_billing_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["Payments"])


class PaymentInitiateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., alias="planId", min_length=1, max_length=64)


@router.post("/initiate")
@limiter.limit(payment_initiate_limit)
async def initiate_payment(
    request: Request,  # Required by slowapi
    body: PaymentInitiateRequest,
    user_id: str = Depends(get_current_user_id),
    factory: PaymentIntentFactory = Depends(get_payment_factory),
) -> dict[str, Any]:
    """
    Start a plan upgrade.

    Errors: 400 invalid body, 401 unauthenticated, 404 unknown plan,
    409 Free plan or plan already held, 503 gateway unavailable.
    """
    intent = await factory.initiate(user_id, body.plan_id)

    return {
        "success": True,
        "data": {
            "paymentId": intent.payment_id,
            "paymentUrl": intent.payment_url,
            "orderId": intent.order_id,
            "amount": {
                "egp": intent.amount_major,
                "piastres": intent.amount_minor,
            },
            "plan": {
                "id": intent.plan.id,
                "name": intent.plan.name,
                "price": intent.plan.price,
            },
        },
    }


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_hmac: str | None = Header(None, alias="X-HMAC"),
    hmac_header: str | None = Header(None, alias="hmac"),
    hmac_query: str | None = Query(None, alias="hmac"),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> JSONResponse:
    """
    Gateway transaction callback.

    The body is read raw: the signature covers the exact bytes sent.
    200 for everything except a bad signature (401) and a payment whose
    subscription could not be activated (500, so the gateway retries).
    """
    raw_body = await request.body()
    signature = x_hmac or hmac_header or hmac_query

    result = await reconciler.handle(raw_body, signature)
    return JSONResponse(status_code=result.http_status, content=result.body())


@router.get("/webhook")
async def payment_webhook_status() -> dict[str, Any]:
    return {
        "success": True,
        "message": "Paymob webhook endpoint is active",
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/history")
async def payment_history(
    limit: int = Query(default=50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
) -> dict[str, Any]:
    rows = await db.list_payments(user_id, limit=limit)

    return {
        "success": True,
        "payments": [
            {
                "id": row["payment"].id,
                "amount": row["payment"].amount,
                "currency": row["payment"].currency,
                "status": row["payment"].status.value,
                "planId": row["payment"].plan_id,
                "planName": row["plan_name"],
                "createdAt": row["payment"].created_at.isoformat(),
                "providerTxnId": row["payment"].provider_txn_id,
            }
            for row in rows
        ],
    }
