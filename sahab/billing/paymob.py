"""
Paymob payment gateway client.

Checkout flow (order / payment key / iframe model):
1. POST /auth/tokens               api_key -> auth token (cached ~50 minutes)
2. POST /ecommerce/orders          amount + items -> order id
3. POST /acceptance/payment_keys   order id + billing data -> payment token
4. Redirect the user to the hosted iframe with ``payment_token``

The gateway then reports the transaction result to our webhook endpoint,
where ``verify_signature`` and ``parse_event`` turn the raw delivery into a
``GatewayEvent``.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from sahab.config import PaymobConfig
from sahab.exceptions import ProviderError
from sahab.resilience.circuit_breakers import paymob_breaker, provider_call, with_retry
from sahab.webhooks.signing import WebhookSigner

logger = logging.getLogger(__name__)

PROVIDER_NAME = "paymob"


class BillingData(BaseModel):
    """Customer details the gateway requires on every payment key."""

    email: str
    first_name: str = "NA"
    last_name: str = "NA"
    phone_number: str = "NA"
    city: str = "Cairo"
    state: str = "Cairo"
    country: str = "Egypt"

    def to_gateway(self) -> dict[str, str]:
        return {
            "apartment": "NA",
            "email": self.email,
            "floor": "NA",
            "first_name": self.first_name or "NA",
            "street": "NA",
            "building": "NA",
            "phone_number": self.phone_number,
            "shipping_method": "NA",
            "postal_code": "NA",
            "city": self.city,
            "country": self.country,
            "last_name": self.last_name or "NA",
            "state": self.state,
        }


class PaymentSession(BaseModel):
    """A checkout session opened at the gateway."""

    order_id: str
    payment_token: str
    payment_url: str
    amount_cents: int
    currency: str


class GatewayEvent(BaseModel):
    """Normalized transaction callback."""

    transaction_id: str
    order_id: str
    merchant_order_id: str | None = None
    amount_cents: int
    currency: str
    success: bool
    pending: bool = False
    integration_id: str | None = None
    created_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class EventParseError(ValueError):
    """Webhook body is not a transaction callback we understand."""


class PaymobClient:
    """
    Async client for the Paymob Accept API.

    All calls go through the Paymob circuit breaker and have a bounded
    timeout. The auth call is idempotent and retried with backoff; order and
    payment key creation are not retried (a retry could open a second order).
    """

    def __init__(
        self,
        config: PaymobConfig,
        http_client: httpx.AsyncClient | None = None,
        retry_min_wait: float = 0.5,
    ):
        """
        Initialize Paymob client.

        Args:
            config: Gateway credentials and endpoints
            http_client: Shared httpx client (created if not provided)
            retry_min_wait: Initial backoff for auth retries, in seconds
        """
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_seconds)
        )
        self._owns_client = http_client is None
        self._retry_min_wait = retry_min_wait

        self._auth_token: str | None = None
        self._token_expires_at = 0.0
        self._auth_lock = asyncio.Lock()

        self._signer = WebhookSigner(config.hmac_secret) if config.hmac_secret else None

    @property
    def is_enabled(self) -> bool:
        return self.config.is_configured

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def authenticate(self) -> str:
        """
        Get an auth token, reusing the cached one until it expires.

        Raises:
            ProviderError: Gateway unreachable or credentials rejected
        """
        if self._auth_token and time.monotonic() < self._token_expires_at:
            return self._auth_token

        async with self._auth_lock:
            # Another task may have refreshed while we waited
            if self._auth_token and time.monotonic() < self._token_expires_at:
                return self._auth_token

            authenticate_once = with_retry(
                max_attempts=self.config.auth_max_retries,
                min_wait=self._retry_min_wait,
                max_wait=max(self._retry_min_wait * 8, self._retry_min_wait),
                exceptions=(ProviderError,),
            )(self._request_auth_token)

            self._auth_token = await authenticate_once()
            self._token_expires_at = time.monotonic() + self.config.auth_token_ttl_seconds
            logger.info("Paymob auth token refreshed")
            return self._auth_token

    async def _request_auth_token(self) -> str:
        data = await self._post("auth", "/auth/tokens", {"api_key": self.config.api_key})
        token = data.get("token")
        if not token:
            raise ProviderError("Paymob auth response has no token", provider=PROVIDER_NAME)
        return token

    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        items: list[dict[str, Any]],
        merchant_order_id: str | None = None,
    ) -> str:
        """
        Create an order and return its gateway id (as a string).

        Raises:
            ProviderError: Gateway failure
        """
        auth_token = await self.authenticate()
        payload: dict[str, Any] = {
            "auth_token": auth_token,
            "delivery_needed": False,
            "amount_cents": amount_cents,
            "currency": currency,
            "items": items,
        }
        if merchant_order_id:
            payload["merchant_order_id"] = merchant_order_id

        data = await self._post("create_order", "/ecommerce/orders", payload, auth_token)
        order_id = data.get("id")
        if order_id is None:
            raise ProviderError("Paymob order response has no id", provider=PROVIDER_NAME)
        return str(order_id)

    async def create_payment_key(
        self,
        order_id: str,
        amount_cents: int,
        currency: str,
        billing: BillingData,
    ) -> str:
        """
        Create a payment key (checkout token) for an order.

        Raises:
            ProviderError: Gateway failure
        """
        auth_token = await self.authenticate()
        payload = {
            "auth_token": auth_token,
            "amount_cents": amount_cents,
            "currency": currency,
            "order_id": int(order_id) if order_id.isdigit() else order_id,
            "billing_data": billing.to_gateway(),
            "integration_id": (
                int(self.config.integration_id)
                if self.config.integration_id.isdigit()
                else self.config.integration_id
            ),
            "lock_order_when_paid": True,
        }

        data = await self._post(
            "payment_key", "/acceptance/payment_keys", payload, auth_token
        )
        token = data.get("token")
        if not token:
            raise ProviderError("Paymob payment key response has no token", provider=PROVIDER_NAME)
        return token

    def payment_url(self, payment_token: str) -> str:
        """Hosted iframe URL for a payment token."""
        base = self.config.iframe_base_url.rstrip("/")
        return f"{base}/{self.config.iframe_id}?payment_token={payment_token}"

    async def create_payment_session(
        self,
        amount_cents: int,
        plan_name: str,
        billing: BillingData,
        currency: str | None = None,
    ) -> PaymentSession:
        """
        Open a checkout session for one subscription period of a plan.

        Raises:
            ProviderError: Any gateway step failed (no session exists then)
        """
        currency = currency or self.config.currency
        if not self.is_enabled:
            raise ProviderError("Paymob credentials not configured", provider=PROVIDER_NAME)

        items = [
            {
                "name": f"{plan_name} Subscription - Sahab SaaS",
                "amount_cents": amount_cents,
                "description": f"Monthly subscription to {plan_name} plan",
                "quantity": 1,
            }
        ]

        order_id = await self.create_order(amount_cents, currency, items)
        payment_token = await self.create_payment_key(order_id, amount_cents, currency, billing)

        logger.info(
            "Paymob payment session created",
            extra={"order_id": order_id, "amount_cents": amount_cents, "plan_name": plan_name},
        )
        return PaymentSession(
            order_id=order_id,
            payment_token=payment_token,
            payment_url=self.payment_url(payment_token),
            amount_cents=amount_cents,
            currency=currency,
        )

    async def _post(
        self,
        operation: str,
        path: str,
        payload: dict[str, Any],
        auth_token: str | None = None,
    ) -> dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        with provider_call(paymob_breaker, PROVIDER_NAME, operation):
            response = await self._client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as e:
                raise ProviderError(
                    f"Paymob {operation} returned invalid JSON", provider=PROVIDER_NAME
                ) from e

        if not isinstance(data, dict):
            raise ProviderError(
                f"Paymob {operation} returned unexpected payload", provider=PROVIDER_NAME
            )
        return data

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @property
    def can_verify_signatures(self) -> bool:
        return self._signer is not None

    def verify_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """
        Verify a delivery's HMAC over the raw body.

        Returns False when no secret is configured, so a signed delivery is
        never accepted unverified.
        """
        if self._signer is None:
            logger.error("Webhook signature received but PAYMOB_HMAC_SECRET is not configured")
            return False
        return self._signer.verify_signature(raw_body, signature)

    @staticmethod
    def parse_event(payload: Any) -> GatewayEvent:
        """
        Normalize a transaction callback.

        Accepts the bare transaction object or the processed-callback
        envelope ``{"type": "TRANSACTION", "obj": {...}}``.

        Raises:
            EventParseError: Not a transaction, or required fields missing
        """
        if not isinstance(payload, dict):
            raise EventParseError("Webhook body is not a JSON object")

        if "obj" in payload:
            event_type = str(payload.get("type", "TRANSACTION")).upper()
            if event_type != "TRANSACTION":
                raise EventParseError(f"Unsupported webhook type: {event_type}")
            payload = payload["obj"]
            if not isinstance(payload, dict):
                raise EventParseError("Webhook 'obj' is not a JSON object")

        order = payload.get("order")
        order_id = order.get("id") if isinstance(order, dict) else order
        transaction_id = payload.get("id")

        if transaction_id is None or order_id is None:
            raise EventParseError("Webhook is missing transaction id or order id")

        try:
            amount_cents = int(payload.get("amount_cents", 0))
        except (TypeError, ValueError) as e:
            raise EventParseError("Webhook amount_cents is not a number") from e

        created_at = None
        if payload.get("created_at"):
            try:
                created_at = datetime.fromisoformat(str(payload["created_at"]))
            except ValueError:
                created_at = None

        merchant_order_id = order.get("merchant_order_id") if isinstance(order, dict) else None
        integration_id = payload.get("integration_id")

        return GatewayEvent(
            transaction_id=str(transaction_id),
            order_id=str(order_id),
            merchant_order_id=str(merchant_order_id) if merchant_order_id else None,
            amount_cents=amount_cents,
            currency=str(payload.get("currency") or "EGP"),
            success=_as_bool(payload.get("success")) and not _as_bool(payload.get("error_occured")),
            pending=_as_bool(payload.get("pending")),
            integration_id=str(integration_id) if integration_id is not None else None,
            created_at=created_at,
            raw=payload,
        )


def _as_bool(value: Any) -> bool:
    """Gateway booleans arrive as JSON booleans or, on redirect callbacks, as strings."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


# Global instance
_paymob_client: PaymobClient | None = None


def get_paymob_client(config: PaymobConfig) -> PaymobClient:
    """
    Get or create the Paymob client singleton.

    Args:
        config: Gateway configuration

    Returns:
        PaymobClient: Shared client instance
    """
    global _paymob_client
    if _paymob_client is None:
        _paymob_client = PaymobClient(config)
    return _paymob_client


async def close_paymob_client() -> None:
    """Close and drop the singleton (application shutdown)."""
    global _paymob_client
    if _paymob_client is not None:
        await _paymob_client.close()
        _paymob_client = None
