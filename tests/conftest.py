"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Settings reloaded from the environment for each test
- A migrated, plan-seeded billing database per test
- In-memory payment gateway and identity provider doubles
- Signed session tokens for authenticated API calls
- FastAPI test client wired to all of the above
"""

import asyncio
import json
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from sahab.auth.dependencies import TokenVerifier, get_token_verifier
from sahab.billing.paymob import BillingData, PaymentSession, PaymobClient
from sahab.billing.plan_catalog import PlanCatalog
from sahab.billing.subscriptions import SubscriptionActivator
from sahab.billing.webhooks import WebhookReconciler
from sahab.config import IdentityConfig, reset_settings
from sahab.dependencies import get_gateway, get_identity
from sahab.exceptions import ProviderError
from sahab.identity.client import IdentityUser
from sahab.main import app
from sahab.models.plan import DEFAULT_PLANS
from sahab.notifications.service import NotificationService
from sahab.rate_limits import limiter
from sahab.resilience import reset_all_breakers
from sahab.storage.database import BillingDatabase, set_billing_db
from sahab.webhooks.signing import WebhookSigner

MB = 1024 * 1024

TEST_HMAC_SECRET = "paymob-test-hmac-secret"
TEST_JWT_SECRET = "identity-test-signing-key"


class FakeGateway:
    """
    Payment gateway double.

    Opens sessions with sequential order ids and records every call.
    Signature checks and event parsing are the real ones.
    """

    is_enabled = True
    can_verify_signatures = True

    def __init__(self, hmac_secret: str = TEST_HMAC_SECRET):
        self.signer = WebhookSigner(hmac_secret)
        self.sessions: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self._next_order = 880000

    async def create_payment_session(
        self,
        amount_cents: int,
        plan_name: str,
        billing: BillingData,
        currency: str | None = None,
    ) -> PaymentSession:
        self.sessions.append(
            {"amount_cents": amount_cents, "plan_name": plan_name, "email": billing.email}
        )
        if self.fail_with is not None:
            raise self.fail_with

        self._next_order += 1
        order_id = str(self._next_order)
        return PaymentSession(
            order_id=order_id,
            payment_token=f"ptok_{order_id}",
            payment_url=f"https://accept.test/iframes/1?payment_token=ptok_{order_id}",
            amount_cents=amount_cents,
            currency=currency or "EGP",
        )

    def verify_signature(self, raw_body: bytes, signature: str | None) -> bool:
        return self.signer.verify_signature(raw_body, signature)

    parse_event = staticmethod(PaymobClient.parse_event)

    def sign(self, raw_body: bytes) -> str:
        return self.signer.sign_payload(raw_body)


class FakeIdentityClient:
    """Identity provider double: user profiles and public metadata in memory."""

    def __init__(self):
        self.users: dict[str, IdentityUser] = {}
        self.metadata: dict[str, dict[str, Any]] = {}
        self.lookups: list[str] = []
        self.fail_updates = False

    def add_user(self, user_id: str, email: str | None = "user@example.com") -> None:
        self.users[user_id] = IdentityUser(
            id=user_id, email=email, first_name="Test", last_name="User"
        )

    async def get_user(self, user_id: str) -> IdentityUser:
        self.lookups.append(user_id)
        if user_id not in self.users:
            raise ProviderError(f"identity get_user failed for {user_id}", provider="identity")
        return self.users[user_id]

    async def update_user_metadata(self, user_id: str, public_metadata: dict[str, Any]) -> None:
        if self.fail_updates:
            raise ProviderError("identity update_metadata failed", provider="identity")
        self.metadata.setdefault(user_id, {}).update(public_metadata)


class FailingActivator:
    """Subscription activator whose datastore write always fails."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    async def activate(self, user_id: str, plan_id: str):
        self.calls.append((user_id, plan_id))
        raise RuntimeError("subscriptions table is locked")


def paymob_transaction(
    order_id: str,
    amount_cents: int = 19900,
    success: bool = True,
    pending: bool = False,
    transaction_id: int = 5550001,
    currency: str = "EGP",
) -> dict[str, Any]:
    """A processed-callback body as the gateway sends it."""
    return {
        "type": "TRANSACTION",
        "obj": {
            "id": transaction_id,
            "pending": pending,
            "amount_cents": amount_cents,
            "success": success,
            "is_refunded": False,
            "integration_id": 4455,
            "created_at": "2026-10-17T09:15:02.123456",
            "currency": currency,
            "error_occured": False,
            "order": {"id": int(order_id), "merchant_order_id": None},
            "source_data": {"type": "card", "pan": "2346", "sub_type": "MasterCard"},
        },
    }


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


async def _prepare_database(db: BillingDatabase) -> None:
    await db.initialize()
    await db.seed_plans(DEFAULT_PLANS)


# ============================================================================
# SETTINGS
# ============================================================================


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are re-read from the environment for every test, so mutations do not leak."""
    reset_settings()
    yield
    reset_settings()


# ============================================================================
# DATABASE
# ============================================================================


@pytest.fixture
async def billing_db(tmp_path):
    """Migrated and seeded database for async unit tests."""
    db = BillingDatabase(db_path=str(tmp_path / "sahab.db"))
    await _prepare_database(db)
    yield db
    db.close()


@pytest.fixture
def api_db(tmp_path):
    """Migrated and seeded database installed as the application's database."""
    db = BillingDatabase(db_path=str(tmp_path / "sahab-api.db"))
    asyncio.run(_prepare_database(db))
    set_billing_db(db)
    yield db
    set_billing_db(None)
    db.close()


# ============================================================================
# COLLABORATORS
# ============================================================================


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def identity() -> FakeIdentityClient:
    client = FakeIdentityClient()
    client.add_user("user_alice", "alice@example.com")
    client.add_user("user_bob", "bob@example.com")
    return client


@pytest.fixture
async def plan_catalog(billing_db) -> PlanCatalog:
    return PlanCatalog(billing_db)


@pytest.fixture
async def activator(billing_db, plan_catalog, identity) -> SubscriptionActivator:
    return SubscriptionActivator(billing_db, plan_catalog, identity_client=identity)


@pytest.fixture
async def notifications(billing_db) -> NotificationService:
    return NotificationService(billing_db)


@pytest.fixture
async def reconciler(billing_db, gateway, activator, notifications) -> WebhookReconciler:
    return WebhookReconciler(billing_db, gateway, activator, notifications=notifications)


# ============================================================================
# AUTH
# ============================================================================


@pytest.fixture
def token_verifier() -> TokenVerifier:
    return TokenVerifier(IdentityConfig(jwt_key=TEST_JWT_SECRET, jwt_algorithms="HS256"))


def make_session_token(user_id: str, expires_in: int = 3600, secret: str = TEST_JWT_SECRET) -> str:
    now = int(time.time())
    return jwt.encode(
        {"sub": user_id, "iat": now, "exp": now + expires_in},
        secret,
        algorithm="HS256",
    )


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a user id."""

    def build(user_id: str = "user_alice") -> dict[str, str]:
        return {"Authorization": f"Bearer {make_session_token(user_id)}"}

    return build


# ============================================================================
# API CLIENT
# ============================================================================


@pytest.fixture
def client(api_db, gateway, identity, token_verifier):
    """Test client with in-memory collaborators and a fresh rate limiter."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_identity] = lambda: identity
    app.dependency_overrides[get_token_verifier] = lambda: token_verifier
    limiter.reset()
    reset_all_breakers()

    yield TestClient(app)

    app.dependency_overrides.clear()
