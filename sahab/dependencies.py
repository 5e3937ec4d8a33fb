"""
FastAPI dependency providers for the billing services.

Services are cheap wrappers around the shared database and HTTP clients,
so they are built per request. Tests replace ``get_billing_db``,
``get_gateway`` and ``get_identity`` through ``app.dependency_overrides``.
"""

from fastapi import Depends

from sahab.billing.paymob import PaymobClient, get_paymob_client
from sahab.billing.payments import PaymentIntentFactory
from sahab.billing.plan_catalog import PlanCatalog
from sahab.billing.quota_gate import QuotaGate
from sahab.billing.subscriptions import SubscriptionActivator
from sahab.billing.usage_tracking import UsageLedger
from sahab.billing.webhooks import WebhookReconciler
from sahab.config import get_settings
from sahab.identity.client import IdentityClient, get_identity_client
from sahab.notifications.service import NotificationService
from sahab.storage.database import BillingDatabase, get_billing_db


def get_gateway() -> PaymobClient:
    return get_paymob_client(get_settings().paymob)


def get_identity() -> IdentityClient:
    return get_identity_client(get_settings().identity)


def get_plan_catalog(db: BillingDatabase = Depends(get_billing_db)) -> PlanCatalog:
    return PlanCatalog(db)


def get_usage_ledger(db: BillingDatabase = Depends(get_billing_db)) -> UsageLedger:
    return UsageLedger(db)


def get_quota_gate(
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
) -> QuotaGate:
    return QuotaGate(
        db,
        plan_catalog,
        video_transformation_units=get_settings().quota.video_transformation_units,
    )


def get_notification_service(
    db: BillingDatabase = Depends(get_billing_db),
) -> NotificationService:
    quota = get_settings().quota
    return NotificationService(
        db,
        warning_threshold=quota.warning_threshold_percent,
        critical_threshold=quota.critical_threshold_percent,
    )


def get_subscription_activator(
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
    identity: IdentityClient = Depends(get_identity),
) -> SubscriptionActivator:
    return SubscriptionActivator(
        db,
        plan_catalog,
        identity_client=identity,
        period_months=get_settings().quota.subscription_period_months,
    )


def get_payment_factory(
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
    gateway: PaymobClient = Depends(get_gateway),
    identity: IdentityClient = Depends(get_identity),
) -> PaymentIntentFactory:
    return PaymentIntentFactory(db, plan_catalog, gateway, identity_client=identity)


def get_webhook_reconciler(
    db: BillingDatabase = Depends(get_billing_db),
    gateway: PaymobClient = Depends(get_gateway),
    activator: SubscriptionActivator = Depends(get_subscription_activator),
    notifications: NotificationService = Depends(get_notification_service),
) -> WebhookReconciler:
    return WebhookReconciler(
        db,
        gateway,
        activator,
        notifications=notifications,
        require_signature=get_settings().paymob.require_signature,
    )
