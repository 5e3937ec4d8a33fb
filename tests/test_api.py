"""
API tests for the Sahab billing service.

Exercises the HTTP surface end to end against a real SQLite database, with
the payment gateway and identity provider replaced by in-memory doubles.
"""

import asyncio
import sqlite3
from datetime import UTC, datetime, timedelta

from conftest import MB, encode_body, paymob_transaction

from sahab.billing.usage_tracking import UsageLedger
from sahab.config import get_settings, reset_settings
from sahab.exceptions import ProviderError
from sahab.models.media import Media, MediaType
from sahab.models.notification import Notification, NotificationType
from sahab.models.payment import PaymentStatus
from sahab.models.usage import UsagePeriod

# ============================================================================
# HEALTH AND SYSTEM
# ============================================================================


def test_liveness_check(client):
    response = client.get("/health/liveness")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "alive"
    assert data["uptime_seconds"] >= 0


def test_readiness_check_reports_database(client):
    response = client.get("/health/readiness")

    assert response.status_code == 200
    data = response.json()
    assert data["ready"] is True
    components = {c["name"]: c for c in data["components"]}
    assert components["billing_database"]["status"] == "healthy"
    assert "payment_gateway" in components


def test_responses_carry_request_id(client):
    response = client.get("/health/liveness", headers={"X-Request-ID": "req_fixed123"})

    assert response.headers["X-Request-ID"] == "req_fixed123"
    assert response.headers["X-Trace-ID"].startswith("trace_")


def test_oversized_body_is_rejected(client):
    response = client.post(
        "/payment/webhook",
        content=b"x" * (2 * 1024 * 1024),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 413
    assert response.json()["code"] == "PAYLOAD_TOO_LARGE"
    assert response.headers["X-Request-ID"].startswith("req_")


# ============================================================================
# USAGE
# ============================================================================


def test_upload_is_metered(client, auth_headers):
    response = client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "med_1", "fileSize": 2 * MB, "mediaType": "image"},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["action"] == "upload"
    assert data["usage"]["storageUsed"] == 2.0
    assert data["usage"]["storageUsedBytes"] == 2 * MB
    assert data["usage"]["uploadsCount"] == 1
    assert data["usage"]["storageRemaining"] == 498.0
    assert data["plan"]["id"] == "free"
    assert data["plan"]["storageLimit"] == 500
    assert data["decision"]["outcome"] == "allow"


def test_oversized_file_is_rejected_with_details(client, auth_headers, api_db):
    response = client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "med_big", "fileSize": 6 * MB},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 413
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "FILE_TOO_LARGE"
    assert body["details"]["max_upload_size_mb"] == 5
    assert body["details"]["upgrade_suggestion"].startswith("Upgrade to Pro")
    assert "request_id" in body
    assert asyncio.run(api_db.get_media("med_big")) is None


def test_storage_quota_rejection(client, auth_headers, api_db):
    asyncio.run(UsageLedger(api_db).record_upload("user_alice", 499 * MB))

    rejected = client.post(
        "/usage/update",
        json={"action": "upload", "fileSize": 2 * MB},
        headers=auth_headers("user_alice"),
    )
    accepted = client.post(
        "/usage/update",
        json={"action": "upload", "fileSize": 1 * MB},
        headers=auth_headers("user_alice"),
    )

    assert rejected.status_code == 413
    assert rejected.json()["code"] == "QUOTA_EXCEEDED"
    assert accepted.status_code == 200
    assert accepted.json()["data"]["usage"]["storageUsed"] == 500.0
    assert accepted.json()["data"]["usage"]["storageRemaining"] == 0


def test_upload_requires_file_size(client, auth_headers):
    response = client.post(
        "/usage/update", json={"action": "upload"}, headers=auth_headers("user_alice")
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_invalid_body_is_400(client, auth_headers):
    response = client.post(
        "/usage/update",
        json={"action": "rename", "fileSize": -3},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    fields = {error["field"] for error in body["details"]["errors"]}
    assert "body.action" in fields


def test_duplicate_media_id_is_conflict(client, auth_headers):
    payload = {"action": "upload", "mediaId": "med_dup", "fileSize": 1 * MB}

    first = client.post("/usage/update", json=payload, headers=auth_headers("user_alice"))
    second = client.post("/usage/update", json=payload, headers=auth_headers("user_alice"))

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["code"] == "CONFLICT"


def test_duplicate_media_id_racing_past_lookup_is_conflict(
    client, auth_headers, api_db, monkeypatch
):
    # Both requests see no media row, as two concurrent requests would
    async def not_found(media_id):
        return None

    monkeypatch.setattr(api_db, "get_media", not_found)
    payload = {"action": "upload", "mediaId": "med_race", "fileSize": 2 * MB}

    first = client.post("/usage/update", json=payload, headers=auth_headers("user_alice"))
    second = client.post("/usage/update", json=payload, headers=auth_headers("user_alice"))

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["code"] == "CONFLICT"

    usage = asyncio.run(api_db.get_usage("user_alice", UsagePeriod.current()))
    assert usage.storage_used == 2 * MB
    assert usage.uploads_count == 1


def test_rejected_increment_releases_media_id(client, auth_headers, api_db, monkeypatch):
    # The gate allowed the upload but the guarded increment lost a race
    async def guard_rejects(*args, **kwargs):
        return None

    monkeypatch.setattr(api_db, "increment_usage", guard_rejects)

    response = client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "med_lost", "fileSize": 1 * MB},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 413
    assert response.json()["code"] == "QUOTA_EXCEEDED"
    assert asyncio.run(api_db.get_media("med_lost")) is None


def test_video_losing_transformation_race_is_stored_raw(
    client, auth_headers, api_db, monkeypatch
):
    ledger = UsageLedger(api_db)
    asyncio.run(ledger.record_upload("user_alice", 1 * MB, transformations=47))

    create_media = api_db.create_media

    async def create_then_spend_units(media):
        created = await create_media(media)
        # A concurrent request spends units after the gate granted three
        await ledger.record_upload("user_alice", 0, transformations=2)
        return created

    monkeypatch.setattr(api_db, "create_media", create_then_spend_units)

    response = client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "vid_race", "fileSize": 4 * MB, "mediaType": "video"},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["decision"]["outcome"] == "allow_with_warning"
    assert data["decision"]["transformationsGranted"] == 0
    assert data["usage"]["transformationsUsed"] == 49
    assert data["usage"]["storageUsed"] == 5.0
    assert asyncio.run(api_db.get_media("vid_race")) is not None


def test_video_over_transformation_limit_is_stored_raw(client, auth_headers, api_db):
    asyncio.run(UsageLedger(api_db).record_upload("user_alice", 1 * MB, transformations=48))

    response = client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "vid_1", "fileSize": 4 * MB, "mediaType": "video"},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["decision"]["outcome"] == "allow_with_warning"
    assert data["decision"]["transformationsGranted"] == 0
    assert data["usage"]["transformationsUsed"] == 48
    assert data["usage"]["storageUsed"] == 5.0


def test_delete_releases_storage(client, auth_headers):
    headers = auth_headers("user_alice")
    client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "med_del", "fileSize": 3 * MB},
        headers=headers,
    )

    response = client.post(
        "/usage/update", json={"action": "delete", "mediaId": "med_del"}, headers=headers
    )

    assert response.status_code == 200
    usage = response.json()["data"]["usage"]
    assert usage["storageUsed"] == 0
    assert usage["uploadsCount"] == 1

    again = client.post(
        "/usage/update", json={"action": "delete", "mediaId": "med_del"}, headers=headers
    )
    assert again.status_code == 404


def test_delete_of_other_users_media_is_forbidden(client, auth_headers):
    client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "med_alice", "fileSize": 1 * MB},
        headers=auth_headers("user_alice"),
    )

    response = client.post(
        "/usage/update",
        json={"action": "delete", "mediaId": "med_alice"},
        headers=auth_headers("user_bob"),
    )

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_delete_requires_media_id(client, auth_headers):
    response = client.post(
        "/usage/update", json={"action": "delete"}, headers=auth_headers("user_alice")
    )

    assert response.status_code == 400


def test_usage_check_does_not_meter(client, auth_headers):
    headers = auth_headers("user_alice")

    response = client.post(
        "/usage/check", json={"kind": "image", "fileSize": 1 * MB}, headers=headers
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["allowed"] is True
    assert data["limits"]["plan"] == "free"
    assert data["limits"]["maxUploadSize"] == 5

    current = client.get("/usage/current", headers=headers).json()["data"]
    assert current["current"]["uploads"]["count"] == 0


def test_usage_sync_rebuilds_counters_from_media(client, auth_headers):
    headers = auth_headers("user_alice")
    client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "img_sync", "fileSize": 2 * MB},
        headers=headers,
    )
    client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "vid_sync", "fileSize": 3 * MB, "mediaType": "video"},
        headers=headers,
    )
    # Metered without a media row, so it cannot be accounted for
    client.post("/usage/update", json={"action": "upload", "fileSize": 4 * MB}, headers=headers)

    response = client.post("/usage/sync", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["before"] == {"storageUsed": 9.0, "uploadsCount": 3, "transformationsUsed": 3}
    assert data["after"] == {"storageUsed": 5.0, "uploadsCount": 2, "transformationsUsed": 3}
    assert data["differences"] == {"storage": -4.0, "uploads": -1}
    assert data["usage"]["storageRemaining"] == 495.0


def test_usage_sync_picks_up_unmetered_media(client, auth_headers, api_db):
    asyncio.run(
        api_db.create_media(
            Media(id="med_unmetered", user_id="user_alice", type=MediaType.IMAGE, size=3 * MB)
        )
    )
    asyncio.run(
        api_db.create_media(
            Media(id="med_other", user_id="user_bob", type=MediaType.IMAGE, size=1 * MB)
        )
    )

    response = client.post("/usage/sync", headers=auth_headers("user_alice"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["after"]["storageUsed"] == 3.0
    assert data["after"]["uploadsCount"] == 1
    assert data["differences"]["storage"] == 3.0

    usage = asyncio.run(api_db.get_usage("user_alice", UsagePeriod.current()))
    assert usage.storage_used == 3 * MB


def test_usage_sync_requires_auth(client):
    response = client.post("/usage/sync")

    assert response.status_code == 401


def test_current_usage_for_new_user(client, auth_headers):
    response = client.get("/usage/current", headers=auth_headers("user_bob"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["current"]["storage"]["used"] == 0
    assert data["current"]["storage"]["limit"] == 500
    assert data["current"]["storage"]["status"] == "good"
    assert data["current"]["transformations"]["limit"] == 50
    assert data["plan"]["name"] == "Free"
    assert data["plan"]["price"] == 0
    assert data["subscription"]["status"] == "FREE"
    assert data["subscription"]["isActive"] is False


def test_analytics_zero_fills_and_clamps_months(client, auth_headers):
    headers = auth_headers("user_alice")
    client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "vid_a", "fileSize": 2 * MB, "mediaType": "video"},
        headers=headers,
    )
    client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "img_a", "fileSize": 1 * MB},
        headers=headers,
    )

    data = client.get("/usage/analytics?months=3", headers=headers).json()["data"]

    assert len(data["historical"]) == 3
    assert data["historical"][0]["storageUsed"] == 0
    assert data["historical"][-1]["storageUsed"] == 3.0
    assert data["historical"][-1]["uploadsCount"] == 2
    assert data["growth"]["storage"] == 0
    assert {entry["type"] for entry in data["fileTypes"]} == {"IMAGE", "VIDEO"}
    assert sum(day["uploads"] for day in data["dailyActivity"]) == 2
    assert data["summary"]["totalUploads"] == 2
    assert data["summary"]["planLimits"]["planName"] == "Free"

    max_months = get_settings().quota.analytics_max_months
    assert len(client.get("/usage/analytics?months=500", headers=headers).json()["data"]["historical"]) == max_months
    assert len(client.get("/usage/analytics?months=0", headers=headers).json()["data"]["historical"]) == 1
    default = client.get("/usage/analytics", headers=headers).json()["data"]
    assert default["summary"]["totalMonths"] == get_settings().quota.analytics_default_months


# ============================================================================
# PAYMENTS
# ============================================================================


def test_initiate_payment(client, auth_headers, gateway):
    response = client.post(
        "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice")
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["paymentId"].startswith("pay_")
    assert data["orderId"] == "880001"
    assert data["paymentUrl"].endswith("payment_token=ptok_880001")
    assert data["amount"] == {"egp": 199.0, "piastres": 19900}
    assert data["plan"]["name"] == "Pro"
    assert len(gateway.sessions) == 1


def test_initiate_free_plan_is_conflict(client, auth_headers, gateway):
    response = client.post(
        "/payment/initiate", json={"planId": "free"}, headers=auth_headers("user_alice")
    )

    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"
    assert gateway.sessions == []


def test_initiate_unknown_plan_is_not_found(client, auth_headers):
    response = client.post(
        "/payment/initiate", json={"planId": "platinum"}, headers=auth_headers("user_alice")
    )

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_initiate_requires_plan_id(client, auth_headers):
    response = client.post("/payment/initiate", json={}, headers=auth_headers("user_alice"))

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_initiate_gateway_outage_is_503(client, auth_headers, gateway, api_db):
    gateway.fail_with = ProviderError("paymob create_order failed with HTTP 502", provider="paymob")

    response = client.post(
        "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice")
    )

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "SERVICE_UNAVAILABLE"
    assert "HTTP 502" not in body["error"]
    assert asyncio.run(api_db.list_payments("user_alice")) == []


def test_initiate_is_rate_limited_per_user(client, auth_headers, monkeypatch):
    monkeypatch.setattr(get_settings().rate_limit, "payment_initiate", "2/minute")

    statuses = [
        client.post(
            "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice")
        ).status_code
        for _ in range(3)
    ]
    other_user = client.post(
        "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_bob")
    )

    assert statuses == [200, 200, 429]
    assert other_user.status_code == 200


def test_full_upgrade_flow(client, auth_headers, gateway, identity, api_db):
    headers = auth_headers("user_alice")
    initiated = client.post("/payment/initiate", json={"planId": "pro"}, headers=headers)
    order_id = initiated.json()["data"]["orderId"]

    body = encode_body(paymob_transaction(order_id))
    webhook = client.post(
        "/payment/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-HMAC": gateway.sign(body)},
    )

    assert webhook.status_code == 200
    assert webhook.json() == {"success": True, "message": "Payment success processed successfully"}

    status = client.get("/subscription/status", headers=headers).json()["subscription"]
    assert status["status"] == "ACTIVE"
    assert status["plan"]["id"] == "pro"
    assert status["plan"]["priceEGP"] == 199.0
    assert status["usage"]["storageRemaining"] == 10_000

    history = client.get("/payment/history", headers=headers).json()
    assert history["success"] is True
    assert [p["status"] for p in history["payments"]] == ["SUCCESS"]
    assert history["payments"][0]["planName"] == "Pro"
    assert history["payments"][0]["providerTxnId"] == order_id

    assert identity.metadata["user_alice"]["subscriptionPlan"] == "Pro"

    # Plan now held: a second purchase of it is a conflict
    again = client.post("/payment/initiate", json={"planId": "pro"}, headers=headers)
    assert again.status_code == 409

    # Pro limits apply to uploads
    upload = client.post(
        "/usage/update",
        json={"action": "upload", "fileSize": 50 * MB},
        headers=headers,
    )
    assert upload.status_code == 200
    assert upload.json()["data"]["plan"]["id"] == "pro"


def test_webhook_signature_from_query_parameter(client, auth_headers, gateway, api_db):
    initiated = client.post(
        "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice")
    )
    order_id = initiated.json()["data"]["orderId"]
    body = encode_body(paymob_transaction(order_id, success=False))

    response = client.post(
        f"/payment/webhook?hmac={gateway.sign(body)}",
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    payment = asyncio.run(api_db.get_payment_by_provider_txn("paymob", order_id))
    assert payment.status == PaymentStatus.FAILED


def test_webhook_bad_signature_is_401(client, auth_headers, api_db):
    initiated = client.post(
        "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice")
    )
    order_id = initiated.json()["data"]["orderId"]

    response = client.post(
        "/payment/webhook",
        content=encode_body(paymob_transaction(order_id)),
        headers={"Content-Type": "application/json", "X-HMAC": "0" * 128},
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Invalid signature"}
    payment = asyncio.run(api_db.get_payment_by_provider_txn("paymob", order_id))
    assert payment.status == PaymentStatus.PENDING


def test_webhook_unparsable_body_is_acknowledged(client, gateway):
    body = b"definitely not json"

    response = client.post(
        "/payment/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-HMAC": gateway.sign(body)},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_webhook_datastore_failure_is_acknowledged(
    client, auth_headers, gateway, api_db, monkeypatch
):
    initiated = client.post(
        "/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice")
    )
    order_id = initiated.json()["data"]["orderId"]
    body = encode_body(paymob_transaction(order_id))

    async def locked(provider, txn_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(api_db, "get_payment_by_provider_txn", locked)

    response = client.post(
        "/payment/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-HMAC": gateway.sign(body)},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_webhook_endpoint_status(client):
    response = client.get("/payment/webhook")

    assert response.status_code == 200
    assert response.json()["message"] == "Paymob webhook endpoint is active"


def test_payment_history_is_per_user(client, auth_headers):
    client.post("/payment/initiate", json={"planId": "pro"}, headers=auth_headers("user_alice"))

    alice = client.get("/payment/history", headers=auth_headers("user_alice")).json()
    bob = client.get("/payment/history", headers=auth_headers("user_bob")).json()

    assert [p["status"] for p in alice["payments"]] == ["PENDING"]
    assert bob["payments"] == []


def test_subscription_status_for_free_user(client, auth_headers):
    response = client.get("/subscription/status", headers=auth_headers("user_bob"))

    assert response.status_code == 200
    subscription = response.json()["subscription"]
    assert subscription["status"] == "FREE"
    assert subscription["plan"]["name"] == "Free"
    assert subscription["startDate"] is None
    assert subscription["usage"]["storageRemaining"] == 500


# ============================================================================
# NOTIFICATIONS
# ============================================================================


def _seed_notifications(db, user_id: str, count: int, read: bool = False) -> list[str]:
    """Create ``count`` notifications, one minute apart, oldest first."""
    start = datetime.now(UTC) - timedelta(hours=1)
    ids = []
    for index in range(count):
        notification = Notification(
            id=f"ntf_{user_id}_{index}_{int(read)}",
            user_id=user_id,
            type=NotificationType.USAGE_WARNING,
            title="Storage Usage Warning",
            message=f"Notice {index}",
            read=read,
            created_at=start + timedelta(minutes=index),
        )
        asyncio.run(db.create_notification(notification))
        ids.append(notification.id)
    return ids


def test_list_notifications_newest_first_with_unread_count(client, auth_headers, api_db):
    unread = _seed_notifications(api_db, "user_alice", 3)
    _seed_notifications(api_db, "user_alice", 1, read=True)
    _seed_notifications(api_db, "user_bob", 2)

    response = client.get("/notifications", headers=auth_headers("user_alice"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["unreadCount"] == 3
    assert len(data["notifications"]) == 4
    assert data["notifications"][0]["id"] == unread[2]
    assert {n["id"] for n in data["notifications"]}.isdisjoint(
        {"ntf_user_bob_0_0", "ntf_user_bob_1_0"}
    )


def test_list_notifications_unread_only_and_limit(client, auth_headers, api_db):
    unread = _seed_notifications(api_db, "user_alice", 3)
    _seed_notifications(api_db, "user_alice", 2, read=True)
    headers = auth_headers("user_alice")

    unread_only = client.get("/notifications?unreadOnly=true", headers=headers).json()["data"]
    limited = client.get("/notifications?limit=2", headers=headers).json()["data"]

    assert [n["id"] for n in unread_only["notifications"]] == list(reversed(unread))
    assert all(n["isRead"] is False for n in unread_only["notifications"])
    assert len(limited["notifications"]) == 2
    assert limited["unreadCount"] == 3


def test_mark_notification_read(client, auth_headers, api_db):
    ids = _seed_notifications(api_db, "user_alice", 2)
    headers = auth_headers("user_alice")

    response = client.patch(f"/notifications/{ids[0]}", json={"read": True}, headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["isRead"] is True
    listing = client.get("/notifications", headers=headers).json()["data"]
    assert listing["unreadCount"] == 1


def test_other_users_notification_is_not_found(client, auth_headers, api_db):
    ids = _seed_notifications(api_db, "user_alice", 1)

    patched = client.patch(
        f"/notifications/{ids[0]}", json={"read": True}, headers=auth_headers("user_bob")
    )
    deleted = client.delete(f"/notifications/{ids[0]}", headers=auth_headers("user_bob"))

    assert patched.status_code == 404
    assert patched.json()["code"] == "NOT_FOUND"
    assert deleted.status_code == 404

    listing = client.get("/notifications", headers=auth_headers("user_alice")).json()["data"]
    assert listing["unreadCount"] == 1
    assert len(listing["notifications"]) == 1


def test_delete_notification(client, auth_headers, api_db):
    ids = _seed_notifications(api_db, "user_alice", 2)
    headers = auth_headers("user_alice")

    response = client.delete(f"/notifications/{ids[1]}", headers=headers)
    again = client.delete(f"/notifications/{ids[1]}", headers=headers)

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert again.status_code == 404
    remaining = client.get("/notifications", headers=headers).json()["data"]["notifications"]
    assert [n["id"] for n in remaining] == [ids[0]]


def test_mark_all_notifications_read_is_per_user(client, auth_headers, api_db):
    _seed_notifications(api_db, "user_alice", 3)
    _seed_notifications(api_db, "user_bob", 2)

    response = client.post("/notifications/mark-all-read", headers=auth_headers("user_alice"))

    assert response.status_code == 200
    assert response.json()["data"]["updated"] == 3

    alice = client.get("/notifications", headers=auth_headers("user_alice")).json()["data"]
    bob = client.get("/notifications", headers=auth_headers("user_bob")).json()["data"]
    assert alice["unreadCount"] == 0
    assert bob["unreadCount"] == 2


def test_notifications_require_auth(client):
    assert client.get("/notifications").status_code == 401
    assert client.post("/notifications/mark-all-read").status_code == 401


# ============================================================================
# SETTINGS
# ============================================================================


def test_video_units_follow_environment(client, auth_headers, monkeypatch):
    monkeypatch.setenv("QUOTA_VIDEO_TRANSFORMATION_UNITS", "5")
    reset_settings()

    response = client.post(
        "/usage/update",
        json={"action": "upload", "mediaId": "vid_env", "fileSize": 1 * MB, "mediaType": "video"},
        headers=auth_headers("user_alice"),
    )

    assert response.status_code == 200
    assert response.json()["data"]["decision"]["transformationsGranted"] == 5
    assert response.json()["data"]["usage"]["transformationsUsed"] == 5
