"""
Usage endpoints.

- POST /usage/update: meter an upload (after the quota gate) or a deletion
- POST /usage/check: quota gate as a service for the upload pipeline
- POST /usage/sync: rebuild this month's counters from media rows
- GET /usage/current: current period snapshot against plan limits
- GET /usage/analytics: monthly history, growth and current-month breakdown

Storage figures in responses are MB, the plan catalog's unit.
"""

import logging
import sqlite3
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from sahab.auth.dependencies import get_current_user_id
from sahab.billing.plan_catalog import PlanCatalog
from sahab.billing.quota_gate import Decision, DecisionOutcome, OperationKind, QuotaGate
from sahab.billing.usage_tracking import UsageLedger, UsageSummary
from sahab.config import get_settings
from sahab.dependencies import (
    get_notification_service,
    get_plan_catalog,
    get_quota_gate,
    get_usage_ledger,
)
from sahab.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransformationLimitError,
    ValidationError,
)
from sahab.models.media import Media, MediaType
from sahab.models.plan import BYTES_PER_MB, PlanLimits
from sahab.models.usage import UsageRecord, usage_percentage, usage_status
from sahab.notifications.service import NotificationService
from sahab.storage.database import BillingDatabase, get_billing_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["Usage"])


# Request models
class UsageUpdateRequest(BaseModel):
    """Upload or delete to meter. Uploads carry the file size in bytes."""

    model_config = ConfigDict(populate_by_name=True)

    action: Literal["upload", "delete"]
    media_id: str | None = Field(default=None, alias="mediaId", max_length=128)
    file_size: int | None = Field(default=None, alias="fileSize", ge=0)
    transformations: int | None = Field(default=None, ge=0)
    media_type: Literal["image", "video"] = Field(default="image", alias="mediaType")
    url: str = Field(default="", max_length=2048)


class UsageCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: OperationKind
    file_size: int = Field(default=0, alias="fileSize", ge=0)
    transformations: int | None = Field(default=None, ge=0)


def _decision_payload(decision: Decision) -> dict[str, Any]:
    return {
        "outcome": decision.outcome.value,
        "allowed": decision.allowed,
        "reason": decision.reason,
        "code": decision.code,
        "transformationsGranted": decision.transformations_granted,
        "upgradeSuggestion": decision.upgrade_suggestion,
    }


def _usage_payload(summary: UsageSummary) -> dict[str, Any]:
    return {
        "storageUsed": summary.storage_used_mb,
        "storageUsedBytes": summary.storage_used_bytes,
        "transformationsUsed": summary.transformations_used,
        "uploadsCount": summary.uploads_count,
        "storageRemaining": summary.storage_remaining_mb,
        "transformationsRemaining": summary.transformations_remaining,
    }


def _plan_payload(limits: PlanLimits) -> dict[str, Any]:
    return {
        "id": limits.plan_id,
        "name": limits.plan_name,
        "storageLimit": limits.storage_limit_mb,
        "transformationsLimit": limits.transformations_limit,
        "maxUploadSize": limits.max_upload_size_mb,
    }


async def _notify_crossings(
    notifications: NotificationService,
    user_id: str,
    before: UsageRecord,
    after: UsageRecord,
    limits: PlanLimits,
) -> None:
    """Usage-level notifications for storage and transformations (best-effort)."""
    await notifications.usage_crossed(
        user_id,
        "storage",
        usage_percentage(before.storage_used_mb, limits.storage_limit_mb),
        usage_percentage(after.storage_used_mb, limits.storage_limit_mb),
        current=after.storage_used_mb,
        limit=limits.storage_limit_mb,
        unit="MB",
    )
    if after.transformations_used != before.transformations_used:
        await notifications.usage_crossed(
            user_id,
            "transformations",
            usage_percentage(before.transformations_used, limits.transformations_limit),
            usage_percentage(after.transformations_used, limits.transformations_limit),
            current=after.transformations_used,
            limit=limits.transformations_limit,
        )


async def _meter_upload(
    ledger: UsageLedger,
    user_id: str,
    size_bytes: int,
    decision: Decision,
    limits: PlanLimits,
) -> tuple[UsageRecord, Decision]:
    """
    Guarded ledger increment for an upload the gate allowed.

    If concurrent requests used up the units granted at the gate, the file is
    still stored, without renditions, and the decision is downgraded to match.
    """
    granted = decision.transformations_granted
    try:
        record = await ledger.record_upload(
            user_id,
            size_bytes,
            transformations=granted,
            storage_limit_bytes=limits.storage_limit_bytes,
            transformations_limit=limits.transformations_limit if granted else None,
        )
    except TransformationLimitError:
        record = await ledger.record_upload(
            user_id, size_bytes, storage_limit_bytes=limits.storage_limit_bytes
        )
        decision = decision.model_copy(
            update={
                "outcome": DecisionOutcome.ALLOW_WITH_WARNING,
                "transformations_granted": 0,
                "reason": (
                    "Transformation limit reached. The file will be stored "
                    "without processed versions."
                ),
            }
        )
    return record, decision


@router.post("/update")
async def update_usage(
    body: UsageUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
    ledger: UsageLedger = Depends(get_usage_ledger),
    gate: QuotaGate = Depends(get_quota_gate),
    notifications: NotificationService = Depends(get_notification_service),
) -> dict[str, Any]:
    """
    Meter an upload or a deletion.

    Upload: QuotaGate first (413 on rejection), then the media row claims
    mediaId (409 if taken), then a guarded ledger increment. If the
    increment is rejected the media row is removed again. A video over its
    transformation allowance is still stored, with zero transformations
    granted.

    Delete: the media row must exist (404) and belong to the caller (403).
    The row is removed before storage is released, so two concurrent deletes
    of the same file release it once.
    """
    limits = await plan_catalog.limits_for_user(user_id)
    decision: Decision | None = None

    if body.action == "upload":
        if body.file_size is None:
            raise ValidationError("fileSize is required for upload")
        if body.media_id and await db.get_media(body.media_id) is not None:
            raise ConflictError(f"Media already recorded: {body.media_id}")

        kind = (
            OperationKind.VIDEO_UPLOAD if body.media_type == "video" else OperationKind.IMAGE_UPLOAD
        )
        decision = await gate.authorize(
            user_id, kind, size_bytes=body.file_size, transformations=body.transformations
        )
        decision.raise_for_rejection()
        before = await ledger.current_period(user_id)

        # The media row is the claim on the id; it must exist before storage is charged
        if body.media_id:
            try:
                await db.create_media(
                    Media(
                        id=body.media_id,
                        user_id=user_id,
                        type=MediaType.VIDEO if kind == OperationKind.VIDEO_UPLOAD else MediaType.IMAGE,
                        size=body.file_size,
                        url=body.url,
                    )
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Media already recorded: {body.media_id}") from e

        try:
            record, decision = await _meter_upload(
                ledger, user_id, body.file_size, decision, limits
            )
        except Exception:
            if body.media_id:
                await db.delete_media(body.media_id, user_id)
            raise

        await _notify_crossings(notifications, user_id, before, record, limits)

    else:
        if not body.media_id:
            raise ValidationError("mediaId is required for delete")

        media = await db.get_media(body.media_id)
        if media is None:
            raise NotFoundError("Media file not found")
        if media.user_id != user_id:
            raise ForbiddenError("Unauthorized to delete this file")

        if not await db.delete_media(media.id, user_id):
            # Deleted by a concurrent request; its storage was released there
            raise NotFoundError("Media file not found")
        record = await ledger.record_deletion(user_id, media.size)

    data: dict[str, Any] = {
        "action": body.action,
        "usage": _usage_payload(UsageLedger.summarize(record, limits)),
        "plan": _plan_payload(limits),
    }
    if decision is not None:
        data["decision"] = _decision_payload(decision)

    return {"success": True, "data": data}


@router.post("/check")
async def check_usage(
    body: UsageCheckRequest,
    user_id: str = Depends(get_current_user_id),
    gate: QuotaGate = Depends(get_quota_gate),
) -> dict[str, Any]:
    """Pre-flight decision only; nothing is metered."""
    decision = await gate.authorize(
        user_id, body.kind, size_bytes=body.file_size, transformations=body.transformations
    )
    return {
        "success": True,
        "data": {
            **_decision_payload(decision),
            "limits": {
                "plan": decision.plan_id,
                "storageUsed": decision.storage_used_mb,
                "storageLimit": decision.storage_limit_mb,
                "maxUploadSize": decision.max_upload_size_mb,
                "transformationsUsed": decision.transformations_used,
                "transformationsLimit": decision.transformations_limit,
            },
        },
    }


def _counters_payload(record: UsageRecord) -> dict[str, Any]:
    return {
        "storageUsed": record.storage_used_mb,
        "uploadsCount": record.uploads_count,
        "transformationsUsed": record.transformations_used,
    }


@router.post("/sync")
async def sync_usage(
    user_id: str = Depends(get_current_user_id),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict[str, Any]:
    """Rebuild this month's storage and upload counters from the caller's media rows."""
    before, after = await ledger.resync(user_id)
    limits = await plan_catalog.limits_for_user(user_id)

    return {
        "success": True,
        "data": {
            "message": "Usage synchronized successfully",
            "before": _counters_payload(before),
            "after": _counters_payload(after),
            "differences": {
                "storage": round(after.storage_used_mb - before.storage_used_mb, 2),
                "uploads": after.uploads_count - before.uploads_count,
            },
            "usage": _usage_payload(UsageLedger.summarize(after, limits)),
        },
    }


@router.get("/current")
async def current_usage(
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict[str, Any]:
    record = await ledger.current_period(user_id)
    plan = await plan_catalog.plan_for_user(user_id)
    summary = UsageLedger.summarize(record, PlanLimits.from_plan(plan))
    subscription = await db.get_subscription(user_id)
    is_active = subscription is not None and subscription.is_current()

    return {
        "success": True,
        "data": {
            "current": {
                "month": record.month,
                "year": record.year,
                "storage": {
                    "used": summary.storage_used_mb,
                    "limit": summary.storage_limit_mb,
                    "remaining": summary.storage_remaining_mb,
                    "percentage": summary.storage_percentage,
                    "status": usage_status(summary.storage_percentage),
                },
                "transformations": {
                    "used": summary.transformations_used,
                    "limit": summary.transformations_limit,
                    "remaining": summary.transformations_remaining,
                    "percentage": summary.transformations_percentage,
                    "status": usage_status(summary.transformations_percentage),
                },
                "uploads": {"count": summary.uploads_count},
            },
            "plan": {
                "id": plan.id,
                "name": plan.name,
                "price": plan.price_major,
                "limits": {
                    "storage": plan.storage_limit,
                    "transformations": plan.transformations_limit,
                    "maxUploadSize": plan.max_upload_size,
                    "teamMembers": plan.team_members,
                },
            },
            "subscription": {
                "status": subscription.status.value if is_active else "FREE",
                "startDate": subscription.start_date.isoformat() if is_active else None,
                "endDate": subscription.end_date.isoformat() if is_active else None,
                "isActive": is_active,
            },
        },
    }


def _growth(current: int | float, previous: int | float) -> int:
    """Month-over-month change in percent; 0 when there is no previous value."""
    if not previous:
        return 0
    return round((current - previous) / previous * 100)


@router.get("/analytics")
async def usage_analytics(
    months: int | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict[str, Any]:
    """
    Historical rollup.

    ``months`` is clamped to [1, analytics_max_months]; months without a
    usage row are reported as zeros.
    """
    quota = get_settings().quota
    requested = months if months is not None else quota.analytics_default_months
    months = max(1, min(requested, quota.analytics_max_months))

    history = await ledger.history(user_id, months)
    historical = [
        {
            "month": period.month,
            "year": period.year,
            "label": period.label,
            "storageUsed": record.storage_used_mb if record else 0,
            "transformationsUsed": record.transformations_used if record else 0,
            "uploadsCount": record.uploads_count if record else 0,
        }
        for period, record in history
    ]

    current = historical[-1]
    previous = historical[-2] if len(historical) > 1 else None
    growth = {
        "storage": _growth(current["storageUsed"], previous["storageUsed"] if previous else 0),
        "transformations": _growth(
            current["transformationsUsed"], previous["transformationsUsed"] if previous else 0
        ),
        "uploads": _growth(current["uploadsCount"], previous["uploadsCount"] if previous else 0),
    }

    start, end = history[-1][0].bounds()
    breakdown = await db.media_type_breakdown(user_id, start, end)
    total_files = sum(row["count"] for row in breakdown)
    file_types = [
        {
            "type": row["type"],
            "count": row["count"],
            "size": round(row["total_size"] / BYTES_PER_MB, 2),
            "percentage": round(row["count"] / total_files * 100) if total_files else 0,
        }
        for row in breakdown
    ]
    daily = await db.daily_uploads(user_id, start, end)
    daily_activity = [
        {
            "date": row["date"],
            "uploads": row["uploads"],
            "storage": round(row["total_size"] / BYTES_PER_MB, 2),
        }
        for row in daily
    ]

    plan = await plan_catalog.plan_for_user(user_id)
    total_storage = sum(entry["storageUsed"] for entry in historical)

    return {
        "success": True,
        "data": {
            "historical": historical,
            "growth": growth,
            "fileTypes": file_types,
            "dailyActivity": daily_activity,
            "summary": {
                "totalMonths": months,
                "totalStorageUsed": round(total_storage, 2),
                "totalTransformations": sum(e["transformationsUsed"] for e in historical),
                "totalUploads": sum(e["uploadsCount"] for e in historical),
                "averageMonthlyStorage": round(total_storage / months, 2),
                "planLimits": {
                    "storage": plan.storage_limit,
                    "transformations": plan.transformations_limit,
                    "planName": plan.name,
                },
            },
        },
    }
