"""
Tests for the quota gate.

Covers:
- Storage boundary (landing exactly on the limit is allowed)
- Per-file size limit
- Transformation policy for videos and standalone transformations
- Plan resolution (Free fallback, expired subscriptions, paid plans)
- Upgrade suggestions on rejections
"""

from datetime import UTC, datetime, timedelta

import pytest

from sahab.billing.plan_catalog import PlanCatalog
from sahab.billing.quota_gate import DecisionOutcome, OperationKind, QuotaGate
from sahab.billing.usage_tracking import UsageLedger
from sahab.exceptions import (
    FileTooLargeError,
    PlanCatalogError,
    QuotaExceededError,
    TransformationLimitError,
    ValidationError,
)
from sahab.models.usage import UsagePeriod
from sahab.storage.database import BillingDatabase

MB = 1024 * 1024

# Free plan: 500 MB storage, 5 MB per file, 50 transformations


@pytest.fixture
async def gate(billing_db) -> QuotaGate:
    return QuotaGate(billing_db, PlanCatalog(billing_db), video_transformation_units=3)


@pytest.fixture
async def ledger(billing_db) -> UsageLedger:
    return UsageLedger(billing_db)


@pytest.mark.asyncio
async def test_image_upload_within_limits_is_allowed(gate):
    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=2 * MB)

    assert decision.outcome == DecisionOutcome.ALLOW
    assert decision.allowed
    assert decision.plan_id == "free"
    assert decision.transformations_granted == 0
    decision.raise_for_rejection()


@pytest.mark.asyncio
async def test_storage_boundary_one_megabyte_below_limit(gate, ledger):
    await ledger.record_upload("user_alice", 499 * MB)

    too_much = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=2 * MB)
    assert too_much.outcome == DecisionOutcome.REJECT
    assert too_much.code == QuotaExceededError.code
    assert "Storage limit exceeded" in too_much.reason
    with pytest.raises(QuotaExceededError):
        too_much.raise_for_rejection()

    just_fits = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=1 * MB)
    assert just_fits.outcome == DecisionOutcome.ALLOW

    record = await ledger.record_upload(
        "user_alice", 1 * MB, storage_limit_bytes=500 * MB
    )
    assert record.storage_used == 500 * MB


@pytest.mark.asyncio
async def test_file_larger_than_plan_maximum_is_rejected(gate):
    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=6 * MB)

    assert decision.outcome == DecisionOutcome.REJECT
    assert decision.code == FileTooLargeError.code
    assert "Maximum upload size on the Free plan is 5 MB" in decision.reason

    with pytest.raises(FileTooLargeError) as exc_info:
        decision.raise_for_rejection()
    assert exc_info.value.status_code == 413
    assert exc_info.value.details["max_upload_size_mb"] == 5


@pytest.mark.asyncio
async def test_video_with_two_units_left_is_stored_without_renditions(gate, ledger):
    await ledger.record_upload("user_alice", 1 * MB, transformations=48)

    decision = await gate.authorize("user_alice", OperationKind.VIDEO_UPLOAD, size_bytes=3 * MB)

    assert decision.outcome == DecisionOutcome.ALLOW_WITH_WARNING
    assert decision.allowed
    assert decision.transformations_granted == 0
    assert "without processed versions" in decision.reason
    decision.raise_for_rejection()


@pytest.mark.asyncio
async def test_video_with_enough_units_is_granted_renditions(gate, ledger):
    await ledger.record_upload("user_alice", 1 * MB, transformations=47)

    decision = await gate.authorize("user_alice", OperationKind.VIDEO_UPLOAD, size_bytes=3 * MB)

    assert decision.outcome == DecisionOutcome.ALLOW
    assert decision.transformations_granted == 3


@pytest.mark.asyncio
async def test_image_upload_ignores_exhausted_transformations(gate, ledger):
    await ledger.record_upload("user_alice", 1 * MB, transformations=50)

    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=1 * MB)

    assert decision.outcome == DecisionOutcome.ALLOW


@pytest.mark.asyncio
async def test_standalone_transformation_rejected_when_exhausted(gate, ledger):
    await ledger.record_upload("user_alice", 1 * MB, transformations=50)

    decision = await gate.authorize("user_alice", OperationKind.TRANSFORMATION)

    assert decision.outcome == DecisionOutcome.REJECT
    assert decision.code == TransformationLimitError.code
    with pytest.raises(TransformationLimitError):
        decision.raise_for_rejection()


@pytest.mark.asyncio
async def test_standalone_transformation_allowed_with_units_left(gate, ledger):
    await ledger.record_upload("user_alice", 1 * MB, transformations=49)

    decision = await gate.authorize("user_alice", OperationKind.TRANSFORMATION)

    assert decision.outcome == DecisionOutcome.ALLOW
    assert decision.transformations_granted == 1


@pytest.mark.asyncio
async def test_negative_inputs_are_validation_errors(gate):
    with pytest.raises(ValidationError):
        await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=-1)
    with pytest.raises(ValidationError):
        await gate.authorize("user_alice", OperationKind.TRANSFORMATION, transformations=-1)


@pytest.mark.asyncio
async def test_gate_never_writes(gate, billing_db):
    await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=1 * MB)

    assert await billing_db.get_usage("user_alice", UsagePeriod.current()) is None


@pytest.mark.asyncio
async def test_active_subscription_uses_paid_plan_limits(gate, billing_db):
    now = datetime.now(UTC)
    await billing_db.upsert_subscription("user_alice", "pro", now, now + timedelta(days=30))

    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=50 * MB)

    assert decision.outcome == DecisionOutcome.ALLOW
    assert decision.plan_id == "pro"
    assert decision.storage_limit_mb == 10_000


@pytest.mark.asyncio
async def test_expired_subscription_falls_back_to_free(gate, billing_db):
    start = datetime.now(UTC) - timedelta(days=40)
    await billing_db.upsert_subscription("user_alice", "pro", start, start + timedelta(days=30))

    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=50 * MB)

    assert decision.plan_id == "free"
    assert decision.code == FileTooLargeError.code


@pytest.mark.asyncio
async def test_missing_free_plan_is_fatal(tmp_path):
    db = BillingDatabase(db_path=str(tmp_path / "empty.db"))
    await db.initialize()
    gate = QuotaGate(db, PlanCatalog(db))

    with pytest.raises(PlanCatalogError):
        await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=1)

    db.close()


@pytest.mark.asyncio
async def test_free_storage_rejection_suggests_pro(gate, ledger):
    await ledger.record_upload("user_alice", 499 * MB)

    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=2 * MB)

    assert decision.upgrade_suggestion == "Upgrade to Pro for 10 GB storage and 100 MB uploads"
    assert decision.reason.endswith("Upgrade to Pro for 10 GB storage and 100 MB uploads.")
    with pytest.raises(QuotaExceededError) as exc_info:
        decision.raise_for_rejection()
    assert exc_info.value.details["upgrade_suggestion"] == decision.upgrade_suggestion


@pytest.mark.asyncio
async def test_pro_file_too_large_suggests_enterprise(gate, billing_db):
    now = datetime.now(UTC)
    await billing_db.upsert_subscription("user_alice", "pro", now, now + timedelta(days=30))

    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=101 * MB)

    assert decision.code == FileTooLargeError.code
    assert decision.upgrade_suggestion == (
        "Upgrade to Enterprise for 100 GB storage and 1 GB uploads"
    )


@pytest.mark.asyncio
async def test_free_transformation_rejection_suggests_pro(gate, ledger):
    await ledger.record_upload("user_alice", 1 * MB, transformations=50)

    decision = await gate.authorize("user_alice", OperationKind.TRANSFORMATION)

    assert decision.upgrade_suggestion == "Upgrade to Pro for 5,000 monthly transformations"
    assert "Upgrade to Pro for 5,000 monthly transformations" in decision.reason


@pytest.mark.asyncio
async def test_enterprise_rejection_points_to_support(gate, billing_db, ledger):
    now = datetime.now(UTC)
    await billing_db.upsert_subscription(
        "user_alice", "enterprise", now, now + timedelta(days=30)
    )
    await ledger.record_upload("user_alice", 1 * MB, transformations=50_000)

    decision = await gate.authorize("user_alice", OperationKind.TRANSFORMATION)

    assert decision.outcome == DecisionOutcome.REJECT
    assert decision.upgrade_suggestion == "Contact support for custom enterprise solutions"


@pytest.mark.asyncio
async def test_allowed_decision_has_no_suggestion(gate):
    decision = await gate.authorize("user_alice", OperationKind.IMAGE_UPLOAD, size_bytes=1 * MB)

    assert decision.upgrade_suggestion is None
