"""
Quota gate: pre-flight checks for chargeable operations.

The gate only reads. Callers that go ahead with an operation record it in
the usage ledger, whose storage increment carries its own conditional guard,
so two uploads racing past the gate cannot both overshoot the limit.

Policy for transformation units:
- uploads are never blocked by the transformation limit; a video that
  cannot get its renditions is accepted raw (AllowWithWarning, 0 granted)
- a standalone transformation request with no units left is rejected
"""

import logging
from enum import Enum

from pydantic import BaseModel

from sahab.billing.plan_catalog import PlanCatalog
from sahab.exceptions import (
    FileTooLargeError,
    QuotaExceededError,
    TransformationLimitError,
    ValidationError,
)
from sahab.models.plan import BYTES_PER_MB, PlanLimits
from sahab.models.usage import UsagePeriod
from sahab.observability.metrics import track_quota_decision
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """Operations that consume quota."""

    IMAGE_UPLOAD = "image"
    VIDEO_UPLOAD = "video"
    TRANSFORMATION = "transformation"


class DecisionOutcome(str, Enum):
    ALLOW = "allow"
    REJECT = "reject"
    ALLOW_WITH_WARNING = "allow_with_warning"


class Decision(BaseModel):
    """Result of a quota check. Sizes are reported in MB, the catalog's unit."""

    outcome: DecisionOutcome
    reason: str | None = None
    code: str | None = None
    transformations_granted: int = 0
    upgrade_suggestion: str | None = None
    plan_id: str
    storage_used_mb: float
    storage_limit_mb: int
    max_upload_size_mb: int
    transformations_used: int
    transformations_limit: int

    @property
    def allowed(self) -> bool:
        return self.outcome != DecisionOutcome.REJECT

    def raise_for_rejection(self) -> None:
        """Raise the matching SahabError if this decision is a rejection."""
        if self.allowed:
            return

        details = {
            "storage_used_mb": self.storage_used_mb,
            "storage_limit_mb": self.storage_limit_mb,
            "max_upload_size_mb": self.max_upload_size_mb,
            "transformations_used": self.transformations_used,
            "transformations_limit": self.transformations_limit,
        }
        if self.upgrade_suggestion:
            details["upgrade_suggestion"] = self.upgrade_suggestion
        error_types = {
            FileTooLargeError.code: FileTooLargeError,
            QuotaExceededError.code: QuotaExceededError,
            TransformationLimitError.code: TransformationLimitError,
        }
        error_type = error_types.get(self.code, ValidationError)
        raise error_type(self.reason or "Operation not allowed", details=details)


class QuotaGate:
    """Validates an operation against the user's plan limits before it happens."""

    def __init__(
        self,
        db: BillingDatabase,
        plan_catalog: PlanCatalog,
        video_transformation_units: int = 3,
    ):
        """
        Initialize quota gate.

        Args:
            db: Billing database (usage reads only)
            plan_catalog: Plan limit lookup
            video_transformation_units: Units one video upload needs for its renditions
        """
        self.db = db
        self.plan_catalog = plan_catalog
        self.video_transformation_units = video_transformation_units

    async def authorize(
        self,
        user_id: str,
        operation: OperationKind,
        size_bytes: int = 0,
        transformations: int | None = None,
    ) -> Decision:
        """
        Decide whether an operation may proceed.

        Args:
            user_id: Authenticated user
            operation: Kind of operation
            size_bytes: Bytes the operation adds to storage (0 for transformations)
            transformations: Units requested; defaults to the video rendition
                count for videos, 0 for images and 1 for a standalone
                transformation

        Returns:
            Decision: allow / reject(reason) / allow_with_warning(reason)
        """
        if size_bytes < 0:
            raise ValidationError("fileSize must be non-negative")
        if transformations is not None and transformations < 0:
            raise ValidationError("transformations must be non-negative")

        limits = await self.plan_catalog.limits_for_user(user_id)
        usage = await self.db.get_usage(user_id, UsagePeriod.current())
        storage_used = usage.storage_used if usage else 0
        transformations_used = usage.transformations_used if usage else 0

        requested_units = self._requested_units(operation, transformations)

        def decide(
            outcome: DecisionOutcome,
            reason: str | None = None,
            code: str | None = None,
            granted: int = 0,
            suggestion: str | None = None,
        ) -> Decision:
            return self._decision(
                limits,
                storage_used,
                transformations_used,
                outcome,
                reason,
                code,
                granted,
                suggestion,
            )

        if operation == OperationKind.TRANSFORMATION:
            if transformations_used + requested_units > limits.transformations_limit:
                suggestion = await self.plan_catalog.upgrade_suggestion(limits, "transformations")
                decision = decide(
                    DecisionOutcome.REJECT,
                    reason=(
                        f"Transformation limit reached ({transformations_used}/"
                        f"{limits.transformations_limit}). {suggestion}."
                    ),
                    code=TransformationLimitError.code,
                    suggestion=suggestion,
                )
            else:
                decision = decide(DecisionOutcome.ALLOW, granted=requested_units)

        elif size_bytes > limits.max_upload_size_bytes:
            suggestion = await self.plan_catalog.upgrade_suggestion(limits, "uploads")
            decision = decide(
                DecisionOutcome.REJECT,
                reason=(
                    f"File too large ({size_bytes / BYTES_PER_MB:.2f} MB). "
                    f"Maximum upload size on the {limits.plan_name} plan is "
                    f"{limits.max_upload_size_mb} MB. {suggestion}."
                ),
                code=FileTooLargeError.code,
                suggestion=suggestion,
            )

        elif storage_used + size_bytes > limits.storage_limit_bytes:
            suggestion = await self.plan_catalog.upgrade_suggestion(limits, "storage")
            decision = decide(
                DecisionOutcome.REJECT,
                reason=(
                    f"Storage limit exceeded ({storage_used / BYTES_PER_MB:.2f} of "
                    f"{limits.storage_limit_mb} MB used). {suggestion}."
                ),
                code=QuotaExceededError.code,
                suggestion=suggestion,
            )

        elif (
            requested_units > 0
            and transformations_used + requested_units > limits.transformations_limit
        ):
            decision = decide(
                DecisionOutcome.ALLOW_WITH_WARNING,
                reason=(
                    f"Transformation limit reached ({transformations_used}/"
                    f"{limits.transformations_limit}). The file will be stored "
                    "without processed versions."
                ),
            )

        else:
            decision = decide(DecisionOutcome.ALLOW, granted=requested_units)

        track_quota_decision(operation.value, decision.outcome.value, limits.plan_id)
        if decision.outcome != DecisionOutcome.ALLOW:
            logger.info(
                "Quota decision",
                extra={
                    "user_id": user_id,
                    "operation": operation.value,
                    "outcome": decision.outcome.value,
                    "size_bytes": size_bytes,
                    "plan_id": limits.plan_id,
                },
            )
        return decision

    def _requested_units(self, operation: OperationKind, transformations: int | None) -> int:
        if transformations is not None:
            return transformations
        if operation == OperationKind.VIDEO_UPLOAD:
            return self.video_transformation_units
        if operation == OperationKind.TRANSFORMATION:
            return 1
        return 0

    @staticmethod
    def _decision(
        limits: PlanLimits,
        storage_used: int,
        transformations_used: int,
        outcome: DecisionOutcome,
        reason: str | None,
        code: str | None,
        granted: int,
        suggestion: str | None = None,
    ) -> Decision:
        return Decision(
            outcome=outcome,
            reason=reason,
            code=code,
            transformations_granted=granted,
            upgrade_suggestion=suggestion,
            plan_id=limits.plan_id,
            storage_used_mb=round(storage_used / BYTES_PER_MB, 2),
            storage_limit_mb=limits.storage_limit_mb,
            max_upload_size_mb=limits.max_upload_size_mb,
            transformations_used=transformations_used,
            transformations_limit=limits.transformations_limit,
        )
