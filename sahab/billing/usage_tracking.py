"""
Usage ledger: per-user, per-month storage and transformation counters.

Storage is counted in bytes. Plan limits are in MB and are converted with
``PlanLimits.storage_limit_bytes`` before any comparison, so a single unit
flows through the ledger.

Every mutation is a single atomic statement in the database layer; the
ledger never reads a counter, changes it in Python and writes it back.
"""

import logging
from datetime import datetime

from pydantic import BaseModel

from sahab.exceptions import QuotaExceededError, TransformationLimitError, ValidationError
from sahab.models.plan import BYTES_PER_MB, PlanLimits
from sahab.models.usage import UsagePeriod, UsageRecord, usage_percentage, usage_remaining
from sahab.observability.metrics import track_ledger_mutation
from sahab.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class UsageSummary(BaseModel):
    """Derived view of one period's usage against plan limits."""

    period: str
    storage_used_bytes: int
    storage_used_mb: float
    storage_limit_mb: int
    storage_remaining_mb: float
    storage_percentage: float
    transformations_used: int
    transformations_limit: int
    transformations_remaining: int
    transformations_percentage: float
    uploads_count: int


class UsageLedger:
    """
    Track and meter per-period usage.

    Responsibilities:
    - Lazily create the current period's row
    - Record uploads and deletions atomically
    - Derive remaining / percentage views against plan limits
    """

    def __init__(self, db: BillingDatabase):
        """
        Initialize usage ledger.

        Args:
            db: Billing database for counter updates
        """
        self.db = db

    async def current_period(
        self, user_id: str, now: datetime | None = None
    ) -> UsageRecord:
        """
        Fetch-or-create the current (month, year) row. Never fails for a missing row.

        Concurrent first calls race on ``INSERT OR IGNORE``; exactly one row
        survives thanks to the (user_id, month, year) unique key.
        """
        period = UsagePeriod.current(now)
        await self.db.ensure_usage_row(user_id, period)

        record = await self.db.get_usage(user_id, period)
        if record is None:
            # Row was just ensured; only reachable if the table is being dropped
            raise RuntimeError(f"Usage row vanished for period {period.label}")
        return record

    async def record_upload(
        self,
        user_id: str,
        size_bytes: int,
        transformations: int = 0,
        storage_limit_bytes: int | None = None,
        transformations_limit: int | None = None,
        now: datetime | None = None,
    ) -> UsageRecord:
        """
        Add an upload to the current period (atomic).

        Args:
            user_id: Owner of the upload
            size_bytes: File size in bytes
            transformations: Transformation units consumed by the upload
            storage_limit_bytes: If given, the increment is applied only while
                the new total stays within it (guards against a concurrent
                upload slipping past the quota gate)
            transformations_limit: Same guard for transformations_used

        Returns:
            UsageRecord: Counters after the increment

        Raises:
            ValidationError: Negative size or transformations
            QuotaExceededError: The storage guard rejected the increment
            TransformationLimitError: The transformations guard rejected it
        """
        if size_bytes < 0 or transformations < 0:
            raise ValidationError("size and transformations must be non-negative")

        period = UsagePeriod.current(now)
        await self.db.ensure_usage_row(user_id, period)

        record = await self.db.increment_usage(
            user_id,
            period,
            size_bytes=size_bytes,
            transformations=transformations,
            storage_limit_bytes=storage_limit_bytes,
            transformations_limit=transformations_limit,
        )

        if record is None:
            track_ledger_mutation("upload", applied=False)
            current = await self.db.get_usage(user_id, period)
            storage_fits = (
                storage_limit_bytes is None
                or current is None
                or current.storage_used + size_bytes <= storage_limit_bytes
            )
            logger.warning(
                "Usage guard rejected upload",
                extra={
                    "user_id": user_id,
                    "size_bytes": size_bytes,
                    "transformations": transformations,
                    "storage_limit_bytes": storage_limit_bytes,
                    "transformations_limit": transformations_limit,
                },
            )
            if storage_fits and transformations_limit is not None:
                raise TransformationLimitError(
                    "Transformation limit exceeded",
                    details={
                        "requested": transformations,
                        "limit": transformations_limit,
                    },
                )
            raise QuotaExceededError(
                "Storage limit exceeded",
                details={
                    "requested_mb": round(size_bytes / BYTES_PER_MB, 2),
                    "limit_mb": (storage_limit_bytes or 0) // BYTES_PER_MB,
                },
            )

        track_ledger_mutation("upload", applied=True, size_bytes=size_bytes)
        logger.info(
            "Upload recorded",
            extra={
                "user_id": user_id,
                "size_bytes": size_bytes,
                "transformations": transformations,
                "storage_used": record.storage_used,
                "period": period.label,
            },
        )
        return record

    async def record_deletion(
        self, user_id: str, size_bytes: int, now: datetime | None = None
    ) -> UsageRecord:
        """
        Subtract a deleted file from the current period, clamped at 0 (atomic).

        uploads_count is a historical counter and is not decremented.
        """
        if size_bytes < 0:
            raise ValidationError("size must be non-negative")

        period = UsagePeriod.current(now)
        await self.db.ensure_usage_row(user_id, period)

        record = await self.db.decrement_storage(user_id, period, size_bytes)
        if record is None:
            raise RuntimeError(f"Usage row vanished for period {period.label}")

        track_ledger_mutation("delete", applied=True, size_bytes=size_bytes)
        logger.info(
            "Deletion recorded",
            extra={
                "user_id": user_id,
                "size_bytes": size_bytes,
                "storage_used": record.storage_used,
                "period": period.label,
            },
        )
        return record

    async def resync(
        self, user_id: str, now: datetime | None = None
    ) -> tuple[UsageRecord, UsageRecord]:
        """
        Rebuild the current period's storage and upload counters from media rows.

        Repairs drift left by clients that metered uploads without a media id
        or by failed deletes. Uploads metered without a media id are dropped
        from the counters.

        Returns:
            (before, after) counters of the current period
        """
        before = await self.current_period(user_id, now=now)
        period = UsagePeriod(month=before.month, year=before.year)
        start, end = period.bounds()

        after = await self.db.resync_usage_from_media(user_id, period, start, end)
        if after is None:
            raise RuntimeError(f"Usage row vanished for period {period.label}")

        track_ledger_mutation("resync", applied=True)
        logger.info(
            "Usage resynchronized from media",
            extra={
                "user_id": user_id,
                "period": period.label,
                "storage_before": before.storage_used,
                "storage_after": after.storage_used,
                "uploads_before": before.uploads_count,
                "uploads_after": after.uploads_count,
            },
        )
        return before, after

    async def history(
        self, user_id: str, months: int, now: datetime | None = None
    ) -> list[tuple[UsagePeriod, UsageRecord | None]]:
        """
        The last ``months`` periods (current included), oldest first.

        Periods without a row are returned with ``None``; they are not created.
        """
        last = UsagePeriod.current(now)
        first = last.shifted(-(months - 1))
        rows = await self.db.list_usage_between(user_id, first, last)
        by_period = {(row.year, row.month): row for row in rows}

        return [
            (period, by_period.get((period.year, period.month)))
            for period in (first.shifted(offset) for offset in range(months))
        ]

    @staticmethod
    def summarize(record: UsageRecord, limits: PlanLimits) -> UsageSummary:
        """Pure derived view: remaining and percentage in the catalog's unit (MB)."""
        used_mb = record.storage_used / BYTES_PER_MB
        return UsageSummary(
            period=f"{record.year:04d}-{record.month:02d}",
            storage_used_bytes=record.storage_used,
            storage_used_mb=round(used_mb, 2),
            storage_limit_mb=limits.storage_limit_mb,
            storage_remaining_mb=round(usage_remaining(used_mb, limits.storage_limit_mb), 2),
            storage_percentage=usage_percentage(used_mb, limits.storage_limit_mb),
            transformations_used=record.transformations_used,
            transformations_limit=limits.transformations_limit,
            transformations_remaining=int(
                usage_remaining(record.transformations_used, limits.transformations_limit)
            ),
            transformations_percentage=usage_percentage(
                record.transformations_used, limits.transformations_limit
            ),
            uploads_count=record.uploads_count,
        )
