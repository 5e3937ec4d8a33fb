"""Per-user, per-period usage counters."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from sahab.models.plan import BYTES_PER_MB


class UsagePeriod(BaseModel):
    """Calendar month the counters belong to (UTC)."""

    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000)

    @classmethod
    def current(cls, now: datetime | None = None) -> "UsagePeriod":
        now = now or datetime.now(UTC)
        return cls(month=now.month, year=now.year)

    def shifted(self, months: int) -> "UsagePeriod":
        """Period ``months`` away from this one (negative goes back)."""
        index = self.year * 12 + (self.month - 1) + months
        return UsagePeriod(month=index % 12 + 1, year=index // 12)

    def bounds(self) -> tuple[datetime, datetime]:
        """[start, end) of the month in UTC."""
        following = self.shifted(1)
        return (
            datetime(self.year, self.month, 1, tzinfo=UTC),
            datetime(following.year, following.month, 1, tzinfo=UTC),
        )

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


class UsageRecord(BaseModel):
    """
    One row of usage_tracking.

    storage_used is in bytes; uploads_count never decreases.
    """

    id: str
    user_id: str
    month: int
    year: int
    storage_used: int = Field(default=0, ge=0, description="Bytes currently stored")
    transformations_used: int = Field(default=0, ge=0)
    uploads_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def storage_used_mb(self) -> float:
        return round(self.storage_used / BYTES_PER_MB, 2)


def usage_percentage(used: float, limit: float) -> float:
    """used/limit*100; a zero limit reads as fully used once anything is used."""
    if limit <= 0:
        return 100.0 if used > 0 else 0.0
    return round(used / limit * 100, 2)


def usage_remaining(used: float, limit: float) -> float:
    return max(0, limit - used)


class UsageLevel(str, Enum):
    """Warning level of a usage percentage (notification thresholds)."""

    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


def usage_level(
    percentage: float, warning: float = 80.0, critical: float = 95.0
) -> UsageLevel:
    """Map a percentage onto safe / warning / critical / exceeded."""
    if percentage >= 100:
        return UsageLevel.EXCEEDED
    if percentage >= critical:
        return UsageLevel.CRITICAL
    if percentage >= warning:
        return UsageLevel.WARNING
    return UsageLevel.SAFE


def usage_status(percentage: float) -> str:
    """Coarser status shown on the usage dashboard."""
    if percentage >= 95:
        return "critical"
    if percentage >= 80:
        return "warning"
    if percentage >= 60:
        return "moderate"
    return "good"
