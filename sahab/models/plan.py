"""
Subscription plan reference data.

Plans are seeded, never edited through the API. Prices are stored in minor
units (piastres for EGP); storage and upload sizes in MB.
"""

from pydantic import BaseModel, Field

BYTES_PER_MB = 1024 * 1024

FREE_PLAN_ID = "free"
FREE_PLAN_NAME = "Free"

UNLIMITED = -1


class Plan(BaseModel):
    """A purchasable (or the implicit Free) plan."""

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    price: int = Field(..., ge=0, description="Price per period in minor units")
    currency: str = Field(default="EGP", min_length=3, max_length=3)
    storage_limit: int = Field(..., ge=0, description="Storage cap in MB")
    max_upload_size: int = Field(..., ge=0, description="Largest single file in MB")
    transformations_limit: int = Field(..., ge=0, description="Transformations per period")
    team_members: int = Field(..., ge=UNLIMITED, description="-1 means unlimited")
    support_level: str = Field(default="community")

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def price_major(self) -> float:
        """Price in major currency units (EGP)."""
        return self.price / 100


class PlanLimits(BaseModel):
    """
    The limits QuotaGate evaluates against.

    MB is the catalog's unit; the byte properties are the ledger's unit.
    """

    plan_id: str
    plan_name: str
    storage_limit_mb: int
    max_upload_size_mb: int
    transformations_limit: int
    team_members: int

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanLimits":
        return cls(
            plan_id=plan.id,
            plan_name=plan.name,
            storage_limit_mb=plan.storage_limit,
            max_upload_size_mb=plan.max_upload_size,
            transformations_limit=plan.transformations_limit,
            team_members=plan.team_members,
        )

    @property
    def storage_limit_bytes(self) -> int:
        return self.storage_limit_mb * BYTES_PER_MB

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * BYTES_PER_MB

    @property
    def unlimited_team(self) -> bool:
        return self.team_members == UNLIMITED


# Reference catalog, seeded at startup and by scripts/seed_plans.py
DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        id=FREE_PLAN_ID,
        name=FREE_PLAN_NAME,
        price=0,
        storage_limit=500,
        max_upload_size=5,
        transformations_limit=50,
        team_members=1,
        support_level="community",
    ),
    Plan(
        id="pro",
        name="Pro",
        price=19900,
        storage_limit=10_000,
        max_upload_size=100,
        transformations_limit=5_000,
        team_members=5,
        support_level="email",
    ),
    Plan(
        id="enterprise",
        name="Enterprise",
        price=99900,
        storage_limit=100_000,
        max_upload_size=1_000,
        transformations_limit=50_000,
        team_members=UNLIMITED,
        support_level="priority",
    ),
)
