"""Uploaded media, as far as quota accounting cares."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class MediaType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


class Media(BaseModel):
    """An uploaded file; ``size`` (bytes) is what the usage ledger accounts for."""

    id: str
    user_id: str
    type: MediaType
    size: int = Field(..., ge=0)
    url: str = ""
    versions: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
