"""Status update documents."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from globalfam._normalize import safe_str
from globalfam.models._base import GlobalFamBaseModel, RequiredTimestamp
from globalfam.models.geo import GeoPlace

#: Maximum status length accepted by :class:`StatusDraft`.
STATUS_MAX_LENGTH = 280


class StatusRecord(GlobalFamBaseModel):
    """A posted status update. The store is append-only."""

    _KEY_ALIASES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("userId", "ownerId"),
        ("content", "text"),
        ("createdAt", "postedAt"),
    )

    id: str
    owner_id: str
    text: str = ""
    posted_at: RequiredTimestamp = Field(default_factory=lambda: datetime.now(UTC))
    location: GeoPlace | None = None

    @field_validator("id", "owner_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("must be non-empty")
        return text


class StatusDraft(BaseModel):
    """A status the session user is about to post."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    owner_id: str = Field(min_length=1)
    text: str = Field(min_length=1, max_length=STATUS_MAX_LENGTH)
    location: GeoPlace | None = None
