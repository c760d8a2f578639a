"""User profile document."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import Field, field_validator

from globalfam._normalize import safe_str
from globalfam.models._base import GlobalFamBaseModel, Timestamp
from globalfam.models.geo import GeoPlace


class ProfileRecord(GlobalFamBaseModel):
    """Read-only copy of a user's profile document.

    Parameters
    ----------
    id : str
        User id.
    display_name : str
        Name shown on markers and friend cards.
    avatar_ref : str or None
        Avatar URL or storage reference.
    location : GeoPlace or None
        The user's current location.
    is_online : bool
        Presence flag maintained by the user's own client.
    last_seen : datetime or None
        Last activity timestamp.
    friends : tuple of str
        Ids of the user's friends, in document order.
    """

    # Older clients wrote ``uid``/``name``/``photoURL``/``currentLocation``.
    _KEY_ALIASES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("uid", "id"),
        ("name", "displayName"),
        ("avatarUrl", "avatarRef"),
        ("photoURL", "avatarRef"),
        ("currentLocation", "location"),
        ("online", "isOnline"),
    )

    id: str
    display_name: str = "Unknown Name"
    avatar_ref: str | None = None
    location: GeoPlace | None = None
    is_online: bool = False
    last_seen: Timestamp = None
    friends: tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("id must be non-empty")
        return text

    @field_validator("friends", mode="before")
    @classmethod
    def _coerce_friends(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        ids: list[str] = []
        for item in value:
            text = safe_str(item) if isinstance(item, str) else None
            if text is not None:
                ids.append(text)
        return tuple(ids)
