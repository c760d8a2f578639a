"""Map camera value objects."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field

from globalfam.models.geo import LatLng


def _new_token() -> str:
    return uuid.uuid4().hex


class Camera(BaseModel):
    """Where the map should look. Derived, never persisted."""

    model_config = ConfigDict(frozen=True)

    center: LatLng
    zoom: float


class DirectedViewRequest(BaseModel):
    """One-shot camera override ("jump to this point").

    Requests are told apart solely by ``token``; reposting a request with a
    token that was already consumed has no effect.
    """

    model_config = ConfigDict(frozen=True)

    center: LatLng
    zoom: float = Field(ge=0.0, le=22.0)
    token: str = Field(default_factory=_new_token, min_length=1)
