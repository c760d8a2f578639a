"""Geographic value objects."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from globalfam._normalize import is_finite_number, safe_float, safe_str
from globalfam.models._base import GlobalFamBaseModel


class LatLng(BaseModel):
    """A coordinate pair in degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class GeoPlace(GlobalFamBaseModel):
    """A place as written on a profile or status.

    When ``lat`` and ``lng`` are both present they are authoritative and
    ``city``/``country`` are advisory. Otherwise the city and country have to
    be geocoded before the place can be put on a map.
    """

    _KEY_ALIASES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("latitude", "lat"),
        ("longitude", "lng"),
        ("lon", "lng"),
    )

    city: str | None = None
    country: str | None = None
    lat: float | None = None
    lng: float | None = None

    @field_validator("city", "country", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("lat", mode="before")
    @classmethod
    def _coerce_lat(cls, value: Any) -> float | None:
        parsed = safe_float(value)
        if parsed is None or not is_finite_number(parsed) or not -90.0 <= parsed <= 90.0:
            return None
        return parsed

    @field_validator("lng", mode="before")
    @classmethod
    def _coerce_lng(cls, value: Any) -> float | None:
        parsed = safe_float(value)
        if parsed is None or not is_finite_number(parsed) or not -180.0 <= parsed <= 180.0:
            return None
        return parsed

    @property
    def coordinates(self) -> LatLng | None:
        """Explicit coordinates, when both are present."""
        if self.lat is None or self.lng is None:
            return None
        return LatLng(lat=self.lat, lng=self.lng)

    @property
    def needs_lookup(self) -> bool:
        """True when the place can only be placed through geocoding."""
        return self.coordinates is None and bool(self.city)

    @property
    def label(self) -> str:
        parts = [part for part in (self.city, self.country) if part]
        return ", ".join(parts) if parts else "Location not set"

    @classmethod
    def at(cls, coordinates: LatLng, *, city: str | None = None, country: str | None = None) -> GeoPlace:
        return cls(city=city, country=country, lat=coordinates.lat, lng=coordinates.lng)
