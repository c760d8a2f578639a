"""Custom exception hierarchy for globalfam."""

from __future__ import annotations

from typing import Any


class GlobalFamError(Exception):
    """Base exception for all globalfam errors."""


class GlobalFamConfigError(GlobalFamError):
    """Invalid or missing configuration."""


class GlobalFamTransportError(GlobalFamError):
    """HTTP or broker level failure (network, non-200, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class SubscriptionError(GlobalFamError):
    """A live feed failed.

    The aggregator degrades the affected entity to ``None`` and keeps every
    other feed running.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class ResolutionFailure(GlobalFamError):
    """A place could not be geocoded.

    Never escapes :class:`~globalfam.geo.GeoResolver`; the resolver falls back
    to a deterministic pseudo coordinate instead.
    """

    def __init__(self, message: str, *, place: Any = None) -> None:
        self.place = place
        super().__init__(message)


class StaleCallback(GlobalFamError):
    """A callback arrived for a cancelled or superseded subscription."""

    def __init__(self, key: str, serial: int) -> None:
        self.key = key
        self.serial = serial
        super().__init__(f"Stale callback for {key!r} (subscription #{serial})")


class StatusPostError(GlobalFamError):
    """Posting a status update failed.

    Unlike feed errors this is surfaced to the caller, who needs to know the
    action did not go through.
    """

    def __init__(self, message: str, *, owner_id: str = "") -> None:
        self.owner_id = owner_id
        super().__init__(message)
