"""Structural interfaces of the external collaborators.

The core works against any implementation of these protocols. The package
ships in-memory implementations (:mod:`globalfam.live.memory`) and MQTT
backed ones (:mod:`globalfam.live.mqtt`); tests pass their own doubles.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, TypeVar

from globalfam.models.geo import LatLng
from globalfam.models.profile import ProfileRecord
from globalfam.models.status import StatusDraft, StatusRecord

T_co = TypeVar("T_co", covariant=True)

Cancel = Callable[[], None]
"""Idempotent handle that stops a subscription."""

ErrorCallback = Callable[[BaseException], None]


class LiveSource(Protocol[T_co]):
    """A store of live documents addressed by key."""

    def subscribe(
        self,
        key: str,
        on_change: Callable[[T_co | None], None],
        on_error: ErrorCallback | None = None,
    ) -> Cancel:
        """Deliver the current value (``None`` if absent) and every change until cancelled."""
        ...


class RootListSource(LiveSource[list[str]], Protocol):
    """Live list of the ids a session tracks (the friend-id list)."""


class ProfileSource(LiveSource[ProfileRecord], Protocol):
    async def read(self, key: str) -> ProfileRecord | None: ...


class StatusSource(LiveSource[StatusRecord], Protocol):
    """Latest status per owner; new statuses are appended."""

    async def append(self, draft: StatusDraft) -> str:
        """Store a new status and return its id. Failures raise."""
        ...


class PlaceLookup(Protocol):
    """Geocoding backend."""

    async def lookup(self, city: str, country: str | None) -> LatLng | None: ...


class IdentityProvider(Protocol):
    """Yields the signed-in user id (``None`` when signed out)."""

    def subscribe(self, on_change: Callable[[str | None], None]) -> Cancel: ...
