"""Derived live feeds."""

from __future__ import annotations

from collections.abc import Callable

from globalfam.models.profile import ProfileRecord
from globalfam.sources import Cancel, ErrorCallback, LiveSource


class FriendListFeed:
    """Root-list source reading the ``friends`` field of a user's own profile.

    A missing profile yields ``None``, which the aggregator treats as an
    empty friend list.
    """

    def __init__(self, profiles: LiveSource[ProfileRecord]) -> None:
        self._profiles = profiles

    def subscribe(
        self,
        key: str,
        on_change: Callable[[list[str] | None], None],
        on_error: ErrorCallback | None = None,
    ) -> Cancel:
        def _profile_changed(profile: ProfileRecord | None) -> None:
            on_change(list(profile.friends) if profile is not None else None)

        return self._profiles.subscribe(key, _profile_changed, on_error)
