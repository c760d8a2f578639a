"""Live aggregation of a dynamic set of tracked entities.

The aggregator owns one root subscription (the list of ids to track) and,
for every id currently in that list, exactly one child bundle made of a
profile and a status subscription. Each root-list change is diffed against
the tracked set:

* ids that appeared get a bundle and a ``pending`` entry right away,
* ids that disappeared have both subscriptions cancelled and are dropped,
* ids present in both are left alone.

Child callbacks are matched against the bundle that created them, not just
the id, so a callback from a bundle that was torn down (possibly for an id
that has since been re-added) is discarded.

Every change emits the full snapshot synchronously. Feed failures only
degrade the affected entity.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from globalfam.exceptions import SubscriptionError
from globalfam.live.document import LiveDocument
from globalfam.live.observable import Observable
from globalfam.models.entity import PENDING, AggregatedEntity, EntitySnapshot
from globalfam.models.profile import ProfileRecord
from globalfam.models.status import StatusRecord
from globalfam.sources import Cancel, LiveSource

_logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(eq=False, slots=True)
class _Tracked:
    """Child bundle of one tracked id."""

    entity_id: str
    profile: LiveDocument[ProfileRecord]
    status: LiveDocument[StatusRecord]

    def cancel(self) -> None:
        self.profile.cancel()
        self.status.cancel()


def _unique_ids(ids: Iterable[str] | None) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for entity_id in ids or ():
        if not isinstance(entity_id, str) or not entity_id or entity_id in seen:
            continue
        seen.add(entity_id)
        unique.append(entity_id)
    return unique


class EntitySetAggregator:
    """Maintains an :class:`EntitySnapshot` for the ids listed under ``root_key``.

    Parameters
    ----------
    root_key : str
        Key of the root list in ``root_source`` (the session user's id).
    root_source : LiveSource[list[str]]
        Live list of ids to track.
    profile_source, status_source : LiveSource
        Per-id profile and latest-status feeds.
    """

    def __init__(
        self,
        root_key: str,
        *,
        root_source: LiveSource[list[str]],
        profile_source: LiveSource[ProfileRecord],
        status_source: LiveSource[StatusRecord],
        logger: logging.Logger | None = None,
    ) -> None:
        self._root_key = root_key
        self._root_source = root_source
        self._profile_source = profile_source
        self._status_source = status_source
        self._logger = logger or _logger

        self._root: LiveDocument[list[str]] | None = None
        self._tracked: dict[str, _Tracked] = {}
        self._entities: dict[str, AggregatedEntity] = {}
        self._snapshots: Observable[EntitySnapshot] = Observable("snapshot", logger=self._logger)
        self._version = 0
        self._started = False
        self._cancelled = False
        self._batching = False

    def __repr__(self) -> str:
        return f"<EntitySetAggregator root={self._root_key!r} tracked={len(self._tracked)}>"

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def root_key(self) -> str:
        return self._root_key

    @property
    def is_running(self) -> bool:
        return self._started and not self._cancelled

    @property
    def snapshot(self) -> EntitySnapshot:
        return EntitySnapshot(self._entities, version=self._version)

    @property
    def tracked_ids(self) -> list[str]:
        return list(self._tracked)

    @property
    def open_child_subscriptions(self) -> int:
        return sum(int(t.profile.active) + int(t.status.active) for t in self._tracked.values())

    def subscribe(self, on_snapshot: Callable[[EntitySnapshot], None]) -> Cancel:
        """Receive the current snapshot now (once started) and after every change."""
        return self._snapshots.subscribe(on_snapshot)

    def start(self) -> None:
        if self._started:
            return
        if self._cancelled:
            raise RuntimeError("Aggregator was cancelled and cannot be restarted")
        self._started = True
        self._logger.debug("Aggregator starting root=%s", self._root_key)
        self._emit()
        root: LiveDocument[list[str]] = LiveDocument(self._root_source, self._root_key, logger=self._logger)
        self._root = root
        root.open(self._on_root_list, self._on_root_error)

    def cancel(self) -> None:
        """Cancel the root list and every child subscription. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        root = self._root
        self._root = None
        if root is not None:
            root.cancel()
        tracked = list(self._tracked.values())
        self._tracked.clear()
        self._entities.clear()
        for bundle in tracked:
            bundle.cancel()
        self._snapshots.close()
        self._logger.debug("Aggregator cancelled root=%s (%d children closed)", self._root_key, len(tracked))

    # ------------------------------------------------------------------
    # Root list
    # ------------------------------------------------------------------

    def _on_root_list(self, ids: list[str] | None) -> None:
        if self._cancelled:
            return
        wanted = _unique_ids(ids)
        wanted_set = set(wanted)
        removed = [entity_id for entity_id in self._tracked if entity_id not in wanted_set]
        added = [entity_id for entity_id in wanted if entity_id not in self._tracked]
        if not removed and not added:
            return

        self._logger.debug("Root list %s changed: +%s -%s", self._root_key, added, removed)
        self._batching = True
        try:
            for entity_id in removed:
                bundle = self._tracked.pop(entity_id)
                self._entities.pop(entity_id, None)
                bundle.cancel()
            for entity_id in added:
                self._track(entity_id)
        finally:
            self._batching = False
        self._emit()

    def _on_root_error(self, error: SubscriptionError) -> None:
        # Keep the last known set; the feed may recover and deliver again.
        self._logger.warning("Root list %s unavailable: %s", self._root_key, error)

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    def _track(self, entity_id: str) -> None:
        bundle = _Tracked(
            entity_id=entity_id,
            profile=LiveDocument(self._profile_source, entity_id, logger=self._logger),
            status=LiveDocument(self._status_source, entity_id, logger=self._logger),
        )
        self._tracked[entity_id] = bundle
        self._entities[entity_id] = AggregatedEntity(id=entity_id, profile=PENDING)

        bundle.profile.open(
            lambda profile: self._on_profile(bundle, profile),
            lambda error: self._on_profile_error(bundle, error),
        )
        bundle.status.open(
            lambda status: self._on_status(bundle, status),
            lambda error: self._on_status_error(bundle, error),
        )

    def _is_live(self, bundle: _Tracked) -> bool:
        if self._tracked.get(bundle.entity_id) is bundle:
            return True
        self._logger.debug("Discarding stale callback for %s", bundle.entity_id)
        return False

    def _on_profile(self, bundle: _Tracked, profile: ProfileRecord | None) -> None:
        if not self._is_live(bundle):
            return
        self._update(bundle.entity_id, profile=profile)

    def _on_status(self, bundle: _Tracked, status: StatusRecord | None) -> None:
        if not self._is_live(bundle):
            return
        self._update(bundle.entity_id, status=status)

    def _on_profile_error(self, bundle: _Tracked, error: SubscriptionError) -> None:
        if not self._is_live(bundle):
            return
        self._logger.warning("Profile feed for %s failed, showing it as unavailable: %s", bundle.entity_id, error)
        self._update(bundle.entity_id, profile=None)

    def _on_status_error(self, bundle: _Tracked, error: SubscriptionError) -> None:
        if not self._is_live(bundle):
            return
        self._logger.warning("Status feed for %s failed, clearing it: %s", bundle.entity_id, error)
        self._update(bundle.entity_id, status=None)

    def _update(self, entity_id: str, *, profile: object = _UNSET, status: object = _UNSET) -> None:
        current = self._entities[entity_id]
        changes: dict[str, object] = {}
        if profile is not _UNSET:
            changes["profile"] = profile
        if status is not _UNSET:
            changes["status"] = status
        self._entities[entity_id] = current.model_copy(update=changes)
        if self._batching:
            return
        self._emit()

    def _emit(self) -> None:
        self._version += 1
        self._snapshots.emit(self.snapshot)
