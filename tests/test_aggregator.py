"""Tests for EntitySetAggregator subscription bookkeeping and emissions."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from globalfam.aggregator import EntitySetAggregator
from globalfam.live.memory import MemoryDocumentSource, MemoryStatusSource
from globalfam.models import EntitySnapshot, GeoPlace, ProfileRecord, StatusRecord


class _Harness:
    def __init__(self, *, deferred_profiles: bool = False, deliver_missing: bool = True) -> None:
        self.roots: MemoryDocumentSource[list[str]] = MemoryDocumentSource()
        self.profiles: MemoryDocumentSource[ProfileRecord] = MemoryDocumentSource(
            deferred=deferred_profiles,
            deliver_missing=deliver_missing,
        )
        self.statuses = MemoryStatusSource()
        self.aggregator = EntitySetAggregator(
            "me",
            root_source=self.roots,
            profile_source=self.profiles,
            status_source=self.statuses,
        )
        self.snapshots: list[EntitySnapshot] = []
        self.aggregator.subscribe(self.snapshots.append)

    @property
    def last(self) -> EntitySnapshot:
        return self.snapshots[-1]

    def assert_conserved(self) -> None:
        tracked = sorted(self.aggregator.tracked_ids)
        assert sorted(self.profiles.open_keys()) == tracked
        assert sorted(self.statuses.open_keys()) == tracked
        assert self.profiles.open_count == len(tracked)
        assert self.statuses.open_count == len(tracked)
        assert self.aggregator.open_child_subscriptions == 2 * len(tracked)


def _profile(entity_id: str, name: str, **kwargs: object) -> ProfileRecord:
    return ProfileRecord(id=entity_id, display_name=name, **kwargs)  # type: ignore[arg-type]


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def test_start_emits_empty_snapshot() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.aggregator.start()
    assert len(harness.snapshots) == 1
    assert len(harness.last) == 0
    assert harness.aggregator.is_running
    assert harness.roots.open_count == 1


def test_root_change_emits_once_with_child_results() -> None:
    harness = _Harness()
    harness.profiles.put("f1", _profile("f1", "Ana", is_online=True))
    harness.aggregator.start()

    harness.roots.put("me", ["f1", "f2"])
    assert len(harness.snapshots) == 2
    snapshot = harness.last
    assert list(snapshot) == ["f1", "f2"]
    assert snapshot["f1"].display_name == "Ana"
    assert snapshot["f1"].is_online is True
    # f2 has no profile document.
    assert snapshot["f2"].profile is None
    assert snapshot.version > harness.snapshots[0].version
    harness.assert_conserved()


def test_unknown_profile_stays_pending_until_delivered() -> None:
    harness = _Harness(deliver_missing=False)
    harness.aggregator.start()
    harness.roots.put("me", ["f1"])
    assert harness.last.pending_ids() == ["f1"]
    assert harness.last["f1"].display_name == "Loading..."

    harness.profiles.put("f1", _profile("f1", "Ana"))
    assert harness.last.pending_ids() == []
    assert harness.last["f1"].display_name == "Ana"

    harness.profiles.delete("f1")
    assert harness.last["f1"].profile is None


def test_diff_keeps_unchanged_subscriptions() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f2"])
    opened_before = harness.profiles.opened

    harness.roots.put("me", ["f2", "f3"])
    assert list(harness.last) == ["f2", "f3"]
    # Only f3 is new; f2 keeps its subscription.
    assert harness.profiles.opened == opened_before + 1
    assert harness.profiles.closed == 1
    harness.assert_conserved()


def test_same_set_does_not_emit() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f2"])
    count = len(harness.snapshots)
    harness.roots.put("me", ["f2", "f1"])
    assert len(harness.snapshots) == count


def test_duplicates_and_blank_ids_ignored() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f1", ""])
    assert harness.aggregator.tracked_ids == ["f1"]
    harness.assert_conserved()


def test_missing_root_list_means_empty() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1"])
    harness.roots.delete("me")
    assert len(harness.last) == 0
    harness.assert_conserved()


def test_status_updates_flow_into_snapshot() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1"])

    status = StatusRecord(id="s1", owner_id="f1", text="Hello", posted_at=datetime(2026, 1, 1, tzinfo=UTC))
    harness.statuses.put("f1", status)
    assert harness.last["f1"].status == status


def test_profile_error_degrades_only_that_entity() -> None:
    harness = _Harness()
    harness.profiles.put("f1", _profile("f1", "Ana"))
    harness.profiles.put("f2", _profile("f2", "Ben"))
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f2"])

    harness.profiles.fail("f1", RuntimeError("permission denied"))
    assert harness.last["f1"].profile is None
    assert harness.last["f2"].display_name == "Ben"
    assert harness.aggregator.is_running


def test_status_error_clears_status() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1"])
    harness.statuses.put("f1", StatusRecord(id="s1", owner_id="f1", text="hi"))
    harness.statuses.fail("f1", RuntimeError("boom"))
    assert harness.last["f1"].status is None


class _RefusingStatusSource(MemoryStatusSource):
    def subscribe(self, key, on_change, on_error=None):  # type: ignore[no-untyped-def]
        raise OSError(f"status feed for {key} refused")


def test_refused_child_subscription_is_not_counted_open() -> None:
    roots: MemoryDocumentSource[list[str]] = MemoryDocumentSource()
    profiles: MemoryDocumentSource[ProfileRecord] = MemoryDocumentSource()
    statuses = _RefusingStatusSource()
    aggregator = EntitySetAggregator("me", root_source=roots, profile_source=profiles, status_source=statuses)
    snapshots: list[EntitySnapshot] = []
    aggregator.subscribe(snapshots.append)
    aggregator.start()

    roots.put("me", ["f1"])
    assert snapshots[-1]["f1"].status is None
    assert aggregator.open_child_subscriptions == profiles.open_count + statuses.open_count == 1

    aggregator.cancel()
    assert profiles.open_count == 0


def test_root_error_keeps_last_known_set() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f2"])
    count = len(harness.snapshots)

    harness.roots.fail("me", RuntimeError("offline"))
    assert len(harness.snapshots) == count
    assert harness.aggregator.tracked_ids == ["f1", "f2"]
    harness.assert_conserved()


def test_cancel_releases_everything() -> None:
    harness = _Harness()
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f2", "f3"])
    count = len(harness.snapshots)

    harness.aggregator.cancel()
    harness.aggregator.cancel()
    assert harness.roots.open_count == 0
    assert harness.profiles.open_count == 0
    assert harness.statuses.open_count == 0
    assert harness.aggregator.tracked_ids == []
    assert not harness.aggregator.is_running

    harness.profiles.put("f1", _profile("f1", "Late"))
    harness.roots.put("me", ["f4"])
    assert len(harness.snapshots) == count


def test_cancelled_aggregator_cannot_restart() -> None:
    harness = _Harness()
    harness.aggregator.cancel()
    with pytest.raises(RuntimeError):
        harness.aggregator.start()


def test_location_is_exposed_for_viewport() -> None:
    harness = _Harness()
    place = GeoPlace(city="Rome", lat=41.9, lng=12.5)
    harness.profiles.put("f1", _profile("f1", "Ana", location=place))
    harness.aggregator.start()
    harness.roots.put("me", ["f1", "f2"])
    assert harness.last.located_places() == [("f1", place)]


@pytest.mark.asyncio
async def test_delivery_for_removed_id_is_discarded() -> None:
    harness = _Harness(deferred_profiles=True)
    harness.profiles.put("f1", _profile("f1", "Ana"))
    harness.aggregator.start()

    harness.roots.put("me", ["f1"])
    harness.roots.put("me", [])
    count = len(harness.snapshots)

    await _settle()
    assert len(harness.snapshots) == count
    assert "f1" not in harness.last
    harness.assert_conserved()


@pytest.mark.asyncio
async def test_readded_id_ignores_old_bundle() -> None:
    harness = _Harness(deferred_profiles=True)
    harness.profiles.put("f1", _profile("f1", "Old"))
    harness.aggregator.start()

    harness.roots.put("me", ["f1"])
    harness.roots.put("me", [])
    harness.roots.put("me", ["f1"])
    assert harness.last.pending_ids() == ["f1"]

    harness.profiles.put("f1", _profile("f1", "New"))
    await _settle()

    assert harness.last["f1"].display_name == "New"
    assert harness.profiles.open_count == 1
    harness.assert_conserved()
