"""Subscription lifecycle of live documents, observables and the in-memory sources."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import pytest

from globalfam.exceptions import StaleCallback, SubscriptionError
from globalfam.live import (
    FriendListFeed,
    LiveDocument,
    MemoryDocumentSource,
    MemoryIdentityProvider,
    Observable,
    SubscriptionRegistry,
)
from globalfam.models import ProfileRecord
from globalfam.sources import Cancel, ErrorCallback


class _BrokenSource:
    def subscribe(
        self,
        key: str,
        on_change: Callable[[str | None], None],
        on_error: ErrorCallback | None = None,
    ) -> Cancel:
        raise ConnectionError(f"cannot subscribe {key}")


# ------------------------------------------------------------------
# Registry / handles
# ------------------------------------------------------------------


class TestSubscriptionRegistry:
    def test_counts_and_last_closed(self) -> None:
        released: list[str] = []
        registry: SubscriptionRegistry[str] = SubscriptionRegistry()
        first = registry.open("k", lambda _v: None, on_last_closed=released.append)
        second = registry.open("k", lambda _v: None, on_last_closed=released.append)
        assert registry.open_count == 2
        assert registry.keys() == ["k"]

        first.cancel()
        first.cancel()
        assert registry.open_count == 1
        assert released == []

        second.cancel()
        assert registry.open_count == 0
        assert registry.opened == 2
        assert registry.closed == 2
        assert released == ["k"]
        assert registry.keys() == []

    def test_cancelled_handle_raises_stale(self) -> None:
        registry: SubscriptionRegistry[str] = SubscriptionRegistry()
        handle = registry.open("k", lambda _v: None)
        handle.cancel()
        with pytest.raises(StaleCallback):
            handle.deliver("late")
        # Delivery through the registry swallows the stale callback.
        registry.deliver(handle, "late")


# ------------------------------------------------------------------
# LiveDocument
# ------------------------------------------------------------------


class TestLiveDocument:
    def test_initial_value_and_updates(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource()
        source.put("k", "v1")
        values: list[str | None] = []
        document = LiveDocument(source, "k")
        document.open(values.append)

        source.put("k", "v2")
        source.delete("k")
        assert values == ["v1", "v2", None]
        assert document.has_value is True
        assert document.value is None
        assert document.active is True

    def test_missing_document_delivers_none(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource()
        values: list[str | None] = []
        LiveDocument(source, "absent").open(values.append)
        assert values == [None]

    def test_missing_document_without_delivery_stays_silent(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource(deliver_missing=False)
        values: list[str | None] = []
        document = LiveDocument(source, "absent")
        document.open(values.append)
        assert values == []
        assert document.has_value is False

    def test_cancel_is_idempotent_and_final(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource()
        values: list[str | None] = []
        document = LiveDocument(source, "k")
        document.open(values.append)
        document.cancel()
        document.cancel()

        source.put("k", "after")
        assert values == [None]
        assert source.open_count == 0
        assert source.opened == 1
        assert source.closed == 1
        assert document.active is False

    def test_open_twice_raises(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource()
        document = LiveDocument(source, "k")
        document.open(lambda _v: None)
        with pytest.raises(RuntimeError):
            document.open(lambda _v: None)
        document.cancel()
        with pytest.raises(RuntimeError):
            document.open(lambda _v: None)

    def test_feed_error_is_wrapped(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource()
        errors: list[SubscriptionError] = []
        LiveDocument(source, "k").open(lambda _v: None, errors.append)

        source.fail("k", RuntimeError("permission denied"))
        assert len(errors) == 1
        assert errors[0].key == "k"
        assert isinstance(errors[0].__cause__, RuntimeError)

    def test_subscribe_failure_reported_as_feed_error(self) -> None:
        errors: list[SubscriptionError] = []
        document: LiveDocument[str] = LiveDocument(_BrokenSource(), "k")
        document.open(lambda _v: None, errors.append)
        assert len(errors) == 1
        assert "cannot subscribe k" in str(errors[0])
        assert document.active is False
        document.cancel()
        with pytest.raises(RuntimeError):
            document.open(lambda _v: None)

    def test_cancel_from_initial_delivery_releases_subscription(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource()
        source.put("k", "v")
        document = LiveDocument(source, "k")
        document.open(lambda _v: document.cancel())
        assert source.open_count == 0

    @pytest.mark.asyncio
    async def test_deferred_delivery_after_cancel_is_dropped(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource(deferred=True)
        values: list[str | None] = []
        errors: list[SubscriptionError] = []
        document = LiveDocument(source, "k")
        document.open(values.append, errors.append)

        source.put("k", "queued")
        source.fail("k", RuntimeError("queued error"))
        document.cancel()

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert values == []
        assert errors == []

    @pytest.mark.asyncio
    async def test_deferred_delivery_arrives_on_loop(self) -> None:
        source: MemoryDocumentSource[str] = MemoryDocumentSource(deferred=True)
        values: list[str | None] = []
        LiveDocument(source, "k").open(values.append)
        source.put("k", "v")
        assert values == []

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert values == [None, "v"]


# ------------------------------------------------------------------
# Observable
# ------------------------------------------------------------------


class TestObservable:
    def test_replay_and_unsubscribe(self) -> None:
        stream: Observable[int] = Observable("numbers")
        stream.emit(1)
        seen: list[int] = []
        unsubscribe = stream.subscribe(seen.append)
        stream.emit(2)
        unsubscribe()
        stream.emit(3)
        assert seen == [1, 2]
        assert stream.value == 3

    def test_no_replay(self) -> None:
        stream: Observable[int] = Observable("numbers")
        stream.emit(1)
        seen: list[int] = []
        stream.subscribe(seen.append, replay=False)
        assert seen == []

    def test_raising_subscriber_does_not_block_others(self, caplog: pytest.LogCaptureFixture) -> None:
        stream: Observable[int] = Observable("numbers")
        seen: list[int] = []

        def _boom(_value: int) -> None:
            raise ValueError("consumer bug")

        stream.subscribe(_boom)
        stream.subscribe(seen.append)
        with caplog.at_level(logging.ERROR):
            stream.emit(7)
        assert seen == [7]
        assert "numbers subscriber raised" in caplog.text

    def test_emit_from_subscriber_ends_everyone_on_latest(self) -> None:
        stream: Observable[int] = Observable("numbers")
        first: list[int] = []
        second: list[int] = []

        def _bump(value: int) -> None:
            first.append(value)
            if value == 1:
                stream.emit(2)

        stream.subscribe(_bump)
        stream.subscribe(second.append)
        stream.emit(1)

        assert first == [1, 2]
        assert second == [2]
        assert second[-1] == stream.value == 2

        stream.emit(3)
        assert first[-1] == second[-1] == 3

    def test_close_drops_subscribers(self) -> None:
        stream: Observable[int] = Observable("numbers")
        seen: list[int] = []
        stream.subscribe(seen.append)
        stream.close()
        stream.emit(1)
        assert seen == []
        assert stream.subscriber_count == 0


# ------------------------------------------------------------------
# Identity / derived feeds
# ------------------------------------------------------------------


def test_identity_provider_replays_and_notifies() -> None:
    provider = MemoryIdentityProvider("me")
    seen: list[str | None] = []
    unsubscribe = provider.subscribe(seen.append)
    provider.sign_in("me")
    provider.sign_in("other")
    provider.sign_out()
    unsubscribe()
    provider.sign_in("late")
    assert seen == ["me", "other", None]


def test_friend_list_feed_follows_profile() -> None:
    profiles: MemoryDocumentSource[ProfileRecord] = MemoryDocumentSource()
    lists: list[list[str] | None] = []
    cancel = FriendListFeed(profiles).subscribe("me", lists.append)

    profiles.put("me", ProfileRecord(id="me", friends=("a", "b")))
    profiles.delete("me")
    cancel()
    assert lists == [None, ["a", "b"], None]
    assert profiles.open_count == 0
