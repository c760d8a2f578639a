"""MQTT document sources against an in-process runtime double (no broker)."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import pytest

from globalfam.aggregator import EntitySetAggregator
from globalfam.config import GlobalFamConfig
from globalfam.exceptions import GlobalFamError, GlobalFamTransportError, StatusPostError, SubscriptionError
from globalfam.live.memory import MemoryDocumentSource
from globalfam.live.mqtt import (
    MqttDocumentRuntime,
    MqttDocumentSource,
    MqttStatusSource,
    build_mqtt_feeds,
    decode_document_payload,
    encode_document_payload,
)
from globalfam.models import EntitySnapshot, GeoPlace, ProfileRecord, StatusDraft


class _FakeRuntime:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self.routes: dict[str, Callable[[str, bytes], None]] = {}
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.published: list[tuple[str, bytes, bool]] = []
        self.publish_error: Exception | None = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def route(self, topic_prefix: str, handler: Callable[[str, bytes], None]) -> None:
        self.routes[topic_prefix] = handler

    def subscribe_topic(self, topic: str) -> None:
        self.subscribed.append(topic)

    def unsubscribe_topic(self, topic: str) -> None:
        self.unsubscribed.append(topic)

    def publish(self, topic: str, payload: bytes, *, retain: bool = True, timeout: float = 5.0) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, retain))


def _profile_source(runtime: _FakeRuntime, *, read_timeout: float = 5.0) -> MqttDocumentSource[ProfileRecord]:
    return MqttDocumentSource(
        runtime,  # type: ignore[arg-type]
        collection="profiles",
        parse=ProfileRecord.model_validate,
        topic_prefix="fam",
        read_timeout=read_timeout,
    )


def _payload(document: dict[str, object]) -> bytes:
    return json.dumps(document).encode("utf-8")


def test_decode_document_payload() -> None:
    assert decode_document_payload(b'{"id": "u1"}') == {"id": "u1"}
    assert decode_document_payload(b"") is None
    assert decode_document_payload(b"  \n") is None
    with pytest.raises(GlobalFamError):
        decode_document_payload(b"[1, 2]")
    with pytest.raises(ValueError):
        decode_document_payload(b"{not json")


def test_encode_document_payload_is_compact_json() -> None:
    assert encode_document_payload({"id": "u1", "text": "olá"}) == '{"id":"u1","text":"olá"}'.encode()


def test_topics_and_routing() -> None:
    runtime = _FakeRuntime()
    source = _profile_source(runtime)
    assert source.topic_for("u1") == "fam/profiles/u1"
    assert source.key_for("fam/profiles/u1") == "u1"
    assert source.key_for("fam/profiles/u1/extra") is None
    assert source.key_for("fam/statuses/u1") is None
    assert "fam/profiles/" in runtime.routes


@pytest.mark.asyncio
async def test_first_subscriber_subscribes_topic_last_releases_it() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    cancel = source.subscribe("u1", lambda _v: None)
    assert runtime.subscribed == ["fam/profiles/u1"]
    assert source.open_count == 1

    cancel()
    cancel()
    assert runtime.unsubscribed == ["fam/profiles/u1"]
    assert source.open_count == 0


@pytest.mark.asyncio
async def test_retained_message_is_delivered() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    values: list[ProfileRecord | None] = []
    source.subscribe("u1", values.append)

    source.handle_message("fam/profiles/u1", _payload({"id": "u1", "displayName": "Ana", "email": "a@x"}))
    source.handle_message("fam/profiles/u1", b"")
    assert values[0] is not None
    assert values[0].display_name == "Ana"
    assert values[1] is None


@pytest.mark.asyncio
async def test_invalid_document_reports_feed_error() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    values: list[ProfileRecord | None] = []
    errors: list[BaseException] = []
    source.subscribe("u1", values.append, errors.append)

    source.handle_message("fam/profiles/u1", b"{broken")
    source.handle_message("fam/profiles/u1", _payload({"displayName": "no id"}))
    assert values == []
    assert len(errors) == 2
    assert all(isinstance(error, SubscriptionError) for error in errors)


@pytest.mark.asyncio
async def test_message_for_unsubscribed_key_is_ignored() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    values: list[ProfileRecord | None] = []
    source.subscribe("u1", values.append)
    source.handle_message("fam/profiles/u2", _payload({"id": "u2"}))
    assert values == []


@pytest.mark.asyncio
async def test_late_subscriber_gets_cached_value() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    source.subscribe("u1", lambda _v: None)
    source.handle_message("fam/profiles/u1", _payload({"id": "u1", "displayName": "Ana"}))

    late: list[ProfileRecord | None] = []
    source.subscribe("u1", late.append)
    assert runtime.subscribed == ["fam/profiles/u1"]
    await asyncio.sleep(0)
    assert len(late) == 1
    assert late[0] is not None
    assert late[0].display_name == "Ana"


@pytest.mark.asyncio
async def test_read_returns_cached_value() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    source.subscribe("u1", lambda _v: None)
    source.handle_message("fam/profiles/u1", _payload({"id": "u1", "displayName": "Ana"}))

    profile = await source.read("u1")
    assert profile is not None
    assert profile.display_name == "Ana"


@pytest.mark.asyncio
async def test_read_waits_for_first_delivery() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime)
    reading = asyncio.ensure_future(source.read("u1"))
    await asyncio.sleep(0)
    source.handle_message("fam/profiles/u1", _payload({"id": "u1", "displayName": "Ben"}))

    profile = await reading
    assert profile is not None
    assert profile.display_name == "Ben"
    assert source.open_count == 0


@pytest.mark.asyncio
async def test_read_times_out_as_missing() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime, read_timeout=0.01)
    assert await source.read("nobody") is None
    assert runtime.unsubscribed == ["fam/profiles/nobody"]


@pytest.mark.asyncio
async def test_status_append_publishes_retained_document() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    statuses = MqttStatusSource(runtime, topic_prefix="fam")  # type: ignore[arg-type]
    draft = StatusDraft(owner_id="u1", text="Landed", location=GeoPlace(city="Lisbon", lat=38.7, lng=-9.1))

    status_id = await statuses.append(draft)

    topic, payload, retain = runtime.published[0]
    assert topic == "fam/statuses/u1"
    assert retain is True
    document = json.loads(payload)
    assert document["id"] == status_id
    assert document["ownerId"] == "u1"
    assert document["text"] == "Landed"
    assert document["location"]["city"] == "Lisbon"


@pytest.mark.asyncio
async def test_status_append_failure_raises_status_post_error() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    runtime.publish_error = GlobalFamTransportError("not connected", endpoint="fam/statuses/u1")
    statuses = MqttStatusSource(runtime, topic_prefix="fam")  # type: ignore[arg-type]
    with pytest.raises(StatusPostError) as exc_info:
        await statuses.append(StatusDraft(owner_id="u1", text="hi"))
    assert exc_info.value.owner_id == "u1"


@pytest.mark.asyncio
async def test_runtime_dispatches_by_prefix() -> None:
    feeds = build_mqtt_feeds(GlobalFamConfig(topic_prefix="fam"), loop=asyncio.get_running_loop())
    assert isinstance(feeds.runtime, MqttDocumentRuntime)
    assert feeds.runtime.is_running is False

    profiles: list[ProfileRecord | None] = []
    feeds.profiles.subscribe("u1", profiles.append)
    assert feeds.runtime.topics == {"fam/profiles/u1"}

    feeds.runtime._dispatch("fam/profiles/u1", _payload({"id": "u1", "friends": ["u2"]}))
    feeds.runtime._dispatch("fam/unknown/u1", b"{}")
    assert profiles[0] is not None
    assert profiles[0].friends == ("u2",)


@pytest.mark.asyncio
async def test_runtime_publish_requires_running_client() -> None:
    runtime = MqttDocumentRuntime(loop=asyncio.get_running_loop(), config=GlobalFamConfig())
    with pytest.raises(GlobalFamTransportError, match="not running"):
        runtime.publish("fam/statuses/u1", b"{}")


@pytest.mark.asyncio
async def test_key_without_retained_message_becomes_missing() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime, read_timeout=0.01)
    values: list[ProfileRecord | None] = []
    source.subscribe("ghost", values.append)

    await asyncio.sleep(0.05)
    assert values == [None]
    assert await source.read("ghost") is None

    # A document published later still arrives.
    source.handle_message("fam/profiles/ghost", _payload({"id": "ghost", "displayName": "Gus"}))
    assert values[-1] is not None
    assert values[-1].display_name == "Gus"


@pytest.mark.asyncio
async def test_retained_message_cancels_missing_timer() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime, read_timeout=0.01)
    values: list[ProfileRecord | None] = []
    source.subscribe("u1", values.append)
    source.handle_message("fam/profiles/u1", _payload({"id": "u1", "displayName": "Ana"}))

    await asyncio.sleep(0.05)
    assert len(values) == 1
    assert values[0] is not None


@pytest.mark.asyncio
async def test_released_key_is_not_reported_missing() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    source = _profile_source(runtime, read_timeout=0.01)
    values: list[ProfileRecord | None] = []
    cancel = source.subscribe("u1", values.append)
    cancel()

    await asyncio.sleep(0.05)
    assert values == []


@pytest.mark.asyncio
async def test_aggregated_friend_without_profile_resolves_to_missing() -> None:
    runtime = _FakeRuntime(asyncio.get_running_loop())
    profiles = _profile_source(runtime, read_timeout=0.01)
    statuses = MqttStatusSource(runtime, topic_prefix="fam", read_timeout=0.01)  # type: ignore[arg-type]
    roots: MemoryDocumentSource[list[str]] = MemoryDocumentSource()
    roots.put("me", ["ghost"])
    aggregator = EntitySetAggregator("me", root_source=roots, profile_source=profiles, status_source=statuses)
    snapshots: list[EntitySnapshot] = []
    aggregator.subscribe(snapshots.append)
    aggregator.start()
    assert snapshots[-1].pending_ids() == ["ghost"]

    await asyncio.sleep(0.05)
    assert snapshots[-1].pending_ids() == []
    assert snapshots[-1]["ghost"].profile is None
    assert snapshots[-1]["ghost"].status is None
    aggregator.cancel()
    assert profiles.open_count == 0
