"""Live document feeds over MQTT retained messages.

Every document lives on its own retained topic::

    <prefix>/profiles/<user id>      latest profile document (JSON object)
    <prefix>/statuses/<user id>      latest status of that user (JSON object)

Subscribing to a topic makes the broker replay the retained message, which
is the initial value; an empty retained payload means the document was
deleted. The paho network loop runs in its own thread and hands every
message to the asyncio loop with ``call_soon_threadsafe``, so sources and
everything above them only ever run on the loop thread.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar, cast

import paho.mqtt.client as mqtt

from globalfam._redact import redact_for_log
from globalfam.config import GlobalFamConfig
from globalfam.exceptions import GlobalFamError, GlobalFamTransportError, StatusPostError, SubscriptionError
from globalfam.live.document import SubscriptionRegistry
from globalfam.live.feeds import FriendListFeed
from globalfam.models.profile import ProfileRecord
from globalfam.models.status import StatusDraft, StatusRecord
from globalfam.sources import Cancel, ErrorCallback

_logger = logging.getLogger(__name__)

T = TypeVar("T")

PROFILES = "profiles"
STATUSES = "statuses"


def decode_document_payload(payload: bytes) -> dict[str, Any] | None:
    """Decode a retained document payload. Empty payloads mean "deleted"."""
    text = payload.decode("utf-8").strip()
    if not text:
        return None
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise GlobalFamError("Document payload is not a JSON object")
    return parsed


def encode_document_payload(document: Mapping[str, Any]) -> bytes:
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class MqttDocumentRuntime:
    """Threaded paho-mqtt client that routes messages onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        config: GlobalFamConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._config = config
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self._lock = threading.Lock()
        self._topics: set[str] = set()
        self._routes: dict[str, Callable[[str, bytes], None]] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    @property
    def topics(self) -> set[str]:
        with self._lock:
            return set(self._topics)

    def route(self, topic_prefix: str, handler: Callable[[str, bytes], None]) -> None:
        """Send messages whose topic starts with *topic_prefix* to *handler* (on the loop)."""
        self._routes[topic_prefix] = handler

    def start(self) -> None:
        """Connect and start the network loop."""
        self.stop()
        config = self._config
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s tls=%s client_id=%s",
            config.mqtt_host,
            config.mqtt_port,
            config.mqtt_tls,
            config.mqtt_client_id or "<broker-assigned>",
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=config.mqtt_client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if config.mqtt_username:
            client.username_pw_set(config.mqtt_username, config.mqtt_password)
        if config.mqtt_tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._connected = True
            topics = self.topics
            self._logger.debug("MQTT connected reason=%s, subscribing %d topics", reason_code, len(topics))
            if topics:
                c.subscribe([(topic, 1) for topic in sorted(topics)])

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._loop.call_soon_threadsafe(self._dispatch, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._connected = False
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(config.mqtt_host, config.mqtt_port, keepalive=config.mqtt_keepalive)
        except OSError as exc:
            raise GlobalFamTransportError(
                f"Could not connect to MQTT broker {config.mqtt_host}:{config.mqtt_port}: {exc}",
                endpoint=f"{config.mqtt_host}:{config.mqtt_port}",
            ) from exc
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the current client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def subscribe_topic(self, topic: str) -> None:
        with self._lock:
            if topic in self._topics:
                return
            self._topics.add(topic)
        client = self._client
        if client is not None and self._connected:
            self._logger.debug("MQTT subscribing topic=%s", topic)
            client.subscribe(topic, qos=1)

    def unsubscribe_topic(self, topic: str) -> None:
        with self._lock:
            if topic not in self._topics:
                return
            self._topics.discard(topic)
        client = self._client
        if client is not None and self._connected:
            self._logger.debug("MQTT unsubscribing topic=%s", topic)
            client.unsubscribe(topic)

    def publish(self, topic: str, payload: bytes, *, retain: bool = True, timeout: float = 5.0) -> None:
        """Publish with QoS 1 and wait for the broker acknowledgement (blocking)."""
        client = self._client
        if client is None or not self._running:
            raise GlobalFamTransportError("MQTT runtime is not running", endpoint=topic)
        info = client.publish(topic, payload, qos=1, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise GlobalFamTransportError(f"MQTT publish failed rc={info.rc}", endpoint=topic)
        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as exc:
            raise GlobalFamTransportError(f"MQTT publish failed: {exc}", endpoint=topic) from exc
        if not info.is_published():
            raise GlobalFamTransportError(f"MQTT publish not acknowledged within {timeout}s", endpoint=topic)

    def _dispatch(self, topic: str, payload: bytes) -> None:
        for prefix, handler in self._routes.items():
            if topic.startswith(prefix):
                handler(topic, payload)
                return
        self._logger.debug("MQTT message on unrouted topic=%s", topic)


class MqttDocumentSource(Generic[T]):
    """Live documents of one collection, backed by retained topics."""

    def __init__(
        self,
        runtime: MqttDocumentRuntime,
        *,
        collection: str,
        parse: Callable[[dict[str, Any]], T],
        topic_prefix: str = "globalfam",
        read_timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._runtime = runtime
        self._collection = collection
        self._parse = parse
        self._base = f"{topic_prefix.strip('/')}/{collection}/"
        self._read_timeout = read_timeout
        self._logger = logger or _logger
        self._registry: SubscriptionRegistry[T] = SubscriptionRegistry(logger=self._logger)
        self._latest: dict[str, T | None] = {}
        self._missing_timers: dict[str, asyncio.TimerHandle] = {}
        runtime.route(self._base, self.handle_message)

    @property
    def open_count(self) -> int:
        return self._registry.open_count

    def topic_for(self, key: str) -> str:
        return f"{self._base}{key}"

    def key_for(self, topic: str) -> str | None:
        if not topic.startswith(self._base):
            return None
        key = topic[len(self._base) :]
        return key if key and "/" not in key else None

    def subscribe(
        self,
        key: str,
        on_change: Callable[[T | None], None],
        on_error: ErrorCallback | None = None,
    ) -> Cancel:
        first = not self._registry.handles(key)
        handle = self._registry.open(key, on_change, on_error, on_last_closed=self._release)
        if first:
            # The broker replays the retained document as the initial value;
            # no retained message means the document does not exist.
            self._runtime.subscribe_topic(self.topic_for(key))
            self._missing_timers[key] = self._runtime.loop.call_later(
                self._read_timeout, self._assume_missing, key
            )
        elif key in self._latest:
            value = self._latest[key]
            self._runtime.loop.call_soon(self._registry.deliver, handle, value)
        return handle.cancel

    async def read(self, key: str) -> T | None:
        """One-shot read: cached value, else the first delivery within ``read_timeout``."""
        if key in self._latest:
            return self._latest[key]

        future: asyncio.Future[T | None] = self._runtime.loop.create_future()

        def _changed(value: T | None) -> None:
            if not future.done():
                future.set_result(value)

        def _failed(exc: BaseException) -> None:
            if not future.done():
                future.set_exception(exc)

        cancel = self.subscribe(key, _changed, _failed)
        try:
            return await asyncio.wait_for(future, self._read_timeout)
        except TimeoutError:
            self._logger.debug("No %s document for key=%s within %.1fs", self._collection, key, self._read_timeout)
            return None
        finally:
            cancel()

    def handle_message(self, topic: str, payload: bytes) -> None:
        key = self.key_for(topic)
        if key is None or not self._registry.handles(key):
            return
        self._cancel_missing_timer(key)
        try:
            document = decode_document_payload(payload)
            value = self._parse(document) if document is not None else None
        except (GlobalFamError, ValueError) as exc:
            self._logger.debug("Undecodable %s document key=%s", self._collection, key, exc_info=True)
            self._registry.fail(key, SubscriptionError(f"Invalid {self._collection} document for {key!r}", key=key))
            return

        if document is not None:
            self._logger.debug("%s document key=%s payload=%s", self._collection, key, redact_for_log(document))
        self._latest[key] = value
        self._registry.publish(key, value)

    def _assume_missing(self, key: str) -> None:
        self._missing_timers.pop(key, None)
        if key in self._latest or not self._registry.handles(key):
            return
        self._logger.debug("No retained %s document for key=%s, treating as missing", self._collection, key)
        self._latest[key] = None
        self._registry.publish(key, None)

    def _cancel_missing_timer(self, key: str) -> None:
        timer = self._missing_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _release(self, key: str) -> None:
        self._cancel_missing_timer(key)
        self._latest.pop(key, None)
        self._runtime.unsubscribe_topic(self.topic_for(key))


class MqttStatusSource(MqttDocumentSource[StatusRecord]):
    """Latest status per owner; appending publishes a new retained status."""

    def __init__(
        self,
        runtime: MqttDocumentRuntime,
        *,
        topic_prefix: str = "globalfam",
        read_timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            runtime,
            collection=STATUSES,
            parse=StatusRecord.model_validate,
            topic_prefix=topic_prefix,
            read_timeout=read_timeout,
            logger=logger,
        )

    async def append(self, draft: StatusDraft) -> str:
        record = StatusRecord(
            id=uuid.uuid4().hex,
            owner_id=draft.owner_id,
            text=draft.text,
            posted_at=datetime.now(UTC),
            location=draft.location,
        )
        payload = encode_document_payload(record.model_dump(mode="json", by_alias=True, exclude_none=True))
        publish = functools.partial(self._runtime.publish, self.topic_for(record.owner_id), payload, retain=True)
        try:
            await self._runtime.loop.run_in_executor(None, publish)
        except GlobalFamTransportError as exc:
            raise StatusPostError(f"Failed to post status for {draft.owner_id}: {exc}", owner_id=draft.owner_id) from exc
        self._logger.debug("Status %s published for owner=%s", record.id, record.owner_id)
        return record.id


@dataclass(frozen=True)
class MqttFeeds:
    """The feeds a :class:`~globalfam.orchestrator.MapOrchestrator` needs, over one connection."""

    runtime: MqttDocumentRuntime
    profiles: MqttDocumentSource[ProfileRecord]
    statuses: MqttStatusSource
    friends: FriendListFeed


def build_mqtt_feeds(
    config: GlobalFamConfig,
    *,
    loop: asyncio.AbstractEventLoop,
    logger: logging.Logger | None = None,
) -> MqttFeeds:
    """Create a runtime and its sources. Call ``feeds.runtime.start()`` to connect."""
    runtime = MqttDocumentRuntime(loop=loop, config=config, logger=logger)
    profiles: MqttDocumentSource[ProfileRecord] = MqttDocumentSource(
        runtime,
        collection=PROFILES,
        parse=ProfileRecord.model_validate,
        topic_prefix=config.topic_prefix,
        read_timeout=config.read_timeout,
        logger=logger,
    )
    statuses = MqttStatusSource(
        runtime,
        topic_prefix=config.topic_prefix,
        read_timeout=config.read_timeout,
        logger=logger,
    )
    return MqttFeeds(runtime=runtime, profiles=profiles, statuses=statuses, friends=FriendListFeed(profiles))
