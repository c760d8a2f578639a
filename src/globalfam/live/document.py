"""Subscription handles and the live document wrapper.

Lifecycle rules every source and consumer relies on:

* ``cancel()`` is idempotent and immediate: once it returns, the handle
  never calls back again, even if the source still has deliveries queued.
* Subscriptions to the same key are independent of each other.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

from globalfam.exceptions import StaleCallback, SubscriptionError
from globalfam.sources import Cancel, ErrorCallback, LiveSource

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_serials = itertools.count(1)


class Subscription(Generic[T]):
    """Handle for one open subscription inside a source."""

    __slots__ = ("key", "serial", "_on_change", "_on_error", "_on_close", "_active")

    def __init__(
        self,
        key: str,
        on_change: Callable[[T | None], None],
        on_error: ErrorCallback | None = None,
        *,
        on_close: Callable[[Subscription[T]], None] | None = None,
    ) -> None:
        self.key = key
        self.serial = next(_serials)
        self._on_change = on_change
        self._on_error = on_error
        self._on_close = on_close
        self._active = True

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"<Subscription #{self.serial} key={self.key!r} {state}>"

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, value: T | None) -> None:
        if not self._active:
            raise StaleCallback(self.key, self.serial)
        self._on_change(value)

    def fail(self, exc: BaseException) -> None:
        if not self._active:
            raise StaleCallback(self.key, self.serial)
        if self._on_error is None:
            _logger.warning("Unhandled error on subscription #%s key=%s: %s", self.serial, self.key, exc)
            return
        self._on_error(exc)

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        on_close = self._on_close
        self._on_close = None
        if on_close is not None:
            on_close(self)


class SubscriptionRegistry(Generic[T]):
    """Per-key bookkeeping of open subscriptions, shared by the sources.

    ``opened``/``closed`` count every handle ever opened and closed, so
    ``open_count == opened - closed`` at all times.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _logger
        self._by_key: dict[str, list[Subscription[T]]] = {}
        self.opened = 0
        self.closed = 0

    @property
    def open_count(self) -> int:
        return self.opened - self.closed

    def keys(self) -> list[str]:
        return list(self._by_key)

    def handles(self, key: str) -> list[Subscription[T]]:
        return list(self._by_key.get(key, ()))

    def open(
        self,
        key: str,
        on_change: Callable[[T | None], None],
        on_error: ErrorCallback | None = None,
        *,
        on_last_closed: Callable[[str], None] | None = None,
    ) -> Subscription[T]:
        def _closed(handle: Subscription[T]) -> None:
            self.closed += 1
            remaining = [cand for cand in self._by_key.get(key, []) if cand is not handle]
            if remaining:
                self._by_key[key] = remaining
                return
            self._by_key.pop(key, None)
            if on_last_closed is not None:
                on_last_closed(key)

        handle: Subscription[T] = Subscription(key, on_change, on_error, on_close=_closed)
        self._by_key.setdefault(key, []).append(handle)
        self.opened += 1
        self._logger.debug("Opened subscription #%s key=%s", handle.serial, key)
        return handle

    def publish(self, key: str, value: T | None) -> None:
        for handle in self.handles(key):
            self.deliver(handle, value)

    def fail(self, key: str, exc: BaseException) -> None:
        for handle in self.handles(key):
            try:
                handle.fail(exc)
            except StaleCallback as stale:
                self._logger.debug("%s", stale)

    def deliver(self, handle: Subscription[T], value: T | None) -> None:
        """Deliver to one handle, discarding the value if it was cancelled meanwhile."""
        try:
            handle.deliver(value)
        except StaleCallback as stale:
            self._logger.debug("%s", stale)


class LiveDocument(Generic[T]):
    """One live record, identified by ``key`` within ``source``.

    Keeps the latest delivered value and enforces the no-delivery-after-cancel
    rule on its own, so a misbehaving source cannot leak late callbacks into
    the consumer.
    """

    def __init__(self, source: LiveSource[T], key: str, *, logger: logging.Logger | None = None) -> None:
        self._source = source
        self.key = key
        self._logger = logger or _logger
        self._cancel: Cancel | None = None
        self._active = False
        self._closed = False
        self._value: T | None = None
        self._delivered = False

    def __repr__(self) -> str:
        return f"<LiveDocument key={self.key!r} active={self._active}>"

    @property
    def active(self) -> bool:
        return self._active

    @property
    def value(self) -> T | None:
        """Latest delivered value (``None`` before the first delivery)."""
        return self._value

    @property
    def has_value(self) -> bool:
        return self._delivered

    def open(
        self,
        on_change: Callable[[T | None], None],
        on_error: Callable[[SubscriptionError], None] | None = None,
    ) -> None:
        """Start delivering. A document can be opened once."""
        if self._active or self._closed:
            raise RuntimeError(f"LiveDocument {self.key!r} was already opened")
        self._active = True

        def _changed(value: T | None) -> None:
            if not self._active:
                self._logger.debug("Discarding late delivery for cancelled document key=%s", self.key)
                return
            self._value = value
            self._delivered = True
            on_change(value)

        def _failed(exc: BaseException) -> None:
            if not self._active:
                self._logger.debug("Discarding late error for cancelled document key=%s", self.key)
                return
            if isinstance(exc, SubscriptionError):
                error = exc
            else:
                error = SubscriptionError(f"Feed for {self.key!r} failed: {exc}", key=self.key)
                error.__cause__ = exc
            self._logger.warning("Live document %s failed: %s", self.key, error)
            if on_error is not None:
                on_error(error)

        try:
            cancel = self._source.subscribe(self.key, _changed, _failed)
        except Exception as exc:
            # Subscribing itself failed: nothing is open, report it like a feed error.
            _failed(exc)
            self._active = False
            self._closed = True
            return
        if self._closed:
            # Cancelled from inside the initial synchronous delivery.
            cancel()
            return
        self._cancel = cancel

    def cancel(self) -> None:
        """Stop delivering. Idempotent."""
        if self._closed:
            return
        self._active = False
        self._closed = True
        cancel = self._cancel
        self._cancel = None
        if cancel is not None:
            cancel()
