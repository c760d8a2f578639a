"""Latest-value streams published to consumers."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from typing import Generic, TypeVar

from globalfam.sources import Cancel

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """Holds the latest value and fans it out to subscribers.

    New subscribers receive the current value immediately (if one was
    emitted). A subscriber that raises is logged and does not prevent the
    others from being called.
    """

    def __init__(self, name: str, *, logger: logging.Logger | None = None) -> None:
        self._name = name
        self._logger = logger or _logger
        self._subscribers: list[Callable[[T], None]] = []
        self._value: T | None = None
        self._has_value = False
        self._pending: deque[T] = deque()
        self._emitting = False

    @property
    def value(self) -> T | None:
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Callable[[T], None], *, replay: bool = True) -> Cancel:
        self._subscribers.append(callback)
        if replay and self._has_value:
            self._call(callback, self._value)  # type: ignore[arg-type]

        def _unsubscribe() -> None:
            self._subscribers = [cand for cand in self._subscribers if cand is not callback]

        return _unsubscribe

    def emit(self, value: T) -> None:
        """Publish *value*.

        Emitting from inside a subscriber queues the new value; the fan-out
        of the current value stops and the queued one is delivered next, so
        every subscriber ends on the latest value.
        """
        self._pending.append(value)
        if self._emitting:
            return
        self._emitting = True
        try:
            while self._pending:
                current = self._pending.popleft()
                self._value = current
                self._has_value = True
                for callback in list(self._subscribers):
                    if self._pending:
                        break
                    self._call(callback, current)
        finally:
            self._emitting = False
            self._pending.clear()

    def clear(self) -> None:
        """Forget the current value without notifying."""
        self._value = None
        self._has_value = False

    def close(self) -> None:
        self._subscribers.clear()
        self.clear()

    def _call(self, callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception:
            self._logger.exception("%s subscriber raised", self._name)
