"""In-process implementations of the collaborator interfaces.

Used for local runs, demos and tests. Delivery is synchronous by default;
with ``deferred=True`` every delivery is queued on the event loop, which
reproduces the interleaving of a networked store (including deliveries
still in flight when a subscriber cancels).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Generic, TypeVar

from globalfam.exceptions import StatusPostError
from globalfam.live.document import Subscription, SubscriptionRegistry
from globalfam.models.status import StatusDraft, StatusRecord
from globalfam.sources import Cancel, ErrorCallback

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class MemoryDocumentSource(Generic[T]):
    """Dictionary-backed live document store.

    Parameters
    ----------
    deferred : bool
        Queue deliveries with ``loop.call_soon`` instead of calling back
        inline.
    deliver_missing : bool
        Deliver ``None`` to new subscribers of absent keys. When ``False``
        such subscribers hear nothing until the document is first written.
    loop : asyncio.AbstractEventLoop or None
        Loop used for deferred delivery; defaults to the running loop.
    """

    def __init__(
        self,
        *,
        deferred: bool = False,
        deliver_missing: bool = True,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or _logger
        self._documents: dict[str, T] = {}
        self._registry: SubscriptionRegistry[T] = SubscriptionRegistry(logger=self._logger)
        self._deferred = deferred
        self._deliver_missing = deliver_missing
        self._loop = loop

    # ------------------------------------------------------------------
    # Instrumentation
    # ------------------------------------------------------------------

    @property
    def open_count(self) -> int:
        return self._registry.open_count

    @property
    def opened(self) -> int:
        return self._registry.opened

    @property
    def closed(self) -> int:
        return self._registry.closed

    def open_keys(self) -> list[str]:
        return self._registry.keys()

    # ------------------------------------------------------------------
    # Source interface
    # ------------------------------------------------------------------

    def subscribe(
        self,
        key: str,
        on_change: Callable[[T | None], None],
        on_error: ErrorCallback | None = None,
    ) -> Cancel:
        handle = self._registry.open(key, on_change, on_error)
        if key in self._documents or self._deliver_missing:
            value = self._documents.get(key)
            self._dispatch(lambda: self._registry.deliver(handle, value))
        return handle.cancel

    async def read(self, key: str) -> T | None:
        return self._documents.get(key)

    # ------------------------------------------------------------------
    # Store side
    # ------------------------------------------------------------------

    def get(self, key: str) -> T | None:
        return self._documents.get(key)

    def put(self, key: str, value: T) -> None:
        self._documents[key] = value
        self._fan_out(key, value)

    def delete(self, key: str) -> None:
        self._documents.pop(key, None)
        self._fan_out(key, None)

    def fail(self, key: str, exc: BaseException) -> None:
        """Report a feed error to every current subscriber of *key*."""
        handles = self._registry.handles(key)

        def _run() -> None:
            for handle in handles:
                self._fail_one(handle, exc)

        self._dispatch(_run)

    def _fan_out(self, key: str, value: T | None) -> None:
        # Handles are captured now; one cancelled before a deferred run is
        # dropped by the registry as a stale callback.
        handles = self._registry.handles(key)

        def _run() -> None:
            for handle in handles:
                self._registry.deliver(handle, value)

        self._dispatch(_run)

    def _fail_one(self, handle: Subscription[T], exc: BaseException) -> None:
        if not handle.active:
            self._logger.debug("Dropping error for cancelled subscription #%s", handle.serial)
            return
        handle.fail(exc)

    def _dispatch(self, fn: Callable[[], None]) -> None:
        if not self._deferred:
            fn()
            return
        loop = self._loop or asyncio.get_running_loop()
        loop.call_soon(fn)


class MemoryStatusSource(MemoryDocumentSource[StatusRecord]):
    """Latest-status-per-owner store with an append-only history."""

    def __init__(
        self,
        *,
        deferred: bool = False,
        deliver_missing: bool = True,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(deferred=deferred, deliver_missing=deliver_missing, loop=loop, logger=logger)
        self._history: dict[str, list[StatusRecord]] = {}
        self.fail_appends: BaseException | None = None

    async def append(self, draft: StatusDraft) -> str:
        if self.fail_appends is not None:
            raise StatusPostError(
                f"Failed to post status for {draft.owner_id}: {self.fail_appends}",
                owner_id=draft.owner_id,
            ) from self.fail_appends
        record = StatusRecord(
            id=uuid.uuid4().hex,
            owner_id=draft.owner_id,
            text=draft.text,
            posted_at=datetime.now(UTC),
            location=draft.location,
        )
        self._history.setdefault(record.owner_id, []).append(record)
        self.put(record.owner_id, record)
        self._logger.debug("Status %s appended for owner=%s", record.id, record.owner_id)
        return record.id

    def history(self, owner_id: str) -> list[StatusRecord]:
        return list(self._history.get(owner_id, ()))


class MemoryIdentityProvider:
    """Identity provider driven by explicit sign-in/sign-out calls."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id = user_id
        self._subscribers: list[Callable[[str | None], None]] = []

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def subscribe(self, on_change: Callable[[str | None], None]) -> Cancel:
        self._subscribers.append(on_change)
        on_change(self._user_id)

        def _unsubscribe() -> None:
            self._subscribers = [cand for cand in self._subscribers if cand is not on_change]

        return _unsubscribe

    def sign_in(self, user_id: str) -> None:
        self._set(user_id)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, user_id: str | None) -> None:
        if user_id == self._user_id:
            return
        self._user_id = user_id
        for callback in list(self._subscribers):
            callback(user_id)
