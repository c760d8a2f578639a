"""Session wiring of the live map.

One :class:`MapOrchestrator` serves one consumer (a rendering layer). It
runs at most one session at a time; switching identity tears the previous
session down completely before the next one subscribes to anything.

Consumers see two independent streams: the entity snapshot (markers and
friend cards) and the camera (map position).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

from pydantic import ValidationError

from globalfam.aggregator import EntitySetAggregator
from globalfam.config import GlobalFamConfig
from globalfam.exceptions import StatusPostError, SubscriptionError
from globalfam.geo.resolver import GeoResolver, build_geo_resolver
from globalfam.live.document import LiveDocument
from globalfam.live.feeds import FriendListFeed
from globalfam.live.observable import Observable
from globalfam.models.entity import EntitySnapshot
from globalfam.models.geo import GeoPlace, LatLng
from globalfam.models.profile import ProfileRecord
from globalfam.models.status import StatusDraft, StatusRecord
from globalfam.models.viewport import Camera, DirectedViewRequest
from globalfam.sources import Cancel, IdentityProvider, LiveSource, ProfileSource, StatusSource
from globalfam.viewport import ViewportResolver

_logger = logging.getLogger(__name__)


class _Session:
    """Everything that lives exactly as long as one signed-in identity."""

    def __init__(self, user_id: str, generation: int, aggregator: EntitySetAggregator) -> None:
        self.user_id = user_id
        self.generation = generation
        self.aggregator = aggregator
        self.own_profile: LiveDocument[ProfileRecord] | None = None
        self.own_status: LiveDocument[StatusRecord] | None = None
        self.unsubscribe_snapshot: Cancel | None = None

    def close(self) -> None:
        if self.unsubscribe_snapshot is not None:
            self.unsubscribe_snapshot()
            self.unsubscribe_snapshot = None
        self.aggregator.cancel()
        for document in (self.own_profile, self.own_status):
            if document is not None:
                document.cancel()


class MapOrchestrator:
    """Wires a session identity to an aggregator and a viewport resolver.

    Parameters
    ----------
    config : GlobalFamConfig
        Runtime configuration.
    profile_source : ProfileSource
        Profile documents, also used for the session user's own profile.
    status_source : StatusSource
        Latest status per user; used to post statuses too.
    root_source : LiveSource[list[str]] or None
        Friend-id list per session user. Defaults to the ``friends`` field
        of the user's own profile.
    geo_resolver : GeoResolver or None
        Place resolution. Defaults to the offline gazetteer with deterministic fallback.
    """

    def __init__(
        self,
        config: GlobalFamConfig,
        *,
        profile_source: ProfileSource,
        status_source: StatusSource,
        root_source: LiveSource[list[str]] | None = None,
        geo_resolver: GeoResolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._profiles = profile_source
        self._statuses = status_source
        self._root_source: LiveSource[list[str]] = root_source or FriendListFeed(profile_source)
        self._logger = logger or _logger
        self._geo = geo_resolver or build_geo_resolver(config, logger=self._logger)

        self._snapshot_stream: Observable[EntitySnapshot] = Observable("snapshot", logger=self._logger)
        self._camera_stream: Observable[Camera] = Observable("camera", logger=self._logger)
        self._viewport = ViewportResolver()
        self._session: _Session | None = None
        self._generation = 0
        self._snapshot = EntitySnapshot()
        self._own_profile: ProfileRecord | None = None
        self._history: deque[StatusRecord] = deque(maxlen=config.status_history_size)
        self._directed: DirectedViewRequest | None = None
        self._pinned = False
        self._lookups: set[asyncio.Task[Any]] = set()
        self._identity_cancel: Cancel | None = None
        self._disposed = False

    # ------------------------------------------------------------------
    # Consumer surface
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str | None:
        return self._session.user_id if self._session is not None else None

    @property
    def snapshot(self) -> EntitySnapshot:
        return self._snapshot

    @property
    def camera(self) -> Camera | None:
        return self._camera_stream.value

    @property
    def own_profile(self) -> ProfileRecord | None:
        return self._own_profile

    @property
    def recent_statuses(self) -> tuple[StatusRecord, ...]:
        """The session user's own statuses, most recent first."""
        return tuple(self._history)

    @property
    def aggregator(self) -> EntitySetAggregator | None:
        return self._session.aggregator if self._session is not None else None

    def on_snapshot_change(self, callback: Callable[[EntitySnapshot], None]) -> Cancel:
        return self._snapshot_stream.subscribe(callback)

    def on_camera_change(self, callback: Callable[[Camera], None]) -> Cancel:
        return self._camera_stream.subscribe(callback)

    def post_directed_view(self, request: DirectedViewRequest) -> None:
        """Jump the camera to *request*, once per token."""
        self._require_not_disposed()
        if request.token == self._viewport.last_consumed_token:
            self._logger.debug("Ignoring already consumed directed view token=%s", request.token)
            return
        self._directed = request
        self._refresh_camera(directed=True)

    def release_directed_view(self) -> None:
        """Return from a directed view to the camera framing all known points."""
        if not self._pinned:
            return
        self._pinned = False
        self._refresh_camera()

    def dispose(self) -> None:
        """End the session, detach from the identity provider and drop all consumers."""
        if self._disposed:
            return
        if self._identity_cancel is not None:
            self._identity_cancel()
            self._identity_cancel = None
        self._disposed = True
        self.end_session()
        self._snapshot_stream.close()
        self._camera_stream.close()
        self._logger.debug("Map orchestrator disposed")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def bind_identity(self, provider: IdentityProvider) -> Cancel:
        """Follow sign-in/sign-out of *provider*."""
        self._require_not_disposed()
        if self._identity_cancel is not None:
            self._identity_cancel()

        def _identity_changed(user_id: str | None) -> None:
            if self._disposed:
                return
            if user_id:
                self.start_session(user_id)
            else:
                self.end_session()

        cancel = provider.subscribe(_identity_changed)
        self._identity_cancel = cancel
        return cancel

    def start_session(self, user_id: str) -> None:
        """Start (or switch to) the session of *user_id*."""
        self._require_not_disposed()
        if self._session is not None and self._session.user_id == user_id:
            return
        self.end_session()

        self._generation += 1
        aggregator = EntitySetAggregator(
            user_id,
            root_source=self._root_source,
            profile_source=self._profiles,
            status_source=self._statuses,
            logger=self._logger,
        )
        session = _Session(user_id, self._generation, aggregator)
        self._session = session
        self._logger.debug("Session %s started (generation %d)", user_id, session.generation)

        session.own_profile = LiveDocument(self._profiles, user_id, logger=self._logger)
        session.own_profile.open(
            lambda profile: self._on_own_profile(session, profile),
            lambda error: self._on_own_feed_error(session, "profile", error),
        )
        session.own_status = LiveDocument(self._statuses, user_id, logger=self._logger)
        session.own_status.open(
            lambda status: self._on_own_status(session, status),
            lambda error: self._on_own_feed_error(session, "status", error),
        )

        session.unsubscribe_snapshot = aggregator.subscribe(lambda snapshot: self._on_snapshot(session, snapshot))
        aggregator.start()

    def end_session(self) -> None:
        """Tear down the current session, if any, and reset derived state."""
        session = self._session
        if session is None:
            return
        self._session = None
        session.close()
        for task in list(self._lookups):
            task.cancel()
        self._lookups.clear()
        self._own_profile = None
        self._history.clear()
        self._directed = None
        self._pinned = False
        self._viewport.reset()
        self._logger.debug("Session %s ended", session.user_id)
        if not self._disposed:
            self._snapshot = EntitySnapshot()
            self._snapshot_stream.emit(self._snapshot)
            self._refresh_camera()

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    async def post_status(self, text: str, location: GeoPlace | None = None) -> str:
        """Post a status as the session user and jump the map to it.

        Raises
        ------
        StatusPostError
            No session, invalid text, or the store rejected the write.
        """
        session = self._session
        if session is None:
            raise StatusPostError("You must be signed in to post a status")
        if location is None and self._own_profile is not None:
            location = self._own_profile.location
        try:
            draft = StatusDraft(owner_id=session.user_id, text=text, location=location)
        except ValidationError as exc:
            raise StatusPostError(f"Invalid status: {exc.errors()[0]['msg']}", owner_id=session.user_id) from exc
        if len(draft.text) > self._config.status_max_length:
            raise StatusPostError(
                f"Status must be {self._config.status_max_length} characters or less",
                owner_id=session.user_id,
            )

        try:
            status_id = await self._statuses.append(draft)
        except StatusPostError:
            raise
        except Exception as exc:
            raise StatusPostError(f"Failed to post status: {exc}", owner_id=session.user_id) from exc
        self._logger.debug("Status %s posted by %s", status_id, session.user_id)

        if draft.location is not None and self._session is session:
            center = await self._geo.resolve(draft.location)
            if center is not None and self._session is session and not self._disposed:
                self.post_directed_view(DirectedViewRequest(center=center, zoom=self._config.directed_zoom))
        return status_id

    # ------------------------------------------------------------------
    # Feed callbacks
    # ------------------------------------------------------------------

    def _on_snapshot(self, session: _Session, snapshot: EntitySnapshot) -> None:
        if self._session is not session:
            return
        self._snapshot = snapshot
        self._snapshot_stream.emit(snapshot)
        self._refresh_camera()

    def _on_own_profile(self, session: _Session, profile: ProfileRecord | None) -> None:
        if self._session is not session:
            return
        self._own_profile = profile
        self._refresh_camera()

    def _on_own_status(self, session: _Session, status: StatusRecord | None) -> None:
        if self._session is not session or status is None:
            return
        if any(existing.id == status.id for existing in self._history):
            return
        ordered = sorted([status, *self._history], key=lambda record: record.posted_at, reverse=True)
        self._history.clear()
        self._history.extend(ordered[: self._history.maxlen])

    def _on_own_feed_error(self, session: _Session, feed: str, error: SubscriptionError) -> None:
        if self._session is not session:
            return
        self._logger.warning("Own %s feed for %s failed: %s", feed, session.user_id, error)
        if feed == "profile":
            self._own_profile = None
            self._refresh_camera()

    # ------------------------------------------------------------------
    # Camera
    # ------------------------------------------------------------------

    def _places(self) -> list[GeoPlace]:
        places: list[GeoPlace] = []
        if self._own_profile is not None and self._own_profile.location is not None:
            places.append(self._own_profile.location)
        places.extend(place for _entity_id, place in self._snapshot.located_places())
        return places

    def _points(self) -> list[LatLng]:
        points: list[LatLng] = []
        for place in self._places():
            coordinates = self._geo.cached(place)
            if coordinates is not None:
                points.append(coordinates)
            elif place.needs_lookup:
                self._schedule_lookup(place)
        return points

    def _refresh_camera(self, *, directed: bool = False) -> None:
        if self._disposed:
            return
        if self._pinned and not directed:
            return
        points = self._points()
        resolution = self._viewport.resolve(points, self._directed if directed else None)
        if resolution.directed:
            self._pinned = True
        camera = resolution.camera
        if camera == self._camera_stream.value:
            return
        self._logger.debug("Camera -> %s zoom=%s (directed=%s)", camera.center, camera.zoom, resolution.directed)
        self._camera_stream.emit(camera)

    def _schedule_lookup(self, place: GeoPlace) -> None:
        session = self._session
        if session is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running loop; %s stays unplaced until resolved", place.label)
            return
        self._spawn(loop, self._resolve_and_refresh(session.generation, place))

    def _spawn(self, loop: asyncio.AbstractEventLoop, coro: Coroutine[Any, Any, None]) -> None:
        task = loop.create_task(coro)
        self._lookups.add(task)
        task.add_done_callback(self._lookups.discard)

    async def _resolve_and_refresh(self, generation: int, place: GeoPlace) -> None:
        await self._geo.resolve(place)
        if self._session is None or self._session.generation != generation:
            return
        self._refresh_camera()

    def _require_not_disposed(self) -> None:
        if self._disposed:
            raise RuntimeError("MapOrchestrator has been disposed")
