"""Map camera resolution.

Precedence:

1. A directed view whose token differs from the last consumed token wins
   and is consumed.
2. Otherwise the ambient camera is computed from the points alone:
   no points gives the world view, one point is centered at
   :data:`SINGLE_POINT_ZOOM`, several points are framed by their bounding
   box with the zoom taken from :data:`ZOOM_STEPS`, never closer than
   :data:`SINGLE_POINT_ZOOM`.

The ambient camera depends only on the set of points, never on their
order or on any previous camera.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from globalfam.models.geo import GeoPlace, LatLng
from globalfam.models.viewport import Camera, DirectedViewRequest

_logger = logging.getLogger(__name__)

WORLD_CENTER = LatLng(lat=20.0, lng=0.0)
WORLD_ZOOM = 2.0
SINGLE_POINT_ZOOM = 10.0
MIN_ZOOM = 2.0
MAX_ZOOM = 12.0

#: ``(max span in degrees, zoom)``; the first row whose span is not
#: exceeded applies. Spans beyond the last row get :data:`MIN_ZOOM`.
ZOOM_STEPS: tuple[tuple[float, float], ...] = (
    (0.02, 12.0),
    (0.05, 11.0),
    (0.1, 10.0),
    (0.25, 9.0),
    (0.5, 8.0),
    (1.0, 7.0),
    (2.5, 6.0),
    (5.0, 5.0),
    (10.0, 4.0),
    (25.0, 3.0),
)

WORLD_CAMERA = Camera(center=WORLD_CENTER, zoom=WORLD_ZOOM)


@dataclass(frozen=True, slots=True)
class ViewportResolution:
    camera: Camera
    consumed_token: str | None
    directed: bool = False


def zoom_for_span(span: float) -> float:
    """Zoom for a bounding box whose larger side is *span* degrees."""
    for max_span, zoom in ZOOM_STEPS:
        if span <= max_span:
            return min(MAX_ZOOM, max(MIN_ZOOM, zoom))
    return MIN_ZOOM


def _coordinates(points: Iterable[GeoPlace | LatLng]) -> list[LatLng]:
    resolved: list[LatLng] = []
    for point in points:
        coordinates = point if isinstance(point, LatLng) else point.coordinates
        if coordinates is not None:
            resolved.append(coordinates)
    return resolved


def ambient_camera(points: Iterable[GeoPlace | LatLng]) -> Camera:
    """Camera framing every point that has coordinates."""
    coordinates = _coordinates(points)
    if not coordinates:
        return WORLD_CAMERA
    if len(coordinates) == 1:
        return Camera(center=coordinates[0], zoom=SINGLE_POINT_ZOOM)

    lats = [c.lat for c in coordinates]
    lngs = [c.lng for c in coordinates]
    south, north = min(lats), max(lats)
    west, east = min(lngs), max(lngs)
    center = LatLng(lat=(south + north) / 2.0, lng=(west + east) / 2.0)
    span = max(north - south, east - west)
    # Never closer than a lone point, so adding a point never zooms in.
    return Camera(center=center, zoom=min(SINGLE_POINT_ZOOM, zoom_for_span(span)))


def resolve_viewport(
    points: Iterable[GeoPlace | LatLng],
    directed: DirectedViewRequest | None,
    last_consumed_token: str | None,
) -> ViewportResolution:
    """Pure resolution step; see the module docstring for the precedence."""
    if directed is not None and directed.token != last_consumed_token:
        _logger.debug("Applying directed view token=%s", directed.token)
        return ViewportResolution(
            camera=Camera(center=directed.center, zoom=directed.zoom),
            consumed_token=directed.token,
            directed=True,
        )
    return ViewportResolution(camera=ambient_camera(points), consumed_token=last_consumed_token)


class ViewportResolver:
    """Stateful wrapper remembering the last consumed directed-view token."""

    def __init__(self) -> None:
        self._last_consumed_token: str | None = None

    @property
    def last_consumed_token(self) -> str | None:
        return self._last_consumed_token

    def resolve(
        self,
        points: Iterable[GeoPlace | LatLng],
        directed: DirectedViewRequest | None = None,
    ) -> ViewportResolution:
        resolution = resolve_viewport(points, directed, self._last_consumed_token)
        self._last_consumed_token = resolution.consumed_token
        return resolution

    def reset(self) -> None:
        self._last_consumed_token = None
