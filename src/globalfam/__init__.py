"""globalfam - Live friend map aggregation and viewport resolution."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("globalfam")
except PackageNotFoundError:
    __version__ = "0+local"
from globalfam.aggregator import EntitySetAggregator
from globalfam.config import GlobalFamConfig
from globalfam.exceptions import (
    GlobalFamConfigError,
    GlobalFamError,
    GlobalFamTransportError,
    ResolutionFailure,
    StaleCallback,
    StatusPostError,
    SubscriptionError,
)
from globalfam.geo import GeoResolver, build_geo_resolver, fallback_coordinates
from globalfam.models import (
    PENDING,
    AggregatedEntity,
    Camera,
    DirectedViewRequest,
    EntitySnapshot,
    GeoPlace,
    LatLng,
    ProfileRecord,
    StatusDraft,
    StatusRecord,
)
from globalfam.orchestrator import MapOrchestrator
from globalfam.viewport import ViewportResolution, ViewportResolver, ambient_camera, resolve_viewport

__all__ = [
    "PENDING",
    "AggregatedEntity",
    "Camera",
    "DirectedViewRequest",
    "EntitySetAggregator",
    "EntitySnapshot",
    "GeoPlace",
    "GeoResolver",
    "GlobalFamConfig",
    "GlobalFamConfigError",
    "GlobalFamError",
    "GlobalFamTransportError",
    "LatLng",
    "MapOrchestrator",
    "ProfileRecord",
    "ResolutionFailure",
    "StaleCallback",
    "StatusDraft",
    "StatusPostError",
    "StatusRecord",
    "SubscriptionError",
    "ViewportResolution",
    "ViewportResolver",
    "__version__",
    "ambient_camera",
    "build_geo_resolver",
    "fallback_coordinates",
    "resolve_viewport",
]
