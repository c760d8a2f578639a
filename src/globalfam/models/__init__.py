"""Data models for live map documents and derived state."""

from globalfam.models._base import GlobalFamBaseModel, Timestamp
from globalfam.models.entity import PENDING, AggregatedEntity, EntitySnapshot, ProfileState
from globalfam.models.geo import GeoPlace, LatLng
from globalfam.models.profile import ProfileRecord
from globalfam.models.status import STATUS_MAX_LENGTH, StatusDraft, StatusRecord
from globalfam.models.viewport import Camera, DirectedViewRequest

__all__ = [
    "PENDING",
    "STATUS_MAX_LENGTH",
    "AggregatedEntity",
    "Camera",
    "DirectedViewRequest",
    "EntitySnapshot",
    "GeoPlace",
    "GlobalFamBaseModel",
    "LatLng",
    "ProfileRecord",
    "ProfileState",
    "StatusDraft",
    "StatusRecord",
    "Timestamp",
]
