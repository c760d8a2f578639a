"""Geocoding: place resolution, offline gazetteer and HTTP backend."""

from globalfam.geo.gazetteer import StaticGazetteer
from globalfam.geo.nominatim import NominatimLookup
from globalfam.geo.resolver import ChainedLookup, GeoResolver, build_geo_resolver, fallback_coordinates

__all__ = [
    "ChainedLookup",
    "GeoResolver",
    "NominatimLookup",
    "StaticGazetteer",
    "build_geo_resolver",
    "fallback_coordinates",
]
