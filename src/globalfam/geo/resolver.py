"""Place to coordinate resolution.

A place with explicit coordinates never touches the network. A city-only
place is looked up once, memoized, and shared between concurrent callers.
A failed lookup degrades to a deterministic pseudo coordinate so one bad
place never stalls the map.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict

import aiohttp

from globalfam.config import GlobalFamConfig
from globalfam.exceptions import ResolutionFailure
from globalfam.geo.gazetteer import StaticGazetteer
from globalfam.geo.nominatim import NominatimLookup
from globalfam.models.geo import GeoPlace, LatLng
from globalfam.sources import PlaceLookup

_logger = logging.getLogger(__name__)

_PlaceKey = tuple[str, str]


def fallback_coordinates(city: str, country: str | None = None) -> LatLng:
    """Deterministic pseudo coordinate for a place that could not be geocoded.

    The same (case-insensitive) city and country always map to the same
    point inside the valid latitude/longitude ranges.
    """
    seed = f"{city.strip().casefold()}|{(country or '').strip().casefold()}"
    digest = int.from_bytes(hashlib.md5(seed.encode("utf-8"), usedforsecurity=False).digest()[:8], "big")
    lat = (digest % 180_000) / 1000.0 - 90.0
    lng = ((digest // 180_000) % 360_000) / 1000.0 - 180.0
    return LatLng(lat=lat, lng=lng)


def _place_key(place: GeoPlace) -> _PlaceKey | None:
    if not place.city:
        return None
    return place.city.strip().casefold(), (place.country or "").strip().casefold()


class ChainedLookup:
    """Try several backends in order; the first hit wins.

    A backend that raises is logged and skipped. If every backend raised,
    the last error is re-raised so the resolver records a failure.
    """

    def __init__(self, *backends: PlaceLookup) -> None:
        self._backends = backends

    async def lookup(self, city: str, country: str | None) -> LatLng | None:
        last_error: Exception | None = None
        answered = False
        for backend in self._backends:
            try:
                result = await backend.lookup(city, country)
            except Exception as exc:
                _logger.debug("Lookup backend %r failed for %s", backend, city, exc_info=True)
                last_error = exc
                continue
            answered = True
            if result is not None:
                return result
        if not answered and last_error is not None:
            raise last_error
        return None


class GeoResolver:
    """Resolve :class:`GeoPlace` values to coordinates.

    Parameters
    ----------
    backend : PlaceLookup or None
        Geocoding backend. ``None`` means offline: city-only places go
        straight to :func:`fallback_coordinates`.
    cache_size : int
        Number of resolved places kept (least recently used are evicted).
    """

    def __init__(
        self,
        backend: PlaceLookup | None = None,
        *,
        cache_size: int = 512,
        logger: logging.Logger | None = None,
    ) -> None:
        self._backend = backend
        self._cache_size = cache_size
        self._logger = logger or _logger
        self._cache: OrderedDict[_PlaceKey, LatLng] = OrderedDict()
        self._inflight: dict[_PlaceKey, asyncio.Task[LatLng]] = {}
        self.lookups = 0

    def cached(self, place: GeoPlace) -> LatLng | None:
        """Coordinates available without I/O: explicit or memoized."""
        coordinates = place.coordinates
        if coordinates is not None:
            return coordinates
        key = _place_key(place)
        if key is None:
            return None
        hit = self._cache.get(key)
        if hit is not None:
            self._cache.move_to_end(key)
        return hit

    def needs_lookup(self, place: GeoPlace) -> bool:
        return place.needs_lookup and self.cached(place) is None

    async def resolve(self, place: GeoPlace) -> LatLng | None:
        """Resolve *place*; ``None`` only when it has neither coordinates nor a city. Never raises."""
        coordinates = self.cached(place)
        if coordinates is not None:
            return coordinates
        key = _place_key(place)
        if key is None:
            return None

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup(key, place))
            self._inflight[key] = task
        # Shielded: a cancelled caller must not abort the lookup shared with others.
        return await asyncio.shield(task)

    def cancel_pending(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

    async def _lookup(self, key: _PlaceKey, place: GeoPlace) -> LatLng:
        city = place.city or ""
        try:
            result = await self._query_backend(city, place.country)
        finally:
            self._inflight.pop(key, None)
        self._remember(key, result)
        return result

    async def _query_backend(self, city: str, country: str | None) -> LatLng:
        if self._backend is None:
            return fallback_coordinates(city, country)

        self.lookups += 1
        try:
            result = await self._backend.lookup(city, country)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = ResolutionFailure(f"Lookup failed for {city!r}, {country!r}: {exc}", place=(city, country))
            self._logger.warning("%s; using fallback coordinates", failure)
            self._logger.debug("Lookup failure detail", exc_info=True)
            return fallback_coordinates(city, country)

        if result is None:
            self._logger.debug("No geocoding match for %r, %r; using fallback coordinates", city, country)
            return fallback_coordinates(city, country)
        return result

    def _remember(self, key: _PlaceKey, coordinates: LatLng) -> None:
        self._cache[key] = coordinates
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)


def build_geo_resolver(
    config: GlobalFamConfig,
    *,
    http_session: aiohttp.ClientSession | None = None,
    logger: logging.Logger | None = None,
) -> GeoResolver:
    """Resolver for *config*: gazetteer first, then the HTTP geocoder when enabled.

    Without an ``http_session`` (or with ``geocoder_enabled`` off) only the
    offline gazetteer is consulted before the fallback.
    """
    backends: list[PlaceLookup] = [StaticGazetteer()]
    if config.geocoder_enabled and http_session is not None:
        backends.append(NominatimLookup.from_config(http_session, config))
    return GeoResolver(ChainedLookup(*backends), cache_size=config.geocode_cache_size, logger=logger)
