"""HTTP geocoding against a Nominatim compatible search API."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from globalfam._normalize import safe_float
from globalfam.config import GlobalFamConfig
from globalfam.exceptions import GlobalFamTransportError
from globalfam.models.geo import LatLng

_logger = logging.getLogger(__name__)

_SEARCH_ENDPOINT = "/search"


def parse_search_response(body: Any) -> LatLng | None:
    """Pick the first usable hit of a ``/search?format=json`` response."""
    if not isinstance(body, list):
        return None
    for hit in body:
        if not isinstance(hit, dict):
            continue
        lat = safe_float(hit.get("lat"))
        lng = safe_float(hit.get("lon"))
        if lat is None or lng is None:
            continue
        if -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0:
            return LatLng(lat=lat, lng=lng)
    return None


class NominatimLookup:
    """Structured city/country search.

    The caller owns the ``aiohttp.ClientSession``.
    """

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        *,
        base_url: str = "https://nominatim.openstreetmap.org",
        user_agent: str = "globalfam/0",
        timeout: float = 10.0,
    ) -> None:
        self._http = http_session
        self._base_url = base_url.rstrip("/")
        self._headers = {"user-agent": user_agent, "accept": "application/json"}
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_config(cls, http_session: aiohttp.ClientSession, config: GlobalFamConfig) -> NominatimLookup:
        return cls(
            http_session,
            base_url=config.geocoder_base_url,
            user_agent=config.geocoder_user_agent,
            timeout=config.geocoder_timeout,
        )

    async def lookup(self, city: str, country: str | None) -> LatLng | None:
        params = {"city": city, "format": "json", "limit": "1"}
        if country:
            params["country"] = country
        url = f"{self._base_url}{_SEARCH_ENDPOINT}"

        _logger.debug("GET %s city=%s country=%s", url, city, country)

        try:
            async with self._http.get(url, params=params, headers=self._headers, timeout=self._timeout) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise GlobalFamTransportError(
                        f"HTTP {resp.status} from {_SEARCH_ENDPOINT}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=_SEARCH_ENDPOINT,
                    )
        except GlobalFamTransportError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise GlobalFamTransportError(
                f"Request to {_SEARCH_ENDPOINT} failed: {exc}",
                endpoint=_SEARCH_ENDPOINT,
            ) from exc

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise GlobalFamTransportError(
                f"Invalid JSON from {_SEARCH_ENDPOINT}: {text[:200]}",
                endpoint=_SEARCH_ENDPOINT,
            ) from exc

        return parse_search_response(body)
