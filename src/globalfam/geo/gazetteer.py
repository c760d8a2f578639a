"""Offline gazetteer of well-known cities."""

from __future__ import annotations

from globalfam.models.geo import LatLng

_CITIES: dict[str, tuple[float, float, str]] = {
    "new york": (40.7128, -74.0060, "united states"),
    "london": (51.5074, -0.1278, "united kingdom"),
    "tokyo": (35.6895, 139.6917, "japan"),
    "paris": (48.8566, 2.3522, "france"),
    "sydney": (-33.8688, 151.2093, "australia"),
    "berlin": (52.5200, 13.4050, "germany"),
    "madrid": (40.4168, -3.7038, "spain"),
    "rome": (41.9028, 12.4964, "italy"),
    "amsterdam": (52.3676, 4.9041, "netherlands"),
    "toronto": (43.6532, -79.3832, "canada"),
    "mexico city": (19.4326, -99.1332, "mexico"),
    "sao paulo": (-23.5505, -46.6333, "brazil"),
    "buenos aires": (-34.6037, -58.3816, "argentina"),
    "cairo": (30.0444, 31.2357, "egypt"),
    "lagos": (6.5244, 3.3792, "nigeria"),
    "nairobi": (-1.2921, 36.8219, "kenya"),
    "mumbai": (19.0760, 72.8777, "india"),
    "singapore": (1.3521, 103.8198, "singapore"),
    "seoul": (37.5665, 126.9780, "south korea"),
    "los angeles": (34.0522, -118.2437, "united states"),
}


class StaticGazetteer:
    """Place lookup against a fixed table, for offline use.

    Matching is case-insensitive on the city. When a country is given it
    must match the table entry too.
    """

    def __init__(self, extra: dict[str, tuple[float, float, str]] | None = None) -> None:
        self._cities = dict(_CITIES)
        for name, entry in (extra or {}).items():
            self._cities[name.strip().lower()] = (entry[0], entry[1], entry[2].strip().lower())

    async def lookup(self, city: str, country: str | None) -> LatLng | None:
        entry = self._cities.get(city.strip().lower())
        if entry is None:
            return None
        lat, lng, known_country = entry
        if country and country.strip().lower() != known_country:
            return None
        return LatLng(lat=lat, lng=lng)
