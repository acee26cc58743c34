"""HTTP geocoding backends.

Each backend implements the core GeocodingBackend port over plain urllib
requests run in a worker thread. Transport and API errors are logged and
reported as ``None`` so the router can fall back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional

from core.geocoding import with_locality
from core.models import Address, Coordinates

LOGGER = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
GOOGLE_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"
MAPBOX_GEOCODE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"

# Sofia city center, used to bias Mapbox results.
SOFIA_PROXIMITY = "23.3219,42.6977"


def _get_json(url: str, timeout: float = 10) -> Optional[dict]:
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        LOGGER.error("Geocoding API error %s: %s", e.code, body[:500])
    except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as e:
        LOGGER.error("Geocoding request failed: %s", e)
    return None


def decode_polyline(encoded: str) -> list[Coordinates]:
    """Decode a Google encoded polyline (precision 5)."""

    coordinates: list[Coordinates] = []
    index = lat = lng = 0
    while index < len(encoded):
        deltas = []
        for _ in range(2):
            shift = result = 0
            while True:
                byte = ord(encoded[index]) - 63
                index += 1
                result |= (byte & 0x1F) << shift
                shift += 5
                if byte < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lng += deltas[1]
        coordinates.append(Coordinates(lat=lat / 1e5, lng=lng / 1e5))
    return coordinates


class GoogleGeocodingBackend:
    """Google Geocoding API restricted to one locality."""

    name = "google_geocoding"

    def __init__(
        self,
        api_key: str,
        locality_name: str = "София",
        components: str = "locality:Sofia|country:BG",
        timeout: float = 10,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._locality_name = locality_name
        self._components = components

    def _geocode_url(self, query: str) -> str:
        params = {
            "address": with_locality(query, self._locality_name),
            "components": self._components,
            "key": self._api_key,
        }
        return f"{GOOGLE_GEOCODE_URL}?{urllib.parse.urlencode(params)}"

    async def geocode(self, query: str) -> Optional[Address]:
        data = await asyncio.to_thread(_get_json, self._geocode_url(query), self._timeout)
        if not data or data.get("status") != "OK" or not data.get("results"):
            if data and data.get("status") not in (None, "OK", "ZERO_RESULTS"):
                LOGGER.warning("Google geocoding status %s for %r", data.get("status"), query)
            return None
        result = data["results"][0]
        location = result["geometry"]["location"]
        return Address(
            original_text=query,
            formatted_address=result.get("formatted_address", query),
            coordinates=Coordinates(lat=float(location["lat"]), lng=float(location["lng"])),
        )

    def intersection_query(self, street: str, cross_street: str) -> str:
        """``"Street A, <locality> & Street B, <locality>"``."""

        return " & ".join(with_locality(part.strip(), self._locality_name) for part in (street, cross_street))

    async def geocode_intersection(self, street: str, cross_street: str) -> Optional[Coordinates]:
        address = await self.geocode(self.intersection_query(street, cross_street))
        return address.coordinates if address else None

    async def street_path(
        self, street: str, start: Coordinates, end: Coordinates
    ) -> Optional[list[Coordinates]]:
        return None


class GoogleDirectionsBackend(GoogleGeocodingBackend):
    """Geocoding plus street paths from the Directions API polyline."""

    name = "google_directions"

    def _directions_url(self, start: Coordinates, end: Coordinates) -> str:
        params = {
            "origin": f"{start.lat},{start.lng}",
            "destination": f"{end.lat},{end.lng}",
            "mode": "walking",
            "key": self._api_key,
        }
        return f"{GOOGLE_DIRECTIONS_URL}?{urllib.parse.urlencode(params)}"

    async def street_path(
        self, street: str, start: Coordinates, end: Coordinates
    ) -> Optional[list[Coordinates]]:
        data = await asyncio.to_thread(_get_json, self._directions_url(start, end), self._timeout)
        if not data or data.get("status") != "OK" or not data.get("routes"):
            LOGGER.warning("No directions for %s between %s and %s", street, start, end)
            return None
        encoded = data["routes"][0].get("overview_polyline", {}).get("points")
        if not encoded:
            return None
        path = decode_polyline(encoded)
        return path if len(path) >= 2 else None


class MapboxGeocodingBackend:
    """Mapbox Places API biased to Sofia."""

    name = "mapbox_geocoding"

    def __init__(self, access_token: str, locality_name: str = "София", timeout: float = 10) -> None:
        self._access_token = access_token
        self._timeout = timeout
        self._locality_name = locality_name

    def _url(self, query: str, types: str) -> str:
        params = {
            "access_token": self._access_token,
            "types": types,
            "proximity": SOFIA_PROXIMITY,
            "country": "bg",
            "limit": 5,
        }
        path = MAPBOX_GEOCODE_URL.format(query=urllib.parse.quote(with_locality(query, self._locality_name)))
        return f"{path}?{urllib.parse.urlencode(params)}"

    async def geocode(self, query: str) -> Optional[Address]:
        # Intersections are often tagged as POIs, so try those first.
        for types in ("poi,address", "address"):
            data = await asyncio.to_thread(_get_json, self._url(query, types), self._timeout)
            features = (data or {}).get("features") or []
            if not features:
                continue
            feature = features[0]
            lng, lat = feature["geometry"]["coordinates"][:2]
            return Address(
                original_text=query,
                formatted_address=feature.get("place_name", query),
                coordinates=Coordinates(lat=float(lat), lng=float(lng)),
            )
        LOGGER.warning("No Mapbox results for %r", query)
        return None

    async def geocode_intersection(self, street: str, cross_street: str) -> Optional[Coordinates]:
        address = await self.geocode(f"{street} и {cross_street}")
        return address.coordinates if address else None

    async def street_path(
        self, street: str, start: Coordinates, end: Coordinates
    ) -> Optional[list[Coordinates]]:
        return None


def build_geocoding_backend(name: str, api_key: str, locality_name: str = "София", timeout: float = 10):
    """Instantiate the backend configured under ``geocoding.backend``."""

    if name == GoogleGeocodingBackend.name:
        return GoogleGeocodingBackend(api_key, locality_name, timeout=timeout)
    if name == GoogleDirectionsBackend.name:
        return GoogleDirectionsBackend(api_key, locality_name, timeout=timeout)
    if name == MapboxGeocodingBackend.name:
        return MapboxGeocodingBackend(api_key, locality_name, timeout=timeout)
    raise ValueError(f"Unknown geocoding backend: {name}")
