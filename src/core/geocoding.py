"""Geocoding router.

The router turns extracted location strings into coordinates through one
configured backend. Calls are issued one at a time with a fixed delay in
between; a failed lookup is logged and left out of the result so callers
can fall back.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from core.config import GeocodingConfig
from core.dedup import normalize_address_text
from core.geometry import haversine_distance, round_geometry
from core.ingest_errors import IngestErrorCollector, recorder_or_logger
from core.models import Address, Coordinates, ExtractedLocations, StreetSection
from core.ports import CadastreBackend, DocumentStore, GeocodingBackend

LOGGER = logging.getLogger(__name__)

GTFS_STOPS = "gtfs_stops"

_STANDALONE_NUMBER_RE = re.compile(r"^\d+[А-Яа-я]?$", re.IGNORECASE)
_NUMBER_MARKER_RE = re.compile(r"№\s*\d+|бл\.\s*\d+|номер\s+\d+", re.IGNORECASE)
_GENERIC_CITY_RE = re.compile(
    r"^(Sofia|София|Plovdiv|Пловдив)(,\s*(Bulgaria|България))?$", re.IGNORECASE
)


def intersection_key(street: str, cross_street: str) -> str:
    """Key of a street endpoint in the resolved-coordinates map."""

    return f"{street}||{cross_street}"


def has_house_number(endpoint: str) -> bool:
    """True for endpoints like "14", "25Б", "№ 26", "бл. 38" or "номер 3"."""

    if _STANDALONE_NUMBER_RE.match(endpoint.strip()):
        return True
    return bool(_NUMBER_MARKER_RE.search(endpoint))


def build_house_number_query(street: str, endpoint: str) -> str:
    """Address query for a house-number endpoint without repeating the street."""

    street = street.strip()
    endpoint = endpoint.strip()
    if street.lower() in endpoint.lower():
        return endpoint
    return f"{street} {endpoint}"


def with_locality(query: str, locality_name: str) -> str:
    """Append the locality name unless the query already mentions it."""

    if not locality_name or locality_name.lower() in query.lower():
        return query
    return f"{query}, {locality_name}"


def is_generic_city_address(formatted_address: str) -> bool:
    return bool(_GENERIC_CITY_RE.match(formatted_address.strip()))


def is_center_fallback(coordinates: Coordinates, center: Optional[Coordinates]) -> bool:
    """Detect geocoders answering with the city center for unknown places."""

    if center is None:
        return False
    return (
        round(coordinates.lat, 4) == round(center.lat, 4)
        and round(coordinates.lng, 4) == round(center.lng, 4)
    )


def deduplicate_addresses(addresses: Iterable[Address], threshold_meters: float = 50.0) -> list[Address]:
    """Keep the first of any addresses sharing text or lying within the threshold."""

    kept: dict[str, Address] = {}
    for address in addresses:
        normalized = normalize_address_text(address.original_text)
        if normalized in kept:
            continue
        if any(
            haversine_distance(address.coordinates, existing.coordinates) < threshold_meters
            for existing in kept.values()
        ):
            continue
        kept[normalized] = address
    return list(kept.values())


def filter_outliers(addresses: Sequence[Address], max_distance_meters: float) -> list[Address]:
    """Drop addresses farther than ``max_distance_meters`` from every other one."""

    if len(addresses) < 3:
        return list(addresses)
    kept: list[Address] = []
    for index, address in enumerate(addresses):
        nearest = min(
            haversine_distance(address.coordinates, other.coordinates)
            for other_index, other in enumerate(addresses)
            if other_index != index
        )
        if nearest > max_distance_meters:
            LOGGER.warning(
                "Dropping outlier %s (%.6f, %.6f), %.2f km from the rest",
                address.original_text,
                address.coordinates.lat,
                address.coordinates.lng,
                nearest / 1000,
            )
            continue
        kept.append(address)
    return kept


def pre_resolved_coordinates(locations: ExtractedLocations) -> dict[str, Coordinates]:
    """Coordinates the extractor already supplied; these are never geocoded."""

    resolved: dict[str, Coordinates] = {}
    for pin in locations.pins:
        if pin.coordinates:
            resolved[pin.address] = pin.coordinates.rounded()
    for street in locations.streets:
        if street.from_coordinates:
            resolved[intersection_key(street.street, street.from_point)] = street.from_coordinates.rounded()
        if street.to_coordinates:
            resolved[intersection_key(street.street, street.to_point)] = street.to_coordinates.rounded()
    return resolved


def resolve_bus_stops(store: DocumentStore, stop_codes: Iterable[str]) -> list[Address]:
    """Look bus stop codes up in the GTFS stops collection."""

    codes = sorted({code.strip() for code in stop_codes if code and code.strip()})
    if not codes:
        return []
    found = {doc["_id"]: doc for doc in store.find_many(GTFS_STOPS, where={"_id": codes})}
    stops: list[Address] = []
    for code in codes:
        doc = found.get(code)
        if not doc:
            LOGGER.warning("Bus stop %s not found in GTFS data", code)
            continue
        stops.append(
            Address(
                original_text=code,
                formatted_address=doc.get("name") or code,
                coordinates=Coordinates(lat=float(doc["lat"]), lng=float(doc["lng"])).rounded(),
            )
        )
    return stops


@dataclass
class GeocodingResult:
    resolved: dict[str, Coordinates] = field(default_factory=dict)
    # Pin addresses left after dropping duplicates.
    addresses: list[Address] = field(default_factory=list)
    # Keys that came with the extraction and never hit a backend.
    pre_resolved: set[str] = field(default_factory=set)
    # Cadastral identifier to polygon rings.
    cadastral: dict[str, list] = field(default_factory=dict)


class GeocodingRouter:
    """Sequential, rate-limited access to one geocoding backend."""

    def __init__(
        self,
        backend: GeocodingBackend,
        config: GeocodingConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        center: Optional[Coordinates] = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._sleep = sleep
        self._center = center
        self._calls = 0

    @property
    def backend_name(self) -> str:
        return getattr(self._backend, "name", type(self._backend).__name__)

    async def _throttle(self) -> None:
        if self._calls:
            await self._sleep(self._config.delay_seconds)
        self._calls += 1

    async def _lookup_address(self, query: str) -> Optional[Address]:
        await self._throttle()
        try:
            address = await self._backend.geocode(query)
        except Exception:
            LOGGER.warning("Geocoding %r via %s raised", query, self.backend_name, exc_info=True)
            return None
        if address is None:
            return None
        if is_generic_city_address(address.formatted_address) or is_center_fallback(
            address.coordinates, self._center
        ):
            LOGGER.warning("Geocoder returned a city-level result for %r, ignoring", query)
            return None
        return address

    async def resolve_addresses(self, queries: Sequence[str]) -> list[Address]:
        """Geocode free-text addresses; unresolved ones are omitted."""

        results: list[Address] = []
        seen: set[str] = set()
        for query in queries:
            if not query or query in seen:
                continue
            seen.add(query)
            address = await self._lookup_address(query)
            if address is None:
                LOGGER.warning("Failed to geocode address %r", query)
                continue
            results.append(
                Address(
                    original_text=query,
                    formatted_address=address.formatted_address,
                    coordinates=address.coordinates.rounded(),
                )
            )
        return results

    async def _lookup_intersection(self, street: str, cross_street: str) -> Optional[Coordinates]:
        await self._throttle()
        try:
            return await self._backend.geocode_intersection(street, cross_street)
        except Exception:
            LOGGER.warning(
                "Intersection %r / %r via %s raised", street, cross_street, self.backend_name, exc_info=True
            )
            return None

    async def resolve_street_endpoints(
        self,
        streets: Sequence[StreetSection],
        known: Optional[dict[str, Coordinates]] = None,
    ) -> dict[str, Coordinates]:
        """Resolve both endpoints of every street section.

        Keys follow :func:`intersection_key`. Endpoints already present in
        ``known`` are skipped, and each (street, endpoint) pair is looked up
        at most once.
        """

        known = known or {}
        resolved: dict[str, Coordinates] = {}
        pending: set[str] = set()
        for section in streets:
            for endpoint in (section.from_point, section.to_point):
                key = intersection_key(section.street, endpoint)
                if key in known or key in pending:
                    continue
                pending.add(key)
                if has_house_number(endpoint):
                    query = build_house_number_query(section.street, endpoint)
                    address = await self._lookup_address(query)
                    coordinates = address.coordinates if address else None
                else:
                    coordinates = await self._lookup_intersection(section.street, endpoint)
                if coordinates is None:
                    LOGGER.warning("Failed to resolve %s endpoint %r", section.street, endpoint)
                    continue
                resolved[key] = coordinates.rounded()
        return resolved

    async def street_path(
        self, section: StreetSection, start: Coordinates, end: Coordinates
    ) -> list[Coordinates]:
        """Path along the street between two endpoints; straight line on failure."""

        await self._throttle()
        try:
            path = await self._backend.street_path(section.street, start, end)
        except Exception:
            LOGGER.warning("Street path for %s via %s raised", section.street, self.backend_name, exc_info=True)
            path = None
        if not path or len(path) < 2:
            return [start, end]
        return [point.rounded() for point in path]

    async def resolve_cadastral_properties(self, identifiers: Sequence[str]) -> dict[str, list]:
        """Polygon rings per cadastral identifier, for backends that support it."""

        identifiers = [identifier for identifier in dict.fromkeys(identifiers) if identifier]
        if not identifiers:
            return {}
        if not hasattr(self._backend, "cadastral_geometry"):
            LOGGER.info(
                "Backend %s has no cadastre lookup, skipping %s cadastral properties",
                self.backend_name,
                len(identifiers),
            )
            return {}
        backend: CadastreBackend = self._backend  # type: ignore[assignment]

        resolved: dict[str, list] = {}
        for identifier in identifiers:
            await self._throttle()
            try:
                rings = await backend.cadastral_geometry(identifier)
            except Exception:
                LOGGER.warning("Cadastral lookup %r via %s raised", identifier, self.backend_name, exc_info=True)
                continue
            if not rings or not rings[0]:
                LOGGER.warning("Failed to resolve cadastral property %r", identifier)
                continue
            rings = round_geometry({"type": "Polygon", "coordinates": rings})["coordinates"]
            for ring in rings:
                if ring[0] != ring[-1]:
                    ring.append(list(ring[0]))
            if any(len(ring) < 4 for ring in rings):
                LOGGER.warning("Cadastral property %r has a degenerate polygon", identifier)
                continue
            resolved[identifier] = rings
        return resolved

    async def geocode_locations(
        self,
        locations: ExtractedLocations,
        errors: Optional[IngestErrorCollector] = None,
    ) -> GeocodingResult:
        """Resolve every pin and street endpoint of an extraction."""

        recorder = recorder_or_logger(errors)
        result = GeocodingResult()
        result.resolved.update(pre_resolved_coordinates(locations))
        result.pre_resolved = set(result.resolved)

        pin_queries = [pin.address for pin in locations.pins if pin.address not in result.resolved]
        geocoded: list[Address] = list(await self.resolve_addresses(pin_queries))

        endpoints = await self.resolve_street_endpoints(locations.streets, result.resolved)
        for key, coordinates in endpoints.items():
            geocoded.append(Address(original_text=key, formatted_address=key.replace("||", " ∩ "), coordinates=coordinates))

        # Endpoints the intersection lookup missed get one plain address attempt.
        missing: dict[str, list[str]] = {}
        for section in locations.streets:
            for endpoint in (section.from_point, section.to_point):
                key = intersection_key(section.street, endpoint)
                if key not in result.resolved and key not in endpoints:
                    missing.setdefault(endpoint, []).append(key)
        if missing:
            for address in await self.resolve_addresses(list(missing)):
                for key in missing[address.original_text]:
                    geocoded.append(
                        Address(original_text=key, formatted_address=address.formatted_address, coordinates=address.coordinates)
                    )

        kept = filter_outliers(geocoded, self._config.outlier_max_distance_meters)
        dropped = {address.original_text for address in geocoded} - {address.original_text for address in kept}
        for text in sorted(dropped):
            recorder.warn(f"Dropped outlier location {text}")
        for address in kept:
            result.resolved[address.original_text] = address.coordinates

        by_text = {address.original_text: address for address in kept}
        pin_addresses = [
            by_text.get(pin.address)
            or Address(original_text=pin.address, formatted_address=pin.address, coordinates=result.resolved[pin.address])
            for pin in locations.pins
            if pin.address in result.resolved
        ]
        result.addresses = deduplicate_addresses(pin_addresses, self._config.duplicate_distance_meters)
        if len(result.addresses) < len(pin_addresses):
            LOGGER.info("Merged %s duplicate pins", len(pin_addresses) - len(result.addresses))

        result.cadastral = await self.resolve_cadastral_properties(
            [prop.identifier for prop in locations.cadastral_properties]
        )
        LOGGER.info(
            "Geocoded %s of %s locations via %s",
            len(result.resolved) + len(result.cadastral),
            len(locations.pins) + 2 * len(locations.streets) + len(locations.cadastral_properties),
            self.backend_name,
        )
        return result
