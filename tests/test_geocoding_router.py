from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from core.config import GeocodingConfig
from core.errors import NoGeometryError
from core.geocoding import (
    GeocodingRouter,
    build_house_number_query,
    deduplicate_addresses,
    filter_outliers,
    has_house_number,
    intersection_key,
)
from core.geojson import GeometrySynthesizer
from core.ingest_errors import IngestErrorCollector
from core.models import Address, CadastralProperty, Coordinates, ExtractedLocations, Pin, StreetSection, Timespan


class FakeBackend:
    name = "fake"

    def __init__(self, addresses: Optional[dict[str, Address]] = None, intersections: Optional[dict] = None) -> None:
        self._addresses = addresses or {}
        self._intersections = intersections or {}
        self.calls: list[tuple] = []

    async def geocode(self, query: str) -> Optional[Address]:
        self.calls.append(("geocode", query))
        return self._addresses.get(query)

    async def geocode_intersection(self, street: str, cross_street: str) -> Optional[Coordinates]:
        self.calls.append(("intersection", street, cross_street))
        return self._intersections.get((street, cross_street))

    async def street_path(self, street: str, start: Coordinates, end: Coordinates) -> Optional[list[Coordinates]]:
        self.calls.append(("path", street))
        return None


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _address(text: str, lat: float, lng: float, formatted: Optional[str] = None) -> Address:
    return Address(original_text=text, formatted_address=formatted or text, coordinates=Coordinates(lat=lat, lng=lng))


def test_house_number_detection() -> None:
    for endpoint in ["14", "25Б", "№ 26", "бл. 38", "номер 3"]:
        assert has_house_number(endpoint), endpoint
    for endpoint in ["ул. Шипка", "бул. Васил Левски", "Народно събрание"]:
        assert not has_house_number(endpoint), endpoint


def test_house_number_query_does_not_repeat_street() -> None:
    assert build_house_number_query("ул. Оборище", "14") == "ул. Оборище 14"
    assert build_house_number_query("ул. Оборище", "ул. Оборище № 26") == "ул. Оборище № 26"


def test_router_waits_between_calls_and_skips_duplicates() -> None:
    backend = FakeBackend({"a": _address("a", 42.69, 23.32), "b": _address("b", 42.70, 23.33)})
    sleep = RecordingSleep()
    router = GeocodingRouter(backend, GeocodingConfig(delay_seconds=0.2), sleep=sleep)

    results = asyncio.run(router.resolve_addresses(["a", "b", "a", "c"]))

    assert [address.original_text for address in results] == ["a", "b"]
    assert [call[1] for call in backend.calls] == ["a", "b", "c"]
    assert sleep.delays == [0.2, 0.2]


def test_generic_city_results_are_rejected() -> None:
    backend = FakeBackend({"непознато място": _address("непознато място", 42.6977, 23.3219, "София, България")})
    router = GeocodingRouter(backend, GeocodingConfig(), sleep=RecordingSleep())
    assert asyncio.run(router.resolve_addresses(["непознато място"])) == []


def test_city_center_fallback_is_rejected() -> None:
    backend = FakeBackend({"място": _address("място", 42.69771, 23.32189, "ул. Някоя")})
    router = GeocodingRouter(
        backend, GeocodingConfig(), sleep=RecordingSleep(), center=Coordinates(lat=42.6977, lng=23.3219)
    )
    assert asyncio.run(router.resolve_addresses(["място"])) == []


def test_shared_endpoints_are_resolved_once() -> None:
    backend = FakeBackend(
        intersections={
            ("ул. Шипка", "X"): Coordinates(lat=42.690, lng=23.330),
            ("ул. Шипка", "Y"): Coordinates(lat=42.691, lng=23.331),
            ("ул. Шипка", "Z"): Coordinates(lat=42.692, lng=23.332),
        }
    )
    router = GeocodingRouter(backend, GeocodingConfig(), sleep=RecordingSleep())
    streets = [
        StreetSection(street="ул. Шипка", from_point="X", to_point="Y"),
        StreetSection(street="ул. Шипка", from_point="Y", to_point="Z"),
    ]

    resolved = asyncio.run(router.resolve_street_endpoints(streets))

    assert len(backend.calls) == 3
    assert set(resolved) == {intersection_key("ул. Шипка", point) for point in "XYZ"}


def test_house_number_endpoint_is_geocoded_as_address() -> None:
    backend = FakeBackend(
        addresses={"ул. Оборище 14": _address("ул. Оборище 14", 42.6936, 23.3516)},
        intersections={("ул. Оборище", "ул. Шипка"): Coordinates(lat=42.6933, lng=23.3550)},
    )
    router = GeocodingRouter(backend, GeocodingConfig(), sleep=RecordingSleep())
    streets = [StreetSection(street="ул. Оборище", from_point="14", to_point="ул. Шипка")]

    resolved = asyncio.run(router.resolve_street_endpoints(streets))

    assert ("geocode", "ул. Оборище 14") in backend.calls
    assert resolved[intersection_key("ул. Оборище", "14")] == Coordinates(lat=42.6936, lng=23.3516)


def test_missed_intersection_falls_back_to_address_lookup() -> None:
    backend = FakeBackend(
        addresses={"Народно събрание": _address("Народно събрание", 42.6939, 23.3328)},
        intersections={("ул. Шипка", "ул. Оборище"): Coordinates(lat=42.6937, lng=23.3340)},
    )
    router = GeocodingRouter(backend, GeocodingConfig(), sleep=RecordingSleep())
    locations = ExtractedLocations(
        streets=(StreetSection(street="ул. Шипка", from_point="ул. Оборище", to_point="Народно събрание"),)
    )

    result = asyncio.run(router.geocode_locations(locations))

    assert intersection_key("ул. Шипка", "Народно събрание") in result.resolved
    assert ("geocode", "Народно събрание") in backend.calls


def test_outliers_are_dropped() -> None:
    addresses = [
        _address("a", 42.6900, 23.3300),
        _address("b", 42.6905, 23.3305),
        _address("c", 42.6910, 23.3300),
        _address("far", 42.7400, 23.4000),
    ]
    kept = filter_outliers(addresses, 1000)
    assert [address.original_text for address in kept] == ["a", "b", "c"]


def test_outlier_filter_needs_three_addresses() -> None:
    addresses = [_address("a", 42.69, 23.33), _address("far", 42.74, 23.40)]
    assert filter_outliers(addresses, 1000) == addresses


def test_addresses_are_deduplicated_by_text_and_distance() -> None:
    addresses = [
        _address("ул. Шипка 6", 42.6930, 23.3340),
        _address("УЛ.  Шипка 6", 42.6990, 23.3390),
        _address("ул. Шипка 8", 42.6932, 23.3341),
        _address("ул. Оборище 20", 42.6950, 23.3450),
    ]
    kept = deduplicate_addresses(addresses, 50)
    assert [address.original_text for address in kept] == ["ул. Шипка 6", "ул. Оборище 20"]


def test_pre_resolved_street_needs_no_backend_calls() -> None:
    backend = FakeBackend()
    config = GeocodingConfig()
    router = GeocodingRouter(backend, config, sleep=RecordingSleep())
    locations = ExtractedLocations(
        streets=(
            StreetSection(
                street="ул. Оборище",
                from_point="A",
                to_point="B",
                from_coordinates=Coordinates(lat=42.6936, lng=23.3516),
                to_coordinates=Coordinates(lat=42.6933, lng=23.3550),
            ),
        )
    )

    async def run():
        geocoded = await router.geocode_locations(locations)
        return await GeometrySynthesizer(router, config).build(locations, geocoded)

    collection = asyncio.run(run())

    assert backend.calls == []
    feature = collection["features"][0]
    assert feature["geometry"]["type"] == "Polygon"
    assert feature["properties"]["street"] == "ул. Оборище"
    assert feature["properties"]["feature_type"] == "street"


def test_pins_become_points_with_timespans() -> None:
    backend = FakeBackend({"ул. Граф Игнатиев 15, София": _address("x", 42.6913, 23.3262, "ул. Граф Игнатиев 15")})
    config = GeocodingConfig()
    router = GeocodingRouter(backend, config, sleep=RecordingSleep())
    locations = ExtractedLocations(pins=(Pin(address="ул. Граф Игнатиев 15, София"),))

    async def run():
        geocoded = await router.geocode_locations(locations)
        return await GeometrySynthesizer(router, config).build(locations, geocoded)

    collection = asyncio.run(run())

    assert collection["features"][0]["geometry"] == {"type": "Point", "coordinates": [23.3262, 42.6913]}
    assert collection["features"][0]["properties"]["address"] == "ул. Граф Игнатиев 15, София"


def test_nothing_geocoded_raises_no_geometry() -> None:
    errors = IngestErrorCollector()
    config = GeocodingConfig()
    router = GeocodingRouter(FakeBackend(), config, sleep=RecordingSleep())
    locations = ExtractedLocations(pins=(Pin(address="непознато място"),))

    async def run():
        geocoded = await router.geocode_locations(locations, errors)
        return await GeometrySynthesizer(router, config).build(locations, geocoded, errors=errors)

    with pytest.raises(NoGeometryError):
        asyncio.run(run())
    assert errors.entries[-1]["type"] == "error"


def test_partial_geocoding_is_recorded() -> None:
    errors = IngestErrorCollector()
    config = GeocodingConfig()
    backend = FakeBackend({"ул. Шипка 6": _address("ул. Шипка 6", 42.6930, 23.3340)})
    router = GeocodingRouter(backend, config, sleep=RecordingSleep())
    locations = ExtractedLocations(pins=(Pin(address="ул. Шипка 6"), Pin(address="непознато място")))

    async def run():
        geocoded = await router.geocode_locations(locations, errors)
        return await GeometrySynthesizer(router, config).build(locations, geocoded, errors=errors)

    collection = asyncio.run(run())

    assert len(collection["features"]) == 1
    assert errors.entries[-1]["text"].startswith("Partial geocoding: 1 locations failed")


class FakeCadastreBackend(FakeBackend):
    def __init__(self, parcels: dict[str, list]) -> None:
        super().__init__()
        self._parcels = parcels

    async def cadastral_geometry(self, identifier: str) -> Optional[list]:
        self.calls.append(("cadastre", identifier))
        return self._parcels.get(identifier)


def test_pins_within_duplicate_distance_become_one_feature() -> None:
    backend = FakeBackend(
        {
            "ул. Шипка 6": _address("ул. Шипка 6", 42.6930, 23.3340),
            "ул. Шипка 8": _address("ул. Шипка 8", 42.6932, 23.3341),
            "ул. Оборище 20": _address("ул. Оборище 20", 42.6950, 23.3450),
        }
    )
    config = GeocodingConfig()
    router = GeocodingRouter(backend, config, sleep=RecordingSleep())
    locations = ExtractedLocations(
        pins=(Pin(address="ул. Шипка 6"), Pin(address="ул. Шипка 8"), Pin(address="ул. Оборище 20"))
    )

    async def run():
        geocoded = await router.geocode_locations(locations)
        return geocoded, await GeometrySynthesizer(router, config).build(locations, geocoded)

    geocoded, collection = asyncio.run(run())

    assert [address.original_text for address in geocoded.addresses] == ["ул. Шипка 6", "ул. Оборище 20"]
    assert [feature["properties"]["address"] for feature in collection["features"]] == [
        "ул. Шипка 6",
        "ул. Оборище 20",
    ]


def test_cadastral_property_becomes_polygon_feature() -> None:
    parcel = [[[23.3300001, 42.6900001], [23.3310, 42.6900], [23.3310, 42.6908], [23.3300, 42.6908]]]
    backend = FakeCadastreBackend({"68134.203.1234": parcel})
    config = GeocodingConfig()
    router = GeocodingRouter(backend, config, sleep=RecordingSleep())
    locations = ExtractedLocations(
        cadastral_properties=(
            CadastralProperty(
                identifier="68134.203.1234",
                timespans=(Timespan(start="20.12.2025 08:00", end="20.12.2025 17:00"),),
            ),
        )
    )

    async def run():
        geocoded = await router.geocode_locations(locations)
        return await GeometrySynthesizer(router, config).build(locations, geocoded)

    collection = asyncio.run(run())

    assert backend.calls == [("cadastre", "68134.203.1234")]
    feature = collection["features"][0]
    assert feature["geometry"]["type"] == "Polygon"
    ring = feature["geometry"]["coordinates"][0]
    assert ring[0] == [23.33, 42.69]
    assert ring[0] == ring[-1]
    assert len(ring) == 5
    assert feature["properties"]["feature_type"] == "cadastral_property"
    assert feature["properties"]["identifier"] == "68134.203.1234"
    assert feature["properties"]["start_time"] == "20.12.2025 08:00"


def test_cadastral_property_without_cadastre_backend_has_no_geometry() -> None:
    errors = IngestErrorCollector()
    config = GeocodingConfig()
    router = GeocodingRouter(FakeBackend(), config, sleep=RecordingSleep())
    locations = ExtractedLocations(cadastral_properties=(CadastralProperty(identifier="68134.203.1234"),))

    async def run():
        geocoded = await router.geocode_locations(locations, errors)
        return await GeometrySynthesizer(router, config).build(locations, geocoded, errors=errors)

    with pytest.raises(NoGeometryError, match="cadastral property 68134.203.1234"):
        asyncio.run(run())
