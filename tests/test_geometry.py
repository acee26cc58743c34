from __future__ import annotations

from core.geometry import (
    buffer_line,
    collection_centroid,
    distance_to_collection,
    filter_by_boundaries,
    haversine_distance,
    polygon_area_m2,
    ring_self_intersects,
    signed_area,
    street_feature,
)
from core.models import Coordinates

OBORISHTE_A = Coordinates(lat=42.6936, lng=23.3516)
OBORISHTE_B = Coordinates(lat=42.6933, lng=23.3550)


def _square(min_lng: float, min_lat: float, size: float) -> list[list[float]]:
    return [
        [min_lng, min_lat],
        [min_lng + size, min_lat],
        [min_lng + size, min_lat + size],
        [min_lng, min_lat + size],
        [min_lng, min_lat],
    ]


def test_buffer_is_independent_of_endpoint_order() -> None:
    forward = buffer_line([OBORISHTE_A.as_position(), OBORISHTE_B.as_position()], 8)
    backward = buffer_line([OBORISHTE_B.as_position(), OBORISHTE_A.as_position()], 8)

    assert forward == backward
    for ring in (forward, backward):
        assert ring[0] == ring[-1]
        assert not ring_self_intersects(ring)
        assert signed_area(ring) > 0


def test_buffer_area_matches_length_times_width() -> None:
    ring = buffer_line([OBORISHTE_A.as_position(), OBORISHTE_B.as_position()], 8)
    expected = haversine_distance(OBORISHTE_A, OBORISHTE_B) * 16
    assert abs(polygon_area_m2(ring) - expected) / expected < 0.02


def test_buffer_of_bent_line_does_not_self_intersect() -> None:
    path = [[23.3200, 42.6970], [23.3230, 42.6970], [23.3230, 42.6990], [23.3260, 42.6990]]
    ring = buffer_line(path, 8)
    assert ring is not None
    assert not ring_self_intersects(ring)
    assert ring == buffer_line(list(reversed(path)), 8)


def _offset(origin: Coordinates, east_m: float, north_m: float) -> list[float]:
    lat = origin.lat + north_m / 111195.0
    lng = origin.lng + east_m / (111195.0 * 0.7346)
    return [lng, lat]


def test_buffer_of_path_with_short_jog_follows_the_street() -> None:
    origin = Coordinates(lat=42.6900, lng=23.3200)
    # 500 m north, a 2 m jog, then 500 m east.
    path = [
        _offset(origin, 0, 0),
        _offset(origin, 0, 500),
        _offset(origin, 2, 502),
        _offset(origin, 502, 502),
    ]
    ring = buffer_line(path, 8)

    assert ring is not None
    assert not ring_self_intersects(ring)
    assert 14000 < polygon_area_m2(ring) < 20000

    collection = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [ring]}, "properties": {}}],
    }
    inside_corner = _offset(origin, 200, 300)
    distance = distance_to_collection(Coordinates(lat=inside_corner[1], lng=inside_corner[0]), collection)
    assert distance is not None and distance > 150


def test_buffer_of_zigzag_stays_near_the_street() -> None:
    origin = Coordinates(lat=42.6900, lng=23.3200)
    path = [_offset(origin, 0, 0)]
    for step in range(1, 41):
        # 20 m steps east with a 5 m sideways wobble.
        path.append(_offset(origin, step * 20, 5 if step % 2 else 0))
    ring = buffer_line(path, 8)

    assert ring is not None
    assert not ring_self_intersects(ring)
    assert polygon_area_m2(ring) < 2 * 800 * 16


def test_degenerate_street_becomes_point() -> None:
    feature = street_feature([OBORISHTE_A, OBORISHTE_A], 8, {"street": "ул. Оборище"})
    assert feature["geometry"] == {"type": "Point", "coordinates": [23.3516, 42.6936]}
    assert buffer_line([[23.3516, 42.6936]], 8) is None


def test_centroid_ignores_closing_vertex() -> None:
    collection = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [_square(0, 0, 2)]}}],
    }
    assert collection_centroid(collection) == Coordinates(lat=1.0, lng=1.0)


def test_centroid_averages_features() -> None:
    collection = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [23.32, 42.69]}},
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [23.34, 42.71]}},
        ],
    }
    assert collection_centroid(collection) == Coordinates(lat=42.7, lng=23.33)


def test_distance_is_zero_inside_polygon() -> None:
    collection = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [_square(23.32, 42.69, 0.01)]}}
        ],
    }
    assert distance_to_collection(Coordinates(lat=42.695, lng=23.325), collection) == 0.0
    outside = distance_to_collection(Coordinates(lat=42.695, lng=23.335), collection)
    assert outside is not None and 350 < outside < 460


def test_filter_by_boundaries_keeps_only_inside_features() -> None:
    boundaries = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [_square(23.2, 42.6, 0.3)]}}],
    }
    inside = {"type": "Feature", "geometry": {"type": "Point", "coordinates": [23.32, 42.69]}}
    outside = {"type": "Feature", "geometry": {"type": "Point", "coordinates": [24.75, 42.15]}}

    filtered = filter_by_boundaries({"type": "FeatureCollection", "features": [inside, outside]}, boundaries)
    assert filtered["features"] == [inside]
    assert filter_by_boundaries({"type": "FeatureCollection", "features": [outside]}, boundaries) is None


def test_polygon_crossing_boundary_edge_is_kept() -> None:
    boundaries = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [_square(0, 0, 1)]}}],
    }
    # A thin polygon crossing the square with no vertex inside it.
    crossing = {
        "type": "Feature",
        "geometry": {
            "type": "Polygon",
            "coordinates": [[[-1, 0.4], [2, 0.4], [2, 0.6], [-1, 0.6], [-1, 0.4]]],
        },
    }
    assert filter_by_boundaries({"type": "FeatureCollection", "features": [crossing]}, boundaries) is not None
