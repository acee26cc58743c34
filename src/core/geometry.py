"""Planar and great-circle geometry helpers for GeoJSON features.

Street sections are short (hundreds of meters), so buffering works in a
local equirectangular projection centered on the line. Distances that are
reported to users use the haversine formula.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional, Sequence

from core.models import COORDINATE_PRECISION, Coordinates

LOGGER = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000.0
# Below this dot product between adjacent normals the miter is clamped.
_MIN_MITER_COS = 0.25
_EPSILON = 1e-12

Point2D = tuple[float, float]


def haversine_distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in meters."""

    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class _LocalProjection:
    """Equirectangular projection in meters around an origin."""

    def __init__(self, origin: Coordinates) -> None:
        self._origin = origin
        self._scale_x = math.cos(math.radians(origin.lat)) * math.pi * EARTH_RADIUS_METERS / 180
        self._scale_y = math.pi * EARTH_RADIUS_METERS / 180

    def forward(self, lng: float, lat: float) -> Point2D:
        return (
            (lng - self._origin.lng) * self._scale_x,
            (lat - self._origin.lat) * self._scale_y,
        )

    def inverse(self, x: float, y: float) -> list[float]:
        return [
            round(self._origin.lng + x / self._scale_x, COORDINATE_PRECISION),
            round(self._origin.lat + y / self._scale_y, COORDINATE_PRECISION),
        ]


def round_position(position: Sequence[float]) -> list[float]:
    return [round(float(position[0]), COORDINATE_PRECISION), round(float(position[1]), COORDINATE_PRECISION)]


def round_geometry(geometry: dict) -> dict:
    """Return a copy of a geometry with every position rounded."""

    def _walk(value):
        if value and isinstance(value[0], (int, float)):
            return round_position(value)
        return [_walk(item) for item in value]

    return {"type": geometry["type"], "coordinates": _walk(geometry["coordinates"])}


# --- ring predicates -------------------------------------------------------


def signed_area(ring: Sequence[Sequence[float]]) -> float:
    """Shoelace area; positive for counter-clockwise rings."""

    total = 0.0
    for index in range(len(ring) - 1):
        x1, y1 = ring[index][0], ring[index][1]
        x2, y2 = ring[index + 1][0], ring[index + 1][1]
        total += x1 * y2 - x2 * y1
    return total / 2


def _orientation(p: Sequence[float], q: Sequence[float], r: Sequence[float]) -> int:
    value = (q[1] - p[1]) * (r[0] - q[0]) - (q[0] - p[0]) * (r[1] - q[1])
    if abs(value) < _EPSILON:
        return 0
    return 1 if value > 0 else 2


def _on_segment(p: Sequence[float], q: Sequence[float], r: Sequence[float]) -> bool:
    return (
        min(p[0], r[0]) <= q[0] <= max(p[0], r[0])
        and min(p[1], r[1]) <= q[1] <= max(p[1], r[1])
    )


def segments_intersect(
    p1: Sequence[float], q1: Sequence[float], p2: Sequence[float], q2: Sequence[float]
) -> bool:
    o1 = _orientation(p1, q1, p2)
    o2 = _orientation(p1, q1, q2)
    o3 = _orientation(p2, q2, p1)
    o4 = _orientation(p2, q2, q1)
    if o1 != o2 and o3 != o4:
        return True
    if o1 == 0 and _on_segment(p1, p2, q1):
        return True
    if o2 == 0 and _on_segment(p1, q2, q1):
        return True
    if o3 == 0 and _on_segment(p2, p1, q2):
        return True
    if o4 == 0 and _on_segment(p2, q1, q2):
        return True
    return False


def ring_self_intersects(ring: Sequence[Sequence[float]]) -> bool:
    """Check a closed ring for crossings between non-adjacent edges."""

    edges = len(ring) - 1
    if edges < 3:
        return True
    for i in range(edges):
        for j in range(i + 1, edges):
            # Adjacent edges share a vertex by construction.
            if j == i + 1 or (i == 0 and j == edges - 1):
                continue
            if segments_intersect(ring[i], ring[i + 1], ring[j], ring[j + 1]):
                return True
    return False


def _convex_hull(points: Iterable[Point2D]) -> list[Point2D]:
    """Monotone chain hull, counter-clockwise, not closed."""

    unique = sorted(set(points))
    if len(unique) <= 2:
        return unique

    def cross(o: Point2D, a: Point2D, b: Point2D) -> float:
        return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])

    lower: list[Point2D] = []
    for point in unique:
        while len(lower) >= 2 and cross(lower[-2], lower[-1], point) <= 0:
            lower.pop()
        lower.append(point)
    upper: list[Point2D] = []
    for point in reversed(unique):
        while len(upper) >= 2 and cross(upper[-2], upper[-1], point) <= 0:
            upper.pop()
        upper.append(point)
    return lower[:-1] + upper[:-1]


# --- buffering -------------------------------------------------------------


def _canonical_line(positions: Sequence[Sequence[float]]) -> list[Point2D]:
    """Drop repeated vertices and orient the line independently of input order."""

    line: list[Point2D] = []
    for position in positions:
        point = (round(float(position[0]), COORDINATE_PRECISION), round(float(position[1]), COORDINATE_PRECISION))
        if not line or line[-1] != point:
            line.append(point)
    reversed_line = list(reversed(line))
    return min(line, reversed_line)


def _unit_normal(a: Point2D, b: Point2D) -> Point2D:
    dx, dy = b[0] - a[0], b[1] - a[1]
    length = math.hypot(dx, dy)
    return (-dy / length, dx / length)


def _offset_vectors(points: list[Point2D], distance: float) -> list[Point2D]:
    """Mitered offset vector (to the left) for every vertex."""

    normals = [_unit_normal(points[i], points[i + 1]) for i in range(len(points) - 1)]
    offsets = [(normals[0][0] * distance, normals[0][1] * distance)]
    for before, after in zip(normals, normals[1:]):
        mx, my = before[0] + after[0], before[1] + after[1]
        length = math.hypot(mx, my)
        if length < _EPSILON:
            # Full U-turn; keep the incoming normal.
            offsets.append((before[0] * distance, before[1] * distance))
            continue
        mx, my = mx / length, my / length
        cos_half = max(mx * before[0] + my * before[1], _MIN_MITER_COS)
        offsets.append((mx * distance / cos_half, my * distance / cos_half))
    offsets.append((normals[-1][0] * distance, normals[-1][1] * distance))
    return offsets


def _drop_short_segments(points: list[Point2D], min_length: float) -> list[Point2D]:
    """Remove interior vertices closer than ``min_length`` to a kept neighbour."""

    if len(points) <= 2:
        return list(points)
    kept = [points[0]]
    for point in points[1:-1]:
        if math.dist(point, kept[-1]) >= min_length and math.dist(point, points[-1]) >= min_length:
            kept.append(point)
    kept.append(points[-1])
    return kept


def _simplify(points: list[Point2D], tolerance: float) -> list[Point2D]:
    """Douglas-Peucker simplification keeping both endpoints."""

    if len(points) <= 2:
        return list(points)
    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]
    while stack:
        start, end = stack.pop()
        farthest, index = 0.0, None
        for i in range(start + 1, end):
            distance = _segment_distance(points[i], points[start], points[end])
            if distance > farthest:
                farthest, index = distance, i
        if index is not None and farthest > tolerance:
            keep[index] = True
            stack.extend([(start, index), (index, end)])
    return [point for point, flag in zip(points, keep) if flag]


def _path_length(points: Sequence[Point2D]) -> float:
    return sum(math.dist(a, b) for a, b in zip(points, points[1:]))


def _outline(points: list[Point2D], distance: float) -> list[Point2D]:
    offsets = _offset_vectors(points, distance)
    left = [(p[0] + o[0], p[1] + o[1]) for p, o in zip(points, offsets)]
    right = [(p[0] - o[0], p[1] - o[1]) for p, o in zip(points, offsets)]
    return left + list(reversed(right))


def _closed_ring(outline: Sequence[Point2D], projection: _LocalProjection) -> list[list[float]]:
    ring = [projection.inverse(x, y) for x, y in outline]
    ring.append(list(ring[0]))
    return ring


def buffer_line(
    positions: Sequence[Sequence[float]], distance_meters: float
) -> Optional[list[list[float]]]:
    """Expand a ``[lng, lat]`` line into a closed counter-clockwise ring.

    Returns None when the line has fewer than two distinct vertices. The
    same vertices in either order produce the same ring.

    Vertices closer together than the buffer distance fold the inner side of
    a mitered outline over itself, so they are merged first. When the outline
    still crosses itself the path is simplified with a growing tolerance. A
    convex hull is only accepted when it stays close to the swept area of
    the path, so bends never fill in.
    """

    line = _canonical_line(positions)
    if len(line) < 2:
        return None

    mid = line[len(line) // 2]
    projection = _LocalProjection(Coordinates(lat=mid[1], lng=mid[0]))
    points = _drop_short_segments([projection.forward(lng, lat) for lng, lat in line], distance_meters)
    expected_area = (_path_length(points) + 2 * distance_meters) * 2 * distance_meters

    candidate = points
    tolerance = distance_meters
    hull_checked = False
    while True:
        outline = _outline(candidate, distance_meters)
        ring = _closed_ring(outline, projection)
        if len(candidate) <= 2 or not ring_self_intersects(ring):
            break
        if not hull_checked and tolerance > 4 * distance_meters:
            hull_checked = True
            hull = _convex_hull(outline)
            if len(hull) >= 3 and abs(signed_area(hull + [hull[0]])) <= 2 * expected_area:
                LOGGER.debug("Buffer outline self-intersects, using compact convex hull")
                ring = _closed_ring(hull, projection)
                break
        LOGGER.debug("Buffer outline self-intersects, simplifying with tolerance %.1f m", tolerance)
        candidate = _simplify(points, tolerance)
        tolerance *= 2

    if signed_area(ring) < 0:
        ring.reverse()
    return ring


def polygon_area_m2(ring: Sequence[Sequence[float]]) -> float:
    """Approximate ring area in square meters."""

    if len(ring) < 4:
        return 0.0
    origin = Coordinates(lat=ring[0][1], lng=ring[0][0])
    projection = _LocalProjection(origin)
    projected = [projection.forward(position[0], position[1]) for position in ring]
    return abs(signed_area(projected))


# --- features --------------------------------------------------------------


def point_feature(coordinates: Coordinates, properties: Optional[dict] = None) -> dict:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": coordinates.as_position()},
        "properties": dict(properties or {}),
    }


def street_feature(
    path: Sequence[Coordinates],
    buffer_meters: float,
    properties: Optional[dict] = None,
) -> dict:
    """Buffered polygon around a street path, or a Point when degenerate."""

    ring = buffer_line([point.as_position() for point in path], buffer_meters)
    if ring is None:
        return point_feature(path[0], properties)
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [ring]},
        "properties": dict(properties or {}),
    }


def _geometry_positions(geometry: dict) -> list[Sequence[float]]:
    geometry_type = geometry.get("type")
    coords = geometry.get("coordinates") or []
    if geometry_type == "Point":
        return [coords]
    if geometry_type == "LineString":
        return list(coords)
    if geometry_type == "Polygon":
        ring = list(coords[0]) if coords else []
        # Skip the closing vertex so it is not counted twice.
        if len(ring) > 1 and list(ring[0]) == list(ring[-1]):
            ring = ring[:-1]
        return ring
    return []


def feature_centroid(feature: dict) -> Optional[Coordinates]:
    positions = _geometry_positions(feature.get("geometry") or {})
    if not positions:
        return None
    lng = sum(float(position[0]) for position in positions) / len(positions)
    lat = sum(float(position[1]) for position in positions) / len(positions)
    return Coordinates(lat=lat, lng=lng)


def collection_centroid(collection: Optional[dict]) -> Optional[Coordinates]:
    """Arithmetic mean of every feature centroid."""

    if not collection:
        return None
    centroids = [
        centroid
        for centroid in (feature_centroid(feature) for feature in collection.get("features") or [])
        if centroid
    ]
    if not centroids:
        return None
    return Coordinates(
        lat=sum(point.lat for point in centroids) / len(centroids),
        lng=sum(point.lng for point in centroids) / len(centroids),
    ).rounded()


# --- containment and distance -----------------------------------------------


def point_in_ring(lng: float, lat: float, ring: Sequence[Sequence[float]]) -> bool:
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def _polygons_of(geometry: dict) -> list[list]:
    if geometry.get("type") == "Polygon":
        return [geometry.get("coordinates") or []]
    if geometry.get("type") == "MultiPolygon":
        return list(geometry.get("coordinates") or [])
    return []


def point_in_polygon(lng: float, lat: float, polygon: Sequence) -> bool:
    """Polygon given as rings; holes exclude."""

    if not polygon or not point_in_ring(lng, lat, polygon[0]):
        return False
    return not any(point_in_ring(lng, lat, hole) for hole in polygon[1:])


def _segment_distance(point: Point2D, a: Point2D, b: Point2D) -> float:
    dx, dy = b[0] - a[0], b[1] - a[1]
    length_sq = dx * dx + dy * dy
    if length_sq < _EPSILON:
        return math.hypot(point[0] - a[0], point[1] - a[1])
    t = ((point[0] - a[0]) * dx + (point[1] - a[1]) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(point[0] - (a[0] + t * dx), point[1] - (a[1] + t * dy))


def distance_to_feature(point: Coordinates, feature: dict) -> Optional[float]:
    """Meters from ``point`` to the nearest part of a feature geometry."""

    geometry = feature.get("geometry") or {}
    geometry_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if not coords:
        return None
    if geometry_type == "Point":
        return haversine_distance(point, Coordinates(lat=coords[1], lng=coords[0]))

    if geometry_type == "Polygon":
        if point_in_polygon(point.lng, point.lat, coords):
            return 0.0
        paths = [coords[0]]
    elif geometry_type == "LineString":
        paths = [coords]
    else:
        return None

    projection = _LocalProjection(point)
    best: Optional[float] = None
    for path in paths:
        projected = [projection.forward(position[0], position[1]) for position in path]
        if len(projected) == 1:
            projected.append(projected[0])
        for a, b in zip(projected, projected[1:]):
            distance = _segment_distance((0.0, 0.0), a, b)
            if best is None or distance < best:
                best = distance
    return best


def distance_to_collection(point: Coordinates, collection: Optional[dict]) -> Optional[float]:
    """Nearest distance over all features, falling back to the centroid."""

    if not collection:
        return None
    distances = [
        distance
        for distance in (distance_to_feature(point, feature) for feature in collection.get("features") or [])
        if distance is not None
    ]
    if distances:
        return min(distances)
    centroid = collection_centroid(collection)
    if centroid is None:
        return None
    return haversine_distance(point, centroid)


def _feature_intersects_polygon(feature: dict, polygon: Sequence) -> bool:
    geometry = feature.get("geometry") or {}
    positions = _geometry_positions(geometry)
    if any(point_in_polygon(position[0], position[1], polygon) for position in positions):
        return True
    if geometry.get("type") == "Polygon":
        own = geometry["coordinates"]
        if any(point_in_polygon(position[0], position[1], own) for position in polygon[0]):
            return True
    if len(positions) < 2:
        return False
    if geometry.get("type") == "Polygon":
        positions = geometry["coordinates"][0]
    edges = list(zip(positions, positions[1:]))
    boundary = polygon[0]
    for a, b in edges:
        for c, d in zip(boundary, boundary[1:]):
            if segments_intersect(a, b, c, d):
                return True
    return False


def feature_within_boundaries(feature: dict, boundaries: dict) -> bool:
    """True when the feature touches any polygon of the boundary collection."""

    for boundary in boundaries.get("features") or []:
        for polygon in _polygons_of(boundary.get("geometry") or {}):
            if _feature_intersects_polygon(feature, polygon):
                return True
    return False


def filter_by_boundaries(collection: dict, boundaries: dict) -> Optional[dict]:
    """Drop features outside the boundaries; None when nothing remains."""

    kept = [
        feature
        for feature in collection.get("features") or []
        if feature_within_boundaries(feature, boundaries)
    ]
    if not kept:
        return None
    return {**collection, "features": kept}


def is_within_boundaries(collection: dict, boundaries: dict) -> bool:
    return any(
        feature_within_boundaries(feature, boundaries)
        for feature in collection.get("features") or []
    )
