"""Geometry synthesis: resolved locations to a GeoJSON FeatureCollection."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from core.config import GeocodingConfig
from core.errors import NoGeometryError
from core.geocoding import GeocodingResult, GeocodingRouter, intersection_key
from core.geometry import point_feature, ring_self_intersects, round_geometry, street_feature
from core.ingest_errors import IngestErrorCollector, recorder_or_logger
from core.models import Address, ExtractedLocations, Timespan

LOGGER = logging.getLogger(__name__)

SUPPORTED_GEOMETRIES = {"Point", "LineString", "Polygon"}


def _timespan_properties(timespans: Sequence[Timespan]) -> dict:
    first = timespans[0] if timespans else None
    return {
        "start_time": first.start if first else "",
        "end_time": first.end if first else "",
        "timespans": [span.to_document() for span in timespans],
    }


def feature_collection(features: list[dict]) -> dict:
    return {"type": "FeatureCollection", "features": features}


def load_boundaries(path: Optional[str]) -> Optional[dict]:
    """Read a boundary FeatureCollection; None when no path is configured."""

    if not path:
        return None
    with open(Path(path), "r", encoding="utf-8") as handle:
        boundaries = json.load(handle)
    if boundaries.get("type") != "FeatureCollection":
        raise ValueError(f"Boundaries file is not a FeatureCollection: {path}")
    return boundaries


def normalize_precomputed(geo_json: dict, errors: Optional[IngestErrorCollector] = None) -> Optional[dict]:
    """Validate geometry that came with the source and round its positions.

    Unsupported geometry types and broken polygons are dropped with a
    warning; open rings are closed.
    """

    recorder = recorder_or_logger(errors)
    if not isinstance(geo_json, dict) or not isinstance(geo_json.get("features"), list):
        recorder.error("Precomputed GeoJSON is not a FeatureCollection")
        return None

    features: list[dict] = []
    for index, feature in enumerate(geo_json["features"]):
        geometry = (feature or {}).get("geometry") or {}
        geometry_type = geometry.get("type")
        if geometry_type not in SUPPORTED_GEOMETRIES or not geometry.get("coordinates"):
            recorder.warn(f"Dropped feature {index} with unsupported geometry {geometry_type}")
            continue
        geometry = round_geometry(geometry)
        if geometry_type == "Polygon":
            rings = geometry["coordinates"]
            for ring in rings:
                if ring[0] != ring[-1]:
                    ring.append(list(ring[0]))
            if any(len(ring) < 4 or ring_self_intersects(ring) for ring in rings):
                recorder.warn(f"Dropped feature {index} with a self-intersecting polygon")
                continue
        features.append(
            {"type": "Feature", "geometry": geometry, "properties": dict(feature.get("properties") or {})}
        )
    if not features:
        return None
    return feature_collection(features)


class GeometrySynthesizer:
    """Builds the message geometry from geocoding results."""

    def __init__(self, router: GeocodingRouter, config: GeocodingConfig) -> None:
        self._router = router
        self._config = config

    async def build(
        self,
        locations: ExtractedLocations,
        geocoded: GeocodingResult,
        bus_stops: Sequence[Address] = (),
        errors: Optional[IngestErrorCollector] = None,
    ) -> dict:
        """Return a FeatureCollection or raise NoGeometryError when empty."""

        recorder = recorder_or_logger(errors)
        resolved = geocoded.resolved
        features: list[dict] = []
        missing: list[str] = []
        distinct_pins = {address.original_text for address in geocoded.addresses}

        for pin in locations.pins:
            coordinates = resolved.get(pin.address)
            if coordinates is None:
                missing.append(pin.address)
                continue
            if pin.address not in distinct_pins:
                LOGGER.debug("Skipping duplicate pin %s", pin.address)
                continue
            distinct_pins.discard(pin.address)
            features.append(
                point_feature(
                    coordinates,
                    {"feature_type": "pin", "address": pin.address, **_timespan_properties(pin.timespans)},
                )
            )

        for section in locations.streets:
            from_key = intersection_key(section.street, section.from_point)
            to_key = intersection_key(section.street, section.to_point)
            start = resolved.get(from_key)
            end = resolved.get(to_key)
            if start is None:
                missing.append(f"{section.street} from: {section.from_point}")
            if end is None:
                missing.append(f"{section.street} to: {section.to_point}")
            if start is None or end is None:
                continue
            if from_key in geocoded.pre_resolved and to_key in geocoded.pre_resolved:
                path = [start, end]
            else:
                path = await self._router.street_path(section, start, end)
            features.append(
                street_feature(
                    path,
                    self._config.street_buffer_meters,
                    {
                        "feature_type": "street",
                        "street": section.street,
                        "from": section.from_point,
                        "to": section.to_point,
                        **_timespan_properties(section.timespans),
                    },
                )
            )

        for prop in locations.cadastral_properties:
            rings = geocoded.cadastral.get(prop.identifier)
            if rings is None:
                missing.append(f"cadastral property {prop.identifier}")
                continue
            features.append(
                {
                    "type": "Feature",
                    "geometry": {"type": "Polygon", "coordinates": rings},
                    "properties": {
                        "feature_type": "cadastral_property",
                        "identifier": prop.identifier,
                        **_timespan_properties(prop.timespans),
                    },
                }
            )

        for stop in bus_stops:
            features.append(
                point_feature(
                    stop.coordinates,
                    {"feature_type": "bus_stop", "stop_code": stop.original_text, "stop_name": stop.formatted_address},
                )
            )

        if not features:
            recorder.error(f"No geocoded features available (all {len(missing)} locations failed)")
            raise NoGeometryError(f"Failed to geocode all locations: {', '.join(missing)}")
        if missing:
            recorder.warn(
                f"Partial geocoding: {len(missing)} locations failed "
                f"(showing {len(features)} features): {', '.join(missing)}"
            )
        return feature_collection(features)
