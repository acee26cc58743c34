"""Extraction adapter around the AI service.

The service itself is a black box that returns JSON text for three steps:
filter & split, categorize, and extract locations. This module sanitizes
the input, validates every response with pydantic, and records anything
that goes wrong on the message's error collector.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from core.config import IngestConfig
from core.geocoding import with_locality
from core.ingest_errors import IngestErrorCollector, recorder_or_logger, truncate_payload
from core.models import (
    CadastralProperty,
    Categorization,
    Coordinates,
    ExtractedLocations,
    FilteredItem,
    Pin,
    StreetSection,
    Timespan,
)
from core.ports import ExtractionService

LOGGER = logging.getLogger(__name__)


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TimespanSchema(_Schema):
    start: str = ""
    end: str = ""


class CoordinatesSchema(_Schema):
    lat: float
    lng: float


class PinSchema(_Schema):
    address: str
    timespans: list[TimespanSchema] = Field(default_factory=list)
    coordinates: Optional[CoordinatesSchema] = None


class StreetSchema(_Schema):
    street: str
    from_point: str = Field(alias="from")
    to_point: str = Field(alias="to")
    timespans: list[TimespanSchema] = Field(default_factory=list)
    from_coordinates: Optional[CoordinatesSchema] = Field(default=None, alias="fromCoordinates")
    to_coordinates: Optional[CoordinatesSchema] = Field(default=None, alias="toCoordinates")


class CadastralPropertySchema(_Schema):
    identifier: str
    timespans: list[TimespanSchema] = Field(default_factory=list)


class ExtractLocationsResponse(_Schema):
    pins: list[PinSchema] = Field(default_factory=list)
    streets: list[StreetSchema] = Field(default_factory=list)
    cadastral_properties: list[CadastralPropertySchema] = Field(
        default_factory=list, alias="cadastralProperties"
    )
    bus_stops: list[str] = Field(default_factory=list, alias="busStops")
    city_wide: bool = Field(default=False, alias="cityWide")


class FilteredItemSchema(_Schema):
    plain_text: str = Field(default="", alias="plainText")
    markdown_text: str = Field(default="", alias="markdownText")
    is_relevant: bool = Field(alias="isRelevant")
    responsible_entity: str = Field(default="", alias="responsibleEntity")


class CategorizeResponse(_Schema):
    categories: list[str] = Field(default_factory=list)
    bus_stops: list[str] = Field(default_factory=list, alias="busStops")


_FILTER_SPLIT = TypeAdapter(list[FilteredItemSchema])

# Array fields that can be salvaged item by item, with their item schema.
_LOCATION_ARRAYS = {
    "pins": PinSchema,
    "streets": StreetSchema,
    "cadastralProperties": CadastralPropertySchema,
    "busStops": str,
}


def sanitize_text(text: str) -> str:
    """Collapse line breaks so the text reaches the service as one line."""

    return text.replace("\r", " ").replace("\n", " ").strip()


def normalize_location(address: str, locality_name: str) -> str:
    """Add the locality to an address, or to both sides of an intersection."""

    if "&" in address:
        parts = [part.strip() for part in address.split("&") if part.strip()]
        return " & ".join(with_locality(part, locality_name) for part in parts)
    return with_locality(address.strip(), locality_name)


def _timespans(raw: list[TimespanSchema]) -> tuple[Timespan, ...]:
    return tuple(Timespan(start=item.start, end=item.end) for item in raw)


def _coordinates(raw: Optional[CoordinatesSchema]) -> Optional[Coordinates]:
    if raw is None:
        return None
    return Coordinates(lat=raw.lat, lng=raw.lng).rounded()


def _salvage_locations(parsed: dict, recorder) -> Optional[ExtractLocationsResponse]:
    filtered = dict(parsed)
    for key, item_schema in _LOCATION_ARRAYS.items():
        items = parsed.get(key)
        if not isinstance(items, list):
            continue
        adapter = TypeAdapter(item_schema)
        kept = []
        for index, item in enumerate(items):
            try:
                adapter.validate_python(item)
            except ValidationError as exc:
                recorder.error(f"Invalid {key} item at index {index}: {exc.error_count()} validation errors")
                continue
            kept.append(item)
        filtered[key] = kept
    try:
        result = ExtractLocationsResponse.model_validate(filtered)
    except ValidationError as exc:
        recorder.error(f"Failed to parse extract locations response after filtering: {exc}")
        return None
    recorder.error("Partial extract locations result: some items were filtered due to schema errors")
    return result


class ExtractionAdapter:
    """Validating front for the three AI extraction steps."""

    def __init__(self, service: ExtractionService, config: IngestConfig) -> None:
        self._service = service
        self._config = config

    def _locality_name(self, locality: str) -> str:
        return self._config.locality_names.get(locality, "")

    def _prepare(self, text: str, max_chars: int, purpose: str, recorder) -> Optional[str]:
        if not text or not isinstance(text, str):
            recorder.error(f"Invalid text parameter for {purpose}")
            return None
        if len(text) > max_chars:
            recorder.error(f"Text is too long for {purpose} (max {max_chars} characters)")
            return None
        sanitized = sanitize_text(text)
        if not sanitized:
            recorder.error(f"Invalid text parameter for {purpose}")
            return None
        return sanitized

    async def _call(self, step, text: str, purpose: str, recorder) -> Optional[dict | list]:
        try:
            response = await step(text)
        except Exception as exc:
            recorder.exception(f"AI service call failed during {purpose}: {exc}")
            return None
        if not response:
            recorder.error(f"Empty AI response for {purpose}")
            return None
        try:
            return json.loads(response)
        except json.JSONDecodeError as exc:
            recorder.error(f"Failed to parse {purpose} response: {exc}")
            recorder.error(f"Full AI response ({len(response)} chars): {truncate_payload(response)}")
            return None

    async def filter_and_split(
        self, text: str, errors: Optional[IngestErrorCollector] = None
    ) -> Optional[list[FilteredItem]]:
        """Split a raw announcement into atomic items with relevance flags."""

        recorder = recorder_or_logger(errors)
        prepared = self._prepare(text, self._config.text_max_chars, "filter & split", recorder)
        if prepared is None:
            return None
        parsed = await self._call(self._service.filter_and_split, prepared, "filter & split", recorder)
        if parsed is None:
            return None
        try:
            items = _FILTER_SPLIT.validate_python(parsed)
        except ValidationError as exc:
            recorder.error(f"Failed to parse filter & split response: {exc}")
            recorder.error(f"Full AI response: {truncate_payload(json.dumps(parsed, ensure_ascii=False))}")
            return None
        return [
            FilteredItem(
                plain_text=item.plain_text.strip(),
                markdown_text=item.markdown_text,
                is_relevant=item.is_relevant,
                responsible_entity=item.responsible_entity,
            )
            for item in items
        ]

    async def categorize(
        self, text: str, errors: Optional[IngestErrorCollector] = None
    ) -> Optional[Categorization]:
        recorder = recorder_or_logger(errors)
        prepared = self._prepare(text, self._config.text_max_chars, "categorize", recorder)
        if prepared is None:
            return None
        parsed = await self._call(self._service.categorize, prepared, "categorize", recorder)
        if parsed is None:
            return None
        try:
            result = CategorizeResponse.model_validate(parsed)
        except ValidationError as exc:
            recorder.error(f"Failed to parse categorize response: {exc}")
            recorder.error(f"Full AI response: {truncate_payload(json.dumps(parsed, ensure_ascii=False))}")
            return None
        return Categorization(categories=tuple(result.categories), bus_stops=tuple(result.bus_stops))

    async def extract_locations(
        self,
        text: str,
        locality: str,
        errors: Optional[IngestErrorCollector] = None,
    ) -> Optional[ExtractedLocations]:
        """Extract pins, street sections and other locations from one item.

        Invalid array items are dropped one by one so a single malformed pin
        does not discard the whole extraction.
        """

        recorder = recorder_or_logger(errors)
        prepared = self._prepare(text, self._config.extraction_max_chars, "extract locations", recorder)
        if prepared is None:
            return None
        parsed = await self._call(self._service.extract_locations, prepared, "extract locations", recorder)
        if parsed is None:
            return None
        try:
            result = ExtractLocationsResponse.model_validate(parsed)
        except ValidationError:
            if not isinstance(parsed, dict):
                recorder.error("Extract locations response is not an object")
                return None
            result = _salvage_locations(parsed, recorder)
            if result is None:
                return None

        locality_name = self._locality_name(locality)
        return ExtractedLocations(
            pins=tuple(
                Pin(
                    address=normalize_location(pin.address, locality_name),
                    timespans=_timespans(pin.timespans),
                    coordinates=_coordinates(pin.coordinates),
                )
                for pin in result.pins
                if pin.address.strip()
            ),
            streets=tuple(
                StreetSection(
                    street=street.street.strip(),
                    from_point=street.from_point.strip(),
                    to_point=street.to_point.strip(),
                    timespans=_timespans(street.timespans),
                    from_coordinates=_coordinates(street.from_coordinates),
                    to_coordinates=_coordinates(street.to_coordinates),
                )
                for street in result.streets
            ),
            cadastral_properties=tuple(
                CadastralProperty(identifier=prop.identifier, timespans=_timespans(prop.timespans))
                for prop in result.cadastral_properties
            ),
            bus_stops=tuple(result.bus_stops),
            city_wide=result.city_wide,
        )
