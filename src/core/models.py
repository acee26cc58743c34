"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types. Stored documents are plain dicts
with snake_case keys; the ``to_document``/``from_document`` helpers are the
only place that knows the stored shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


COORDINATE_PRECISION = 6


class InsertResult(Enum):
    """Outcome of a create-if-absent insert."""

    CREATED = "created"
    EXISTS = "exists"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def rounded(self) -> Coordinates:
        return Coordinates(
            lat=round(self.lat, COORDINATE_PRECISION),
            lng=round(self.lng, COORDINATE_PRECISION),
        )

    def as_position(self) -> list[float]:
        """GeoJSON position, longitude first."""

        rounded = self.rounded()
        return [rounded.lng, rounded.lat]

    def to_document(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_document(cls, doc: Optional[dict]) -> Optional[Coordinates]:
        if not doc:
            return None
        return cls(lat=float(doc["lat"]), lng=float(doc["lng"]))


@dataclass(frozen=True)
class Timespan:
    """Raw ``DD.MM.YYYY HH:MM`` pair as extracted from text."""

    start: str
    end: str

    def to_document(self) -> dict:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_document(cls, doc: dict) -> Timespan:
        return cls(start=str(doc.get("start", "")), end=str(doc.get("end", "")))


def _timespans_from(raw: Optional[list]) -> tuple[Timespan, ...]:
    return tuple(Timespan.from_document(item) for item in raw or [])


@dataclass(frozen=True)
class Pin:
    address: str
    timespans: tuple[Timespan, ...] = ()
    coordinates: Optional[Coordinates] = None

    def to_document(self) -> dict:
        doc: dict[str, Any] = {
            "address": self.address,
            "timespans": [span.to_document() for span in self.timespans],
        }
        if self.coordinates:
            doc["coordinates"] = self.coordinates.to_document()
        return doc

    @classmethod
    def from_document(cls, doc: dict) -> Pin:
        return cls(
            address=doc["address"],
            timespans=_timespans_from(doc.get("timespans")),
            coordinates=Coordinates.from_document(doc.get("coordinates")),
        )


@dataclass(frozen=True)
class StreetSection:
    """A named street between two endpoints (cross streets or house numbers)."""

    street: str
    from_point: str
    to_point: str
    timespans: tuple[Timespan, ...] = ()
    from_coordinates: Optional[Coordinates] = None
    to_coordinates: Optional[Coordinates] = None

    def to_document(self) -> dict:
        doc: dict[str, Any] = {
            "street": self.street,
            "from": self.from_point,
            "to": self.to_point,
            "timespans": [span.to_document() for span in self.timespans],
        }
        if self.from_coordinates:
            doc["from_coordinates"] = self.from_coordinates.to_document()
        if self.to_coordinates:
            doc["to_coordinates"] = self.to_coordinates.to_document()
        return doc

    @classmethod
    def from_document(cls, doc: dict) -> StreetSection:
        return cls(
            street=doc["street"],
            from_point=doc["from"],
            to_point=doc["to"],
            timespans=_timespans_from(doc.get("timespans")),
            from_coordinates=Coordinates.from_document(doc.get("from_coordinates")),
            to_coordinates=Coordinates.from_document(doc.get("to_coordinates")),
        )


@dataclass(frozen=True)
class CadastralProperty:
    identifier: str
    timespans: tuple[Timespan, ...] = ()

    def to_document(self) -> dict:
        return {
            "identifier": self.identifier,
            "timespans": [span.to_document() for span in self.timespans],
        }


@dataclass(frozen=True)
class ExtractedLocations:
    pins: tuple[Pin, ...] = ()
    streets: tuple[StreetSection, ...] = ()
    cadastral_properties: tuple[CadastralProperty, ...] = ()
    bus_stops: tuple[str, ...] = ()
    city_wide: bool = False

    def all_timespans(self) -> list[Timespan]:
        spans: list[Timespan] = []
        for item in (*self.pins, *self.streets, *self.cadastral_properties):
            spans.extend(item.timespans)
        return spans


@dataclass(frozen=True)
class FilteredItem:
    """One atomic announcement produced by the filter & split step."""

    plain_text: str
    markdown_text: str
    is_relevant: bool
    responsible_entity: str = ""


@dataclass(frozen=True)
class Categorization:
    categories: tuple[str, ...] = ()
    bus_stops: tuple[str, ...] = ()


@dataclass(frozen=True)
class Address:
    """A geocoded location string."""

    original_text: str
    formatted_address: str
    coordinates: Coordinates

    @property
    def geo_json(self) -> dict:
        return {"type": "Point", "coordinates": self.coordinates.as_position()}


@dataclass(frozen=True)
class SourceDocument:
    """Raw announcement as emitted by a crawler or submitted by a user.

    ``deep_link_url`` is tri-state: ``None`` means "link to ``url``", an empty
    string means "no user-facing link", anything else is the link itself.
    """

    url: str
    title: str
    raw_text: str
    source_type: str
    locality: str
    crawled_at: datetime
    date_published: Optional[datetime] = None
    deep_link_url: Optional[str] = None
    dedup_key: Optional[str] = None
    markdown_text: Optional[str] = None
    geo_json: Optional[dict] = None
    categories: tuple[str, ...] = ()
    is_relevant: Optional[bool] = None
    city_wide: bool = False
    timespan_start: Optional[datetime] = None
    timespan_end: Optional[datetime] = None
    last_update: Optional[datetime] = None

    @property
    def has_precomputed_geometry(self) -> bool:
        return self.geo_json is not None

    @classmethod
    def from_document(cls, doc: dict) -> SourceDocument:
        geo_json = doc.get("geo_json")
        if isinstance(geo_json, str):
            geo_json = json.loads(geo_json)
        return cls(
            url=doc["url"],
            title=doc.get("title", ""),
            raw_text=doc.get("raw_text", ""),
            source_type=doc.get("source_type", ""),
            locality=doc.get("locality", ""),
            crawled_at=parse_datetime(doc["crawled_at"]),
            date_published=parse_datetime(doc.get("date_published")),
            deep_link_url=doc.get("deep_link_url"),
            dedup_key=doc.get("dedup_key"),
            markdown_text=doc.get("markdown_text"),
            geo_json=geo_json,
            categories=tuple(doc.get("categories") or ()),
            is_relevant=doc.get("is_relevant"),
            city_wide=bool(doc.get("city_wide", False)),
            timespan_start=parse_datetime(doc.get("timespan_start")),
            timespan_end=parse_datetime(doc.get("timespan_end")),
            last_update=parse_datetime(doc.get("last_update")),
        )


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    # Naive timestamps are stored as UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ProcessStep:
    step: str
    timestamp: datetime
    summary: str

    def to_document(self) -> dict:
        return {
            "step": self.step,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary,
        }


@dataclass
class Message:
    """Finalized record built during a single ingestion run.

    ``source_url`` is the canonical origin the dedup key is derived from;
    ``deep_link_url`` is the link shown to users and may be absent.
    """

    text: str
    locality: str
    source: str
    created_at: datetime
    id: Optional[str] = None
    markdown_text: Optional[str] = None
    responsible_entity: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    pins: list[Pin] = field(default_factory=list)
    streets: list[StreetSection] = field(default_factory=list)
    cadastral_properties: list[CadastralProperty] = field(default_factory=list)
    bus_stops: list[str] = field(default_factory=list)
    geo_json: Optional[dict] = None
    source_document_id: Optional[str] = None
    source_url: Optional[str] = None
    deep_link_url: Optional[str] = None
    timespan_start: Optional[datetime] = None
    timespan_end: Optional[datetime] = None
    is_relevant: Optional[bool] = None
    city_wide: bool = False
    finalized_at: Optional[datetime] = None
    ingest_errors: list[dict] = field(default_factory=list)
    process: list[ProcessStep] = field(default_factory=list)

    def to_document(self) -> dict:
        doc: dict[str, Any] = {
            "text": self.text,
            "locality": self.locality,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
            "categories": list(self.categories),
            "pins": [pin.to_document() for pin in self.pins],
            "streets": [street.to_document() for street in self.streets],
            "cadastral_properties": [prop.to_document() for prop in self.cadastral_properties],
            "bus_stops": list(self.bus_stops),
            "city_wide": self.city_wide,
            "process": [step.to_document() for step in self.process],
            # Set by the notification matcher once the message was handled.
            "notified": False,
        }
        optional = {
            "markdown_text": self.markdown_text,
            "responsible_entity": self.responsible_entity,
            "geo_json": self.geo_json,
            "source_document_id": self.source_document_id,
            "source_url": self.source_url,
            "deep_link_url": self.deep_link_url,
            "is_relevant": self.is_relevant,
            "timespan_start": self.timespan_start.isoformat() if self.timespan_start else None,
            "timespan_end": self.timespan_end.isoformat() if self.timespan_end else None,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }
        doc.update({key: value for key, value in optional.items() if value is not None})
        # Diagnostics are only persisted when something was recorded.
        if self.ingest_errors:
            doc["ingest_errors"] = list(self.ingest_errors)
        return doc


@dataclass(frozen=True)
class Interest:
    """Circular geofence owned by a user."""

    id: str
    user_id: str
    coordinates: Coordinates
    radius: float = 500
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> Interest:
        return cls(
            id=doc["_id"],
            user_id=doc["user_id"],
            coordinates=Coordinates.from_document(doc["coordinates"]),
            radius=float(doc.get("radius", 500)),
            created_at=parse_datetime(doc.get("created_at")),
        )


@dataclass
class NotificationMatch:
    user_id: str
    message_id: str
    interest_id: str
    distance: float
    matched_at: datetime
    notified: bool = False
    notified_at: Optional[datetime] = None
    id: Optional[str] = None

    def to_document(self) -> dict:
        doc: dict[str, Any] = {
            "user_id": self.user_id,
            "message_id": self.message_id,
            "interest_id": self.interest_id,
            "distance": self.distance,
            "matched_at": self.matched_at.isoformat(),
            "notified": self.notified,
        }
        if self.notified_at:
            doc["notified_at"] = self.notified_at.isoformat()
        return doc


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    url: str
    message_id: str


@dataclass(frozen=True)
class IngestOptions:
    dry_run: bool = False
    source_type: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    boundaries_path: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class IngestSummary:
    total: int = 0
    too_old: int = 0
    within_bounds: int = 0
    outside_bounds: int = 0
    ingested: int = 0
    already_ingested: int = 0
    filtered: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)


@dataclass
class NotifySummary:
    messages: int = 0
    matches: int = 0
    notified: int = 0
    failed: int = 0
