"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class IngestConfig:
    """Settings for the ingestion orchestrator."""

    max_age_days: int = 90
    # Assigned to sources stored without a locality.
    default_locality: str = "bg.sofia"
    # Display names appended to addresses so geocoders disambiguate them.
    locality_names: dict[str, str] = field(default_factory=lambda: {"bg.sofia": "София"})
    text_max_chars: int = 10000
    extraction_max_chars: int = 5000


@dataclass(frozen=True)
class GeocodingConfig:
    """Settings for the geocoding router and geometry synthesis."""

    backend: str = "google_geocoding"
    delay_seconds: float = 0.2
    street_buffer_meters: float = 8.0
    outlier_max_distance_meters: float = 1000.0
    duplicate_distance_meters: float = 50.0


@dataclass(frozen=True)
class TimespanConfig:
    """Settings for timespan parsing and the relevance filter."""

    timezone: str = "Europe/Sofia"
    max_past_days: int = 365
    max_future_days: int = 365
    relevance_days: int = 7


@dataclass(frozen=True)
class NotificationConfig:
    """Settings for the notification matcher and payload formatting."""

    app_url: str = "http://localhost:3000"
    batch_size: int = 100
    snippet_chars: int = 100
    localities_dir: str = ""
