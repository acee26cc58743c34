"""Core ingestion pipeline.

This module is integration-agnostic. It only relies on ports for storage,
geocoding and the AI service, enabling other adapters without changes here.
Each source document moves through: age filter, boundary filter, dedup
check, extraction, geocoding, geometry synthesis, timespan validation and
finally persistence.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from core.config import GeocodingConfig, IngestConfig, TimespanConfig
from core.dedup import MESSAGES, find_already_ingested, resolve_deep_link, resolve_dedup_key
from core.errors import (
    ExtractionFailedError,
    FatalIngestError,
    NoGeometryError,
    OutsideBoundariesError,
)
from core.extraction import ExtractionAdapter
from core.geocoding import GeocodingRouter, resolve_bus_stops
from core.geojson import GeometrySynthesizer, load_boundaries, normalize_precomputed
from core.geometry import filter_by_boundaries, is_within_boundaries
from core.identity import insert_with_unique_id
from core.ingest_errors import IngestErrorCollector
from core.models import (
    IngestOptions,
    IngestSummary,
    InsertResult,
    Message,
    ProcessStep,
    SourceDocument,
)
from core.ports import DocumentStore
from core.timespans import collapse_source_timespan, timespan_range

LOGGER = logging.getLogger(__name__)

SOURCES = "sources"
# One row per dedup key; the create-if-absent insert is the ingestion claim.
INGESTED_SOURCES = "ingested_sources"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def published_at(source: SourceDocument) -> datetime:
    """Date used for age and range filters (structured feeds fall back to last update)."""

    return source.date_published or source.last_update or source.crawled_at


class IngestionOrchestrator:
    """Runs source documents through extraction, geocoding and persistence."""

    def __init__(
        self,
        store: DocumentStore,
        extractor: ExtractionAdapter,
        router: GeocodingRouter,
        ingest_config: IngestConfig,
        geocoding_config: GeocodingConfig,
        timespan_config: TimespanConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._router = router
        self._synthesizer = GeometrySynthesizer(router, geocoding_config)
        self._config = ingest_config
        self._timespans = timespan_config
        self._clock = clock

    # --- source selection ---------------------------------------------------

    def load_sources(self, options: IngestOptions) -> list[SourceDocument]:
        where = {"source_type": options.source_type} if options.source_type else None
        sources: list[SourceDocument] = []
        for doc in self._store.find_many(SOURCES, where=where):
            source = SourceDocument.from_document(doc)
            if not source.locality:
                source = replace(source, locality=self._config.default_locality)
            sources.append(source)
        if options.since:
            sources = [source for source in sources if published_at(source) >= options.since]
        if options.until:
            sources = [source for source in sources if published_at(source) <= options.until]
        sources.sort(key=lambda source: source.crawled_at)
        if options.limit is not None:
            sources = sources[: options.limit]
        return sources

    def filter_by_age(self, sources: Iterable[SourceDocument]) -> tuple[list[SourceDocument], int]:
        """Split off documents whose age is at or beyond ``max_age_days``."""

        # Midnight UTC keeps the cut-off independent of the time of day.
        today = self._clock().astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        max_age = timedelta(days=self._config.max_age_days)
        recent: list[SourceDocument] = []
        too_old = 0
        for source in sources:
            if today - published_at(source) >= max_age:
                too_old += 1
            else:
                recent.append(source)
        if too_old:
            LOGGER.info("Age filter applied: recent=%s, too_old=%s", len(recent), too_old)
        return recent, too_old

    def filter_by_boundaries(
        self, sources: Iterable[SourceDocument], boundaries: Optional[dict]
    ) -> tuple[list[SourceDocument], int]:
        """Drop precomputed-geometry sources lying wholly outside the boundaries.

        Sources without geometry pass; they are checked after geocoding.
        """

        sources = list(sources)
        if not boundaries:
            return sources, 0
        within: list[SourceDocument] = []
        outside = 0
        for source in sources:
            geo_json = source.geo_json
            if not geo_json or not isinstance(geo_json.get("features"), list):
                within.append(source)
                continue
            if is_within_boundaries(geo_json, boundaries):
                within.append(source)
            else:
                outside += 1
        LOGGER.info("Boundary filter applied: within=%s, outside=%s", len(within), outside)
        return within, outside

    # --- entry points -------------------------------------------------------

    async def ingest(self, options: IngestOptions) -> IngestSummary:
        """Ingest every matching source document and return run counts.

        ``ingested`` counts documents that produced stored messages (or would
        have, in a dry run); ``filtered`` counts the subset whose items were
        all judged irrelevant.
        """

        LOGGER.info("Starting source ingestion (%s)", "dry-run" if options.dry_run else "production")
        boundaries = load_boundaries(options.boundaries_path)
        sources = self.load_sources(options)
        summary = IngestSummary(total=len(sources))

        recent, summary.too_old = self.filter_by_age(sources)
        within, summary.outside_bounds = self.filter_by_boundaries(recent, boundaries)
        summary.within_bounds = len(within)

        already = find_already_ingested(self._store, (resolve_dedup_key(source) for source in within))
        seen_keys: set[str] = set(already)

        for source in within:
            key = resolve_dedup_key(source)
            if key in seen_keys:
                summary.already_ingested += 1
                LOGGER.info("Dedup skip for %s (already ingested)", source.url)
                continue
            try:
                messages = await self.ingest_source(source, boundaries, dry_run=options.dry_run)
            except OutsideBoundariesError:
                summary.outside_bounds += 1
                LOGGER.info("Source outside boundaries after geocoding: %s", source.title)
                continue
            except FatalIngestError as exc:
                summary.failed += 1
                summary.errors.append({"url": source.url, "error": str(exc)})
                LOGGER.error("Failed to ingest %s: %s", source.url, exc)
                continue
            except Exception as exc:
                summary.failed += 1
                summary.errors.append({"url": source.url, "error": str(exc)})
                LOGGER.exception("Unexpected error while ingesting %s", source.url)
                continue
            seen_keys.add(key)
            if messages is None:
                summary.already_ingested += 1
                continue
            summary.ingested += 1
            if messages and not any(message.is_relevant for message in messages):
                summary.filtered += 1

        self._log_summary(summary, options.dry_run)
        return summary

    async def ingest_by_source_type(
        self, options: IngestOptions, source_types: Optional[Iterable[str]] = None
    ) -> dict[str, Optional[IngestSummary]]:
        """Run ingestion per source type; one type failing does not stop the rest."""

        if source_types is None:
            source_types = sorted(
                {doc.get("source_type", "") for doc in self._store.find_many(SOURCES)} - {""}
            )
        results: dict[str, Optional[IngestSummary]] = {}
        for source_type in source_types:
            try:
                results[source_type] = await self.ingest(replace(options, source_type=source_type))
            except Exception:
                LOGGER.exception("Ingestion failed for source type %s", source_type)
                results[source_type] = None
        return results

    async def ingest_source(
        self,
        source: SourceDocument,
        boundaries: Optional[dict] = None,
        dry_run: bool = False,
    ) -> Optional[list[Message]]:
        """Build and persist the messages of one source document.

        Raises FatalIngestError subclasses when the document must be skipped.
        Returns None when another run claimed the same dedup key first.
        """

        if not source.locality:
            raise FatalIngestError(f"Source missing required locality: {source.url}")
        LOGGER.info("Processing %s (%s)", source.title or source.url, source.source_type)

        if source.has_precomputed_geometry:
            messages = [self._precomputed_message(source, boundaries)]
        else:
            messages = await self._extracted_messages(source, boundaries)

        if dry_run:
            LOGGER.info("[dry-run] Would store %s messages for %s", len(messages), source.url)
            return messages
        return self._persist(source, messages)

    # --- message building ---------------------------------------------------

    def _new_message(self, source: SourceDocument, text: str) -> Message:
        return Message(
            text=text,
            locality=source.locality,
            source=source.source_type,
            created_at=self._clock(),
            source_document_id=resolve_dedup_key(source),
            source_url=source.url,
            deep_link_url=resolve_deep_link(source),
        )

    def _step(self, message: Message, step: str, summary: str) -> None:
        message.process.append(ProcessStep(step=step, timestamp=self._clock(), summary=summary))

    def _finalize(self, message: Message, errors: IngestErrorCollector) -> Message:
        message.finalized_at = self._clock()
        message.ingest_errors = errors.entries
        return message

    def _precomputed_message(self, source: SourceDocument, boundaries: Optional[dict]) -> Message:
        errors = IngestErrorCollector()
        if not (source.timespan_start and source.timespan_end):
            errors.warn("Source has precomputed GeoJSON but missing timespans (falling back to crawl time)")
        geo_json = normalize_precomputed(source.geo_json, errors)
        if geo_json is None:
            raise NoGeometryError(f"Precomputed GeoJSON has no usable features: {source.url}")
        if boundaries:
            geo_json = filter_by_boundaries(geo_json, boundaries)
            if geo_json is None:
                raise OutsideBoundariesError(f"No features within specified boundaries: {source.url}")

        message = self._new_message(source, source.raw_text)
        message.markdown_text = source.markdown_text
        message.categories = list(source.categories)
        message.is_relevant = True if source.is_relevant is None else source.is_relevant
        message.city_wide = source.city_wide
        message.geo_json = geo_json
        message.timespan_start, message.timespan_end = collapse_source_timespan(
            source.timespan_start,
            source.timespan_end,
            source.crawled_at,
            source.last_update,
            self._timespans,
        )
        return self._finalize(message, errors)

    async def _extracted_messages(self, source: SourceDocument, boundaries: Optional[dict]) -> list[Message]:
        """Run the three AI steps, then geocode every relevant item."""

        source_errors = IngestErrorCollector()
        items = await self._extractor.filter_and_split(source.raw_text, source_errors)
        if not items:
            raise ExtractionFailedError(f"Message filter & split failed for {source.url}")
        LOGGER.info("Filter & split produced %s items for %s", len(items), source.url)

        messages: list[Message] = []
        for index, item in enumerate(items, start=1):
            errors = IngestErrorCollector()
            message = self._new_message(source, item.plain_text or source.raw_text)
            message.markdown_text = item.markdown_text or None
            message.responsible_entity = item.responsible_entity or None
            message.is_relevant = item.is_relevant
            self._step(
                message,
                "filterAndSplit",
                f"item {index}/{len(items)}, relevant={item.is_relevant}",
            )

            if not item.is_relevant:
                messages.append(self._finalize(message, errors))
                continue
            if not item.plain_text:
                errors.error("Filter returned isRelevant=true but empty plainText (AI inconsistency)")
                messages.append(self._finalize(message, errors))
                continue

            categorization = await self._extractor.categorize(item.plain_text, errors)
            if categorization is None:
                errors.error("Categorization failed (API error or parse failure), finalizing without extraction")
                messages.append(self._finalize(message, errors))
                continue
            message.categories = list(categorization.categories)
            message.bus_stops = list(categorization.bus_stops)
            self._step(message, "categorize", f"categories={','.join(categorization.categories) or '-'}")
            if not categorization.categories:
                LOGGER.info("Item %s has zero categories, finalizing", index)
                messages.append(self._finalize(message, errors))
                continue

            locations = await self._extractor.extract_locations(item.plain_text, source.locality, errors)
            if locations is None:
                LOGGER.info("Location extraction failed, finalizing without geometry")
                messages.append(self._finalize(message, errors))
                continue
            self._step(
                message,
                "extractLocations",
                f"pins={len(locations.pins)}, streets={len(locations.streets)}, "
                f"cadastral={len(locations.cadastral_properties)}",
            )
            message.pins = list(locations.pins)
            message.streets = list(locations.streets)
            message.cadastral_properties = list(locations.cadastral_properties)
            message.bus_stops = sorted(set(message.bus_stops) | set(locations.bus_stops))
            message.city_wide = locations.city_wide
            interval = timespan_range(locations.all_timespans(), self._timespans, reference=source.crawled_at)
            if interval:
                message.timespan_start, message.timespan_end = interval

            message.geo_json = await self._geometry_for(locations, message.bus_stops, boundaries, errors)
            messages.append(self._finalize(message, errors))
        return messages

    async def _geometry_for(self, locations, bus_stop_codes, boundaries, errors) -> Optional[dict]:
        if not (locations.pins or locations.streets or locations.cadastral_properties or bus_stop_codes):
            if not locations.city_wide:
                errors.warn("No mappable locations extracted")
            return None

        geocoded = await self._router.geocode_locations(locations, errors)
        bus_stops = resolve_bus_stops(self._store, bus_stop_codes)
        geo_json = await self._synthesizer.build(locations, geocoded, bus_stops, errors)
        if boundaries:
            geo_json = filter_by_boundaries(geo_json, boundaries)
            if geo_json is None:
                raise OutsideBoundariesError("No features within specified boundaries")
        return geo_json

    # --- persistence --------------------------------------------------------

    def _persist(self, source: SourceDocument, messages: list[Message]) -> Optional[list[Message]]:
        key = resolve_dedup_key(source)
        claim = {"url": source.url, "claimed_at": self._clock().isoformat()}
        if self._store.insert_one(INGESTED_SOURCES, key, claim) is InsertResult.EXISTS:
            LOGGER.info("Dedup skip for %s (claimed by another run)", source.url)
            return None

        stored: list[str] = []
        try:
            for message in messages:
                message.id = insert_with_unique_id(self._store, MESSAGES, message.to_document())
                stored.append(message.id)
        except Exception:
            # Roll back so the source can be retried as a whole.
            self._store.delete_many_by_ids(MESSAGES, stored)
            self._store.delete_many_by_ids(INGESTED_SOURCES, [key])
            raise
        LOGGER.info("Stored %s messages for %s: %s", len(stored), source.url, ", ".join(stored))
        return messages

    def _log_summary(self, summary: IngestSummary, dry_run: bool) -> None:
        LOGGER.info(
            "Ingestion summary: total=%s too_old=%s within_bounds=%s outside_bounds=%s "
            "%s=%s already_ingested=%s filtered=%s failed=%s dry_run=%s",
            summary.total,
            summary.too_old,
            summary.within_bounds,
            summary.outside_bounds,
            "would_ingest" if dry_run else "ingested",
            summary.ingested,
            summary.already_ingested,
            summary.filtered,
            summary.failed,
            dry_run,
        )
        for error in summary.errors:
            LOGGER.error("Ingestion error for %s: %s", error["url"], error["error"])
