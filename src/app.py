"""Application entry point for the cityscope ingestion pipeline."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.geocoders import MapboxGeocodingBackend, build_geocoding_backend
from adapters.log_notifier import LogNotifier
from adapters.openai_extractor import OpenAIExtractionService
from adapters.sqlite_storage import SQLiteDocumentStore
from adapters.telegram_bot_notifier import TelegramBotNotifier
from core.config import GeocodingConfig, IngestConfig, NotificationConfig, TimespanConfig
from core.dedup import MESSAGES
from core.extraction import ExtractionAdapter
from core.geocoding import GeocodingRouter
from core.matcher import NotificationMatcher
from core.models import Coordinates, IngestOptions, IngestSummary, parse_datetime
from core.processor import IngestionOrchestrator
from core.timespans import is_message_current

NAME = "CITYSCOPE"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    # Longest first so a secret containing another is masked whole.
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/cityscope.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


# --- wiring -----------------------------------------------------------------


def _ingest_config() -> IngestConfig:
    return IngestConfig(
        max_age_days=settings.MAX_AGE_DAYS,
        default_locality=settings.LOCALITY,
        locality_names=settings.LOCALITY_NAMES,
        text_max_chars=settings.TEXT_MAX_CHARS,
        extraction_max_chars=settings.AI_MAX_INPUT_CHARS,
    )


def _geocoding_config() -> GeocodingConfig:
    return GeocodingConfig(
        backend=settings.GEOCODING_BACKEND,
        delay_seconds=settings.GEOCODING_DELAY_SECONDS,
        street_buffer_meters=settings.STREET_BUFFER_METERS,
        outlier_max_distance_meters=settings.OUTLIER_MAX_DISTANCE_METERS,
    )


def _timespan_config() -> TimespanConfig:
    return TimespanConfig(
        timezone=settings.TIMEZONE,
        max_past_days=settings.MAX_PAST_DAYS,
        max_future_days=settings.MAX_FUTURE_DAYS,
        relevance_days=settings.RELEVANCE_DAYS,
    )


def _notification_config() -> NotificationConfig:
    return NotificationConfig(
        app_url=settings.APP_URL,
        batch_size=settings.NOTIFICATION_BATCH_SIZE,
        snippet_chars=settings.SNIPPET_CHARS,
        localities_dir=settings.LOCALITIES_DIR,
    )


def _build_store() -> SQLiteDocumentStore:
    store = SQLiteDocumentStore(settings.DB_PATH)
    store.init_db()
    return store


def _build_orchestrator(store: SQLiteDocumentStore) -> IngestionOrchestrator:
    if settings.GEOCODING_BACKEND == MapboxGeocodingBackend.name:
        api_key = settings.MAPBOX_ACCESS_TOKEN
        key_name = "MAPBOX_ACCESS_TOKEN"
    else:
        api_key = settings.GOOGLE_MAPS_API_KEY
        key_name = "GOOGLE_MAPS_API_KEY"
    if not api_key:
        raise RuntimeError(f"{key_name} is required for geocoding backend {settings.GEOCODING_BACKEND}")
    if not settings.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is required for extraction")

    ingest_config = _ingest_config()
    geocoding_config = _geocoding_config()
    backend = build_geocoding_backend(
        settings.GEOCODING_BACKEND,
        api_key,
        locality_name=settings.LOCALITY_NAMES.get(settings.LOCALITY, ""),
        timeout=settings.GEOCODING_TIMEOUT_SECONDS,
    )
    center = Coordinates(*settings.CITY_CENTER) if settings.CITY_CENTER else None
    router = GeocodingRouter(backend, geocoding_config, center=center)
    extractor = ExtractionAdapter(OpenAIExtractionService(model=settings.AI_MODEL), ingest_config)
    LOGGER.info("Selected geocoding backend - %s", backend.name)
    return IngestionOrchestrator(store, extractor, router, ingest_config, geocoding_config, _timespan_config())


def _build_notifier():
    # Select the push adapter based on configuration to keep the matcher
    # independent from delivery details.
    if settings.NOTIFICATION_METHOD == "bot":
        if not settings.BOT_API:
            raise RuntimeError("BOT_API is required when notifications.method=bot")
        notifier = TelegramBotNotifier(settings.BOT_API, settings.APP_URL, settings.SNIPPET_CHARS)
    elif settings.NOTIFICATION_METHOD == "log":
        notifier = LogNotifier(settings.APP_URL, settings.SNIPPET_CHARS)
    else:
        raise RuntimeError("notifications.method must be 'bot' or 'log'")
    LOGGER.info("Selected notification method - %s", settings.NOTIFICATION_METHOD)
    return notifier


def _ingest_options(args: argparse.Namespace) -> IngestOptions:
    return IngestOptions(
        dry_run=args.dry_run,
        source_type=getattr(args, "source_type", None),
        since=parse_datetime(getattr(args, "since", None)),
        until=parse_datetime(getattr(args, "until", None)),
        boundaries_path=getattr(args, "boundaries", None),
        limit=getattr(args, "limit", None),
    )


# --- commands ---------------------------------------------------------------


def _ingest(args: argparse.Namespace) -> IngestSummary:
    store = _build_store()
    orchestrator = _build_orchestrator(store)
    return asyncio.run(orchestrator.ingest(_ingest_options(args)))


def _notify(args: argparse.Namespace) -> None:
    store = _build_store()
    matcher = NotificationMatcher(store, _build_notifier(), _notification_config())
    asyncio.run(matcher.run(dry_run=args.dry_run))


def _pipeline(args: argparse.Namespace) -> None:
    store = _build_store()
    options = _ingest_options(args)
    try:
        orchestrator = _build_orchestrator(store)
        if options.source_type:
            asyncio.run(orchestrator.ingest(options))
        else:
            results = asyncio.run(orchestrator.ingest_by_source_type(options))
            failed = [source_type for source_type, summary in results.items() if summary is None]
            if failed:
                LOGGER.error("Ingestion failed for source types: %s", ", ".join(failed))
    except Exception:
        # Notifications for already stored messages still go out.
        LOGGER.exception("Ingestion step failed, continuing with notifications")
    matcher = NotificationMatcher(store, _build_notifier(), _notification_config())
    asyncio.run(matcher.run(dry_run=options.dry_run))


def _current(args: argparse.Namespace) -> None:
    store = _build_store()
    config = _timespan_config()
    now = datetime.now(timezone.utc)
    where = {"locality": args.locality} if args.locality else None
    messages = [
        message
        for message in store.find_many(MESSAGES, where=where)
        if message.get("finalized_at") and is_message_current(message, now, config)
    ]
    if not messages:
        print("No current messages.")
        return
    for message in messages:
        preview = " ".join(message.get("text", "").split())[:80]
        print(f"{message['_id']} | {message.get('source', '')} | {preview}")


def _add_ingest_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Extract and geocode without writing")
    parser.add_argument("--source-type", help="Only ingest sources of this type")
    parser.add_argument("--since", help="Only sources published at or after this ISO date")
    parser.add_argument("--until", help="Only sources published at or before this ISO date")
    parser.add_argument("--boundaries", help="GeoJSON FeatureCollection limiting accepted geometry")
    parser.add_argument("--limit", type=int, help="Maximum number of sources to process")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="cityscope")
    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest crawled source documents")
    _add_ingest_arguments(ingest_parser)
    notify_parser = subparsers.add_parser("notify", help="Match new messages and send notifications")
    notify_parser.add_argument("--dry-run", action="store_true", help="Match without storing or sending")
    pipeline_parser = subparsers.add_parser("pipeline", help="Ingest, then notify")
    _add_ingest_arguments(pipeline_parser)
    current_parser = subparsers.add_parser("current", help="List messages that are currently relevant")
    current_parser.add_argument("--locality", default=None, help="Only messages of this locality")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    _print_banner()
    _configure_logging()
    LOGGER.info("Starting cityscope %s", args.command)

    if args.command == "ingest":
        _ingest(args)
    elif args.command == "notify":
        _notify(args)
    elif args.command == "pipeline":
        _pipeline(args)
    elif args.command == "current":
        _current(args)


if __name__ == "__main__":
    main()
