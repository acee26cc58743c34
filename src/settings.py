"""Static configuration for cityscope.

All user-editable settings (database, ingestion, geocoding, timespans, AI,
notifications, logging) live in a single JSON file for quick edits without
touching Python. Secrets stay in the environment (see ``.env``).
"""

import json
import os

from dotenv import load_dotenv

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Settings are loaded from config.json so deployments can be tuned without
# editing code.
CONFIG_PATH = os.environ.get("CITYSCOPE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))

load_dotenv()


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    if not path or os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite document store.
_database = _CONFIG.get("database", {})
DB_PATH = _project_path(_database.get("path", "cityscope.db"))

# Ingestion controls.
# - MAX_AGE_DAYS: documents at or beyond this age are skipped
# - LOCALITY: default locality for sources and CLI commands
# - LOCALITY_NAMES: display names appended to geocoding queries
_ingest = _CONFIG.get("ingest", {})
MAX_AGE_DAYS = int(_ingest.get("max_age_days", 90))
LOCALITY = _ingest.get("locality", "bg.sofia")
LOCALITY_NAMES = dict(_ingest.get("localities", {"bg.sofia": "София"}))
TEXT_MAX_CHARS = int(_ingest.get("text_max_chars", 10000))

# Geocoding backend selection and rate limiting.
_geocoding = _CONFIG.get("geocoding", {})
GEOCODING_BACKEND = _geocoding.get("backend", "google_geocoding")
GEOCODING_DELAY_SECONDS = float(_geocoding.get("delay_seconds", 0.2))
GEOCODING_TIMEOUT_SECONDS = float(_geocoding.get("timeout_seconds", 10))
STREET_BUFFER_METERS = float(_geocoding.get("street_buffer_meters", 8))
OUTLIER_MAX_DISTANCE_METERS = float(_geocoding.get("outlier_max_distance_meters", 1000))
# Coordinates the geocoder answers with when it only knows the city.
_center = _geocoding.get("city_center")
CITY_CENTER = (float(_center["lat"]), float(_center["lng"])) if _center else None

# Timespan parsing and the relevance window. The environment variable wins so
# operators can widen the window without redeploying config.
_timespans = _CONFIG.get("timespans", {})
TIMEZONE = _timespans.get("timezone", "Europe/Sofia")
MAX_PAST_DAYS = int(_timespans.get("max_past_days", 365))
MAX_FUTURE_DAYS = int(_timespans.get("max_future_days", 365))
RELEVANCE_DAYS = int(os.getenv("MESSAGE_RELEVANCE_DAYS") or _timespans.get("relevance_days", 7))

# AI extraction service.
_ai = _CONFIG.get("ai", {})
AI_MODEL = _ai.get("model", "gpt-4o-mini")
AI_MAX_INPUT_CHARS = int(_ai.get("max_input_chars", 5000))

# Notification method switches adapters without changing core logic.
_notifications = _CONFIG.get("notifications", {})
NOTIFICATION_METHOD = _notifications.get("method", "log")
NOTIFICATION_BATCH_SIZE = int(_notifications.get("batch_size", 100))
APP_URL = _notifications.get("app_url", "http://localhost:3000")
SNIPPET_CHARS = int(_notifications.get("snippet_chars", 100))
LOCALITIES_DIR = _project_path(_notifications.get("localities_dir", ""))

# Secrets are never stored in config.json.
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")
MAPBOX_ACCESS_TOKEN = os.getenv("MAPBOX_ACCESS_TOKEN")
BOT_API = os.getenv("BOT_API")

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
