"""Timespan parsing, sanity checks and the message relevance filter.

Extracted timespans use the local ``DD.MM.YYYY HH:MM`` notation. Parsing is
strict: anything that does not match the pattern exactly, or that names a
non-existent calendar date, is treated as absent.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from core.config import TimespanConfig
from core.models import Timespan, parse_datetime

LOGGER = logging.getLogger(__name__)

TIMESPAN_FORMAT = "%d.%m.%Y %H:%M"
_TIMESPAN_RE = re.compile(r"^([0-9]{2})\.([0-9]{2})\.([0-9]{4}) ([0-9]{2}):([0-9]{2})$")

Interval = tuple[datetime, datetime]


def parse_timespan_date(value: Optional[str], tz_name: str = "Europe/Sofia") -> Optional[datetime]:
    """Parse ``DD.MM.YYYY HH:MM`` into an aware datetime, or return None."""

    if not value or not isinstance(value, str):
        return None
    parts = _TIMESPAN_RE.match(value.strip())
    if not parts:
        return None
    day, month, year, hours, minutes = (int(part) for part in parts.groups())
    try:
        # datetime() rejects rollovers such as 31.02 or 24:00.
        parsed = datetime(year, month, day, hours, minutes)
    except ValueError:
        return None
    return parsed.replace(tzinfo=ZoneInfo(tz_name))


def format_timespan_date(value: datetime, tz_name: str = "Europe/Sofia") -> str:
    return value.astimezone(ZoneInfo(tz_name)).strftime(TIMESPAN_FORMAT)


def is_plausible(value: datetime, reference: datetime, config: TimespanConfig) -> bool:
    """Reject dates that are obviously wrong relative to the crawl time."""

    lower = reference - timedelta(days=config.max_past_days)
    upper = reference + timedelta(days=config.max_future_days)
    return lower <= value <= upper


def duplicate_single_date(
    start: Optional[datetime], end: Optional[datetime]
) -> Optional[Interval]:
    """When only one side is known, use it for both."""

    if start and end:
        return start, end
    if start:
        return start, start
    if end:
        return end, end
    return None


def collapse_source_timespan(
    start: Optional[datetime],
    end: Optional[datetime],
    crawled_at: datetime,
    last_update: Optional[datetime],
    config: TimespanConfig,
) -> Interval:
    """Normalize a structured source's own start/end pair.

    Implausible values are dropped first. A single surviving value is used
    for both ends; with none left, both fall back to the last-update time
    (or the crawl time when the source carries no last-update stamp).
    """

    start = start if start and is_plausible(start, crawled_at, config) else None
    end = end if end and is_plausible(end, crawled_at, config) else None
    interval = duplicate_single_date(start, end)
    if interval:
        return interval
    fallback = last_update or crawled_at
    LOGGER.debug("No plausible timespan, falling back to %s", fallback.isoformat())
    return fallback, fallback


def parse_interval(
    span: Timespan,
    config: TimespanConfig,
    reference: Optional[datetime] = None,
) -> Optional[Interval]:
    """Parse one extracted timespan; implausible sides are treated as absent."""

    start = parse_timespan_date(span.start, config.timezone)
    end = parse_timespan_date(span.end, config.timezone)
    if reference is not None:
        start = start if start and is_plausible(start, reference, config) else None
        end = end if end and is_plausible(end, reference, config) else None
    interval = duplicate_single_date(start, end)
    if interval and interval[1] < interval[0]:
        return interval[1], interval[0]
    return interval


def timespan_range(
    spans: Iterable[Timespan],
    config: TimespanConfig,
    reference: Optional[datetime] = None,
) -> Optional[Interval]:
    """Return (min start, max end) over every valid timespan, or None."""

    intervals = [
        interval
        for interval in (parse_interval(span, config, reference) for span in spans)
        if interval
    ]
    if not intervals:
        return None
    return min(start for start, _ in intervals), max(end for _, end in intervals)


def _document_spans(message: dict) -> list[Timespan]:
    spans: list[Timespan] = []
    for key in ("pins", "streets", "cadastral_properties"):
        for item in message.get(key) or []:
            spans.extend(Timespan.from_document(raw) for raw in item.get("timespans") or [])
    return spans


def is_message_current(message: dict, now: datetime, config: TimespanConfig) -> bool:
    """Decide whether a stored message is still relevant at ``now``.

    Any extracted timespan overlapping ``now`` makes the message current. A
    message with only a source-level range is checked against that range.
    A message with no usable timespans stays current for ``relevance_days``
    after creation, with the boundary itself excluded.
    """

    intervals = [
        interval
        for interval in (parse_interval(span, config) for span in _document_spans(message))
        if interval
    ]
    if intervals:
        return any(start <= now <= end for start, end in intervals)

    start = parse_datetime(message.get("timespan_start"))
    end = parse_datetime(message.get("timespan_end"))
    source_interval = duplicate_single_date(start, end)
    if source_interval:
        return source_interval[0] <= now <= source_interval[1]

    created_at = parse_datetime(message.get("created_at"))
    if created_at is None:
        return False
    return now - created_at < timedelta(days=config.relevance_days)
