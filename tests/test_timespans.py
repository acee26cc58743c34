from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from core.config import TimespanConfig
from core.models import Timespan
from core.timespans import (
    collapse_source_timespan,
    format_timespan_date,
    is_message_current,
    parse_interval,
    parse_timespan_date,
    timespan_range,
)

SOFIA = ZoneInfo("Europe/Sofia")
CONFIG = TimespanConfig()


@pytest.mark.parametrize(
    "value",
    ["01.01.2024 08:00", "29.02.2024 23:59", "31.12.2025 00:00", "15.07.2025 12:30"],
)
def test_parse_format_parse_round_trips(value: str) -> None:
    parsed = parse_timespan_date(value)
    assert parsed is not None
    formatted = format_timespan_date(parsed)
    assert formatted == value
    assert parse_timespan_date(formatted) == parsed


def test_parse_uses_local_time() -> None:
    parsed = parse_timespan_date("01.01.2024 08:00")
    assert parsed == datetime(2024, 1, 1, 8, 0, tzinfo=SOFIA)
    assert parsed.astimezone(timezone.utc).hour == 6


@pytest.mark.parametrize(
    "value",
    [
        None,
        "",
        "31.02.2024 10:00",
        "29.02.2023 10:00",
        "32.01.2024 08:00",
        "01.13.2024 08:00",
        "01.01.2024 24:00",
        "01.01.2024 08:60",
        "1.1.2024 08:00",
        "2024-01-01 08:00",
        "01.01.2024",
        "сутринта",
        "٠١.٠١.٢٠٢٤ ٠٨:٠٠",
        "01.01.2024  08:00",
        "01.01.2024\t08:00",
    ],
)
def test_malformed_dates_are_rejected(value) -> None:
    assert parse_timespan_date(value) is None


def test_parse_interval_swaps_reversed_span() -> None:
    interval = parse_interval(Timespan(start="02.01.2024 18:00", end="02.01.2024 08:00"), CONFIG)
    assert interval is not None
    start, end = interval
    assert start < end


def test_parse_interval_duplicates_single_side() -> None:
    interval = parse_interval(Timespan(start="02.01.2024 08:00", end="скоро"), CONFIG)
    assert interval is not None
    assert interval[0] == interval[1]


def test_parse_interval_drops_implausible_dates() -> None:
    reference = datetime(2025, 12, 18, tzinfo=timezone.utc)
    interval = parse_interval(Timespan(start="01.01.2019 08:00", end="01.01.2019 18:00"), CONFIG, reference)
    assert interval is None


def test_timespan_range_covers_all_valid_spans() -> None:
    spans = [
        Timespan(start="03.01.2024 08:00", end="03.01.2024 18:00"),
        Timespan(start="broken", end="also broken"),
        Timespan(start="01.01.2024 08:00", end="01.01.2024 12:00"),
    ]
    start, end = timespan_range(spans, CONFIG)
    assert start == datetime(2024, 1, 1, 8, 0, tzinfo=SOFIA)
    assert end == datetime(2024, 1, 3, 18, 0, tzinfo=SOFIA)


def test_timespan_range_without_valid_dates_is_none() -> None:
    assert timespan_range([Timespan(start="", end="")], CONFIG) is None


def test_collapse_source_timespan_falls_back_to_crawl_time() -> None:
    crawled_at = datetime(2025, 12, 18, 8, 0, tzinfo=timezone.utc)
    far_future = crawled_at + timedelta(days=800)
    assert collapse_source_timespan(None, far_future, crawled_at, None, CONFIG) == (crawled_at, crawled_at)


def test_collapse_source_timespan_keeps_single_plausible_value() -> None:
    crawled_at = datetime(2025, 12, 18, 8, 0, tzinfo=timezone.utc)
    start = crawled_at + timedelta(days=1)
    assert collapse_source_timespan(start, None, crawled_at, None, CONFIG) == (start, start)


def test_past_pin_timespan_is_not_current() -> None:
    message = {
        "created_at": "2025-12-18T10:00:00+00:00",
        "pins": [
            {
                "address": "ул. Граф Игнатиев 15",
                "timespans": [{"start": "01.01.2024 08:00", "end": "01.01.2024 18:00"}],
            }
        ],
    }
    now = datetime(2025, 12, 19, 12, 0, tzinfo=timezone.utc)
    assert is_message_current(message, now, CONFIG) is False


def test_overlapping_street_timespan_is_current() -> None:
    message = {
        "created_at": "2025-01-01T10:00:00+00:00",
        "streets": [
            {
                "street": "ул. Оборище",
                "from": "A",
                "to": "B",
                "timespans": [{"start": "19.12.2025 08:00", "end": "19.12.2025 18:00"}],
            }
        ],
    }
    now = datetime(2025, 12, 19, 12, 0, tzinfo=timezone.utc)
    assert is_message_current(message, now, CONFIG) is True


def test_source_level_range_is_used_without_item_timespans() -> None:
    message = {
        "created_at": "2025-01-01T10:00:00+00:00",
        "timespan_start": "2025-12-18T00:00:00+00:00",
        "timespan_end": "2025-12-20T00:00:00+00:00",
    }
    now = datetime(2025, 12, 19, 12, 0, tzinfo=timezone.utc)
    assert is_message_current(message, now, CONFIG) is True


def test_relevance_window_excludes_boundary() -> None:
    now = datetime(2025, 12, 19, 12, 0, tzinfo=timezone.utc)
    at_boundary = {"created_at": (now - timedelta(days=7)).isoformat()}
    just_inside = {"created_at": (now - timedelta(days=7) + timedelta(seconds=1)).isoformat()}
    assert is_message_current(at_boundary, now, CONFIG) is False
    assert is_message_current(just_inside, now, CONFIG) is True


def test_relevance_window_is_configurable() -> None:
    now = datetime(2025, 12, 19, 12, 0, tzinfo=timezone.utc)
    message = {"created_at": (now - timedelta(days=10)).isoformat()}
    assert is_message_current(message, now, TimespanConfig(relevance_days=14)) is True
