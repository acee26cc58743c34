from __future__ import annotations

import logging

import pytest

from core.ingest_errors import IngestErrorCollector, recorder_or_logger, truncate_payload


def test_collector_keeps_entries_in_order(caplog) -> None:
    errors = IngestErrorCollector()
    assert not errors

    with caplog.at_level(logging.WARNING, logger="core.ingest_errors"):
        errors.warn("Partial geocoding: 1 locations failed")
        errors.error("Failed to parse categorize response")
        try:
            raise ValueError("boom")
        except ValueError:
            errors.exception("AI service call failed during categorize: boom")

    assert len(errors) == 3
    assert [entry["type"] for entry in errors.entries] == ["warning", "error", "exception"]
    assert errors.entries[0] == {"type": "warning", "text": "Partial geocoding: 1 locations failed"}
    assert [record.levelname for record in caplog.records] == ["WARNING", "ERROR", "ERROR"]
    assert caplog.records[2].exc_info is not None


def test_entries_are_a_copy() -> None:
    errors = IngestErrorCollector()
    errors.warn("x")
    errors.entries.append({"type": "error", "text": "y"})
    assert len(errors) == 1


def test_unknown_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        IngestErrorCollector().record("info", "x")


def test_truncate_payload() -> None:
    assert truncate_payload("short") == "short"
    clipped = truncate_payload("x" * 1500)
    assert clipped.startswith("x" * 1000)
    assert clipped.endswith("(1500 chars)")
    assert len(clipped) < 1100


def test_recorder_without_collector_only_logs(caplog) -> None:
    recorder = recorder_or_logger(None)
    with caplog.at_level(logging.ERROR, logger="core.ingest_errors"):
        recorder.error("nothing collected")
    assert caplog.records[0].getMessage() == "nothing collected"

    errors = IngestErrorCollector()
    assert recorder_or_logger(errors) is errors
