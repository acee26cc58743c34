"""Per-message diagnostics collected during ingestion.

A collector is created for every message draft and passed explicitly through
the pipeline. Entries are persisted with the message so data-quality issues
can be audited without re-running ingestion.
"""

from __future__ import annotations

import logging
from typing import Optional

LOGGER = logging.getLogger(__name__)

WARNING = "warning"
ERROR = "error"
EXCEPTION = "exception"


def truncate_payload(text: str, max_length: int = 1000) -> str:
    """Clip raw service payloads before they end up in diagnostics."""

    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}… ({len(text)} chars)"


class IngestErrorCollector:
    """Accumulates warnings, errors and exceptions for one message."""

    def __init__(self) -> None:
        self._entries: list[dict] = []

    @property
    def entries(self) -> list[dict]:
        return list(self._entries)

    def record(self, error_type: str, text: str) -> None:
        if error_type not in {WARNING, ERROR, EXCEPTION}:
            raise ValueError(f"Unsupported ingest error type: {error_type}")
        self._entries.append({"type": error_type, "text": text})

    def warn(self, text: str) -> None:
        LOGGER.warning(text)
        self.record(WARNING, text)

    def error(self, text: str) -> None:
        LOGGER.error(text)
        self.record(ERROR, text)

    def exception(self, text: str) -> None:
        # Called from except blocks so the traceback lands in the log.
        LOGGER.error(text, exc_info=True)
        self.record(EXCEPTION, text)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class _LoggingRecorder:
    """Recorder used when no collector is attached; it only logs."""

    def warn(self, text: str) -> None:
        LOGGER.warning(text)

    def error(self, text: str) -> None:
        LOGGER.error(text)

    def exception(self, text: str) -> None:
        LOGGER.error(text, exc_info=True)


def recorder_or_logger(collector: Optional[IngestErrorCollector]):
    """Return the collector itself, or a log-only stand-in when absent."""

    if collector is not None:
        return collector
    return _LoggingRecorder()
