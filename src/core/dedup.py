"""Deduplication helpers (core domain).

A source document is identified by its canonical ``url`` only. The
user-facing deep link never takes part in the key, so two copies of the
same announcement with different display links collapse to one message.
"""

from __future__ import annotations

import base64
import logging
import re
from typing import Iterable, Optional

from core.models import SourceDocument
from core.ports import DocumentStore

LOGGER = logging.getLogger(__name__)

MESSAGES = "messages"


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_address_text(text: str) -> str:
    """Normalize a location string for equality checks."""

    return _collapse_whitespace(text).lower()


def encode_document_id(url: str) -> str:
    """Deterministic, store-safe encoding of a source url."""

    encoded = base64.b64encode(url.encode("utf-8")).decode("ascii")
    return re.sub(r"[/+=]", "_", encoded)


def resolve_dedup_key(source: SourceDocument) -> str:
    """Return the key used to detect repeated ingestion of ``source``."""

    # An explicitly supplied key wins over the url-derived one.
    if source.dedup_key:
        return source.dedup_key
    return encode_document_id(source.url)


def resolve_deep_link(source: SourceDocument) -> Optional[str]:
    """User-facing link for a source.

    ``None`` falls back to the source url, an empty string means the message
    has no link at all.
    """

    if source.deep_link_url is None:
        return source.url
    return source.deep_link_url or None


def find_already_ingested(store: DocumentStore, keys: Iterable[str]) -> set[str]:
    """Return the subset of ``keys`` that already have a stored message."""

    unique_keys = sorted(set(keys))
    if not unique_keys:
        return set()
    existing = store.find_many(MESSAGES, where={"source_document_id": unique_keys})
    found = {doc["source_document_id"] for doc in existing if doc.get("source_document_id")}
    LOGGER.debug("Dedup lookup: %s keys, %s already ingested", len(unique_keys), len(found))
    return found
