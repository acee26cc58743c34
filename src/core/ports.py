"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, geocoding, extraction and
push delivery adapters so that the core can be reused with different
backends and driven by fakes in tests.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from core.models import Address, Coordinates, InsertResult, NotificationMatch


class DocumentStore(Protocol):
    """Collection-style persistence.

    Documents are plain dicts; the primary key is exposed as ``_id`` on reads.
    ``where`` is an equality filter where a list value means "any of" and
    ``None`` means "missing or null".
    """

    def find_many(
        self,
        collection: str,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        ...

    def find_by_id(self, collection: str, document_id: str) -> Optional[dict]:
        ...

    def insert_one(self, collection: str, document_id: str, document: dict) -> InsertResult:
        """Create the document only if ``document_id`` is free."""
        ...

    def update_one(self, collection: str, document_id: str, changes: dict) -> bool:
        ...

    def delete_many_by_ids(self, collection: str, document_ids: Iterable[str]) -> int:
        ...

    def count(self, collection: str, where: Optional[dict] = None) -> int:
        ...


class GeocodingBackend(Protocol):
    """One interchangeable geocoding strategy.

    Every method returns ``None`` when the lookup fails; backends log the
    underlying transport error themselves.
    """

    name: str

    async def geocode(self, query: str) -> Optional[Address]:
        ...

    async def geocode_intersection(self, street: str, cross_street: str) -> Optional[Coordinates]:
        ...

    async def street_path(
        self, street: str, start: Coordinates, end: Coordinates
    ) -> Optional[list[Coordinates]]:
        ...


class CadastreBackend(Protocol):
    """Optional capability a geocoding backend may also implement.

    ``cadastral_geometry`` returns the polygon rings of a cadastral property
    (УПИ) in ``[lng, lat]`` order, or ``None`` when it cannot be found.
    """

    async def cadastral_geometry(self, identifier: str) -> Optional[list[list[list[float]]]]:
        ...


class ExtractionService(Protocol):
    """Black-box AI service; every step returns the raw JSON response text."""

    async def filter_and_split(self, text: str) -> Optional[str]:
        ...

    async def categorize(self, text: str) -> Optional[str]:
        ...

    async def extract_locations(self, text: str) -> Optional[str]:
        ...


class PushNotifier(Protocol):
    """Push delivery to one device subscription.

    Raises InvalidSubscriptionError for subscriptions that should be removed;
    any other exception is treated as a transient delivery failure.
    """

    async def send(self, subscription: dict, message: dict, match: NotificationMatch) -> None:
        ...
