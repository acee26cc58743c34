"""Message identifier allocation."""

from __future__ import annotations

import logging
import secrets
import string
from typing import Callable, Optional

from core.errors import MessageIdCollisionError
from core.models import InsertResult
from core.ports import DocumentStore

LOGGER = logging.getLogger(__name__)

MESSAGE_ID_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
MESSAGE_ID_LENGTH = 8
MAX_ID_ATTEMPTS = 10


def generate_message_id(length: int = MESSAGE_ID_LENGTH) -> str:
    return "".join(secrets.choice(MESSAGE_ID_ALPHABET) for _ in range(length))


def is_valid_message_id(value: str) -> bool:
    return len(value) == MESSAGE_ID_LENGTH and all(char in MESSAGE_ID_ALPHABET for char in value)


def insert_with_unique_id(
    store: DocumentStore,
    collection: str,
    document: dict,
    id_factory: Optional[Callable[[], str]] = None,
    max_attempts: int = MAX_ID_ATTEMPTS,
) -> str:
    """Insert ``document`` under a fresh random id and return that id.

    The store's create-if-absent insert is the uniqueness check. Collisions
    are astronomically rare, so running out of attempts points at a broken
    id source or store and is raised instead of retried further.
    """

    factory = id_factory or generate_message_id
    for attempt in range(1, max_attempts + 1):
        candidate = factory()
        if store.insert_one(collection, candidate, document) is InsertResult.CREATED:
            return candidate
        LOGGER.warning("Message id collision on %s (attempt %s/%s)", candidate, attempt, max_attempts)
    raise MessageIdCollisionError(
        f"Could not allocate a unique id in {collection} after {max_attempts} attempts"
    )
