"""Notification matching and dispatch.

Runs as a separate pass after ingestion: every finalized message that has
not been notified yet is compared against every user interest, matches are
stored once per (message, interest) pair, and push notifications are sent
in fixed-size batches.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from core.config import NotificationConfig
from core.dedup import MESSAGES
from core.errors import InvalidSubscriptionError
from core.geometry import distance_to_collection, point_in_polygon
from core.models import Interest, NotificationMatch, NotifySummary, parse_datetime
from core.ports import DocumentStore, PushNotifier

LOGGER = logging.getLogger(__name__)

INTERESTS = "interests"
MATCHES = "notification_matches"
SUBSCRIPTIONS = "notification_subscriptions"

MIN_RADIUS_METERS = 100
MAX_RADIUS_METERS = 1000

_LOCALITY_RE = re.compile(r"^[a-z]{2}\.[a-z0-9-]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def effective_radius(radius: float) -> float:
    return min(max(radius, MIN_RADIUS_METERS), MAX_RADIUS_METERS)


def deduplicate_matches(matches: list[NotificationMatch]) -> list[NotificationMatch]:
    """One notification per user per message; the closest interest wins."""

    best: dict[tuple[str, str], NotificationMatch] = {}
    for match in matches:
        key = (match.user_id, match.message_id)
        existing = best.get(key)
        if existing is None or match.distance < existing.distance:
            best[key] = match
    return list(best.values())


class NotificationMatcher:
    """Matches finalized messages against interests and sends notifications."""

    def __init__(
        self,
        store: DocumentStore,
        notifier: PushNotifier,
        config: NotificationConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._config = config
        self._clock = clock
        self._locality_cache: dict[str, Optional[dict]] = {}

    def _locality_boundary(self, locality: str) -> Optional[dict]:
        if locality in self._locality_cache:
            return self._locality_cache[locality]
        boundary = None
        if self._config.localities_dir and _LOCALITY_RE.match(locality):
            path = Path(self._config.localities_dir) / f"{locality}.geojson"
            if path.exists():
                with open(path, "r", encoding="utf-8") as handle:
                    boundary = json.load(handle)
        self._locality_cache[locality] = boundary
        return boundary

    def match_distance(self, message: dict, interest: Interest) -> Optional[float]:
        """Distance in meters when the message touches the interest circle."""

        center = interest.coordinates
        if message.get("city_wide"):
            boundary = self._locality_boundary(message.get("locality", ""))
            if boundary is None:
                return 0.0
            inside = any(
                point_in_polygon(center.lng, center.lat, (feature.get("geometry") or {}).get("coordinates") or [])
                for feature in boundary.get("features") or []
                if (feature.get("geometry") or {}).get("type") == "Polygon"
            )
            return 0.0 if inside else None

        distance = distance_to_collection(center, message.get("geo_json"))
        if distance is None or distance > effective_radius(interest.radius):
            return None
        return distance

    def find_matches(self, messages: list[dict], interests: list[Interest]) -> list[NotificationMatch]:
        matches: list[NotificationMatch] = []
        now = self._clock()
        for message in messages:
            created_at = parse_datetime(message.get("created_at"))
            for interest in interests:
                # Interests only see messages created after them.
                if interest.created_at and created_at and created_at < interest.created_at:
                    continue
                distance = self.match_distance(message, interest)
                if distance is None:
                    continue
                LOGGER.info(
                    "Match found: message=%s user=%s distance=%sm",
                    message["_id"],
                    interest.user_id[:8],
                    round(distance),
                )
                matches.append(
                    NotificationMatch(
                        user_id=interest.user_id,
                        message_id=message["_id"],
                        interest_id=interest.id,
                        distance=round(distance, 1),
                        matched_at=now,
                    )
                )
        return deduplicate_matches(matches)

    def _pending_messages(self, dry_run: bool = False) -> list[dict]:
        """Finalized messages that can match; the rest are retired from the queue."""

        matchable: list[dict] = []
        retired: list[str] = []
        for message in self._store.find_many(MESSAGES, where={"notified": False}):
            if not message.get("finalized_at"):
                continue
            if message.get("geo_json") or message.get("city_wide"):
                matchable.append(message)
            else:
                retired.append(message["_id"])
        if retired and not dry_run:
            for message_id in retired:
                self._store.update_one(MESSAGES, message_id, {"notified": True})
            LOGGER.info("Marked %s messages without geometry as notified", len(retired))
        return matchable

    def _store_match(self, match: NotificationMatch) -> bool:
        where = {"message_id": match.message_id, "interest_id": match.interest_id}
        if self._store.count(MATCHES, where=where):
            return False
        match.id = uuid.uuid4().hex
        self._store.insert_one(MATCHES, match.id, match.to_document())
        return True

    async def run(self, dry_run: bool = False) -> NotifySummary:
        summary = NotifySummary()
        messages = self._pending_messages(dry_run)
        summary.messages = len(messages)
        if not messages:
            LOGGER.info("No messages waiting for notification")
        interests = [Interest.from_document(doc) for doc in self._store.find_many(INTERESTS)]
        LOGGER.info("Matching %s messages against %s interests", len(messages), len(interests))

        matches = self.find_matches(messages, interests)
        summary.matches = len(matches)
        if dry_run:
            LOGGER.info("[dry-run] Would store %s matches for %s messages", len(matches), len(messages))
            return summary

        stored = sum(1 for match in matches if self._store_match(match))
        LOGGER.info("Stored %s new matches (%s already existed)", stored, len(matches) - stored)
        for message in messages:
            self._store.update_one(MESSAGES, message["_id"], {"notified": True})

        pending = [self._match_from_document(doc) for doc in self._store.find_many(MATCHES, where={"notified": False})]
        for offset in range(0, len(pending), self._config.batch_size):
            batch = pending[offset : offset + self._config.batch_size]
            # return_exceptions keeps one broken match from sinking the batch.
            results = await asyncio.gather(*(self._dispatch(match) for match in batch), return_exceptions=True)
            for match, result in zip(batch, results):
                if isinstance(result, BaseException):
                    LOGGER.error("Dispatch failed for match %s: %s", match.id, result)
                    summary.failed += 1
                elif result:
                    summary.notified += 1
                elif result is False:
                    summary.failed += 1
        LOGGER.info(
            "Notification summary: messages=%s matches=%s notified=%s failed=%s",
            summary.messages,
            summary.matches,
            summary.notified,
            summary.failed,
        )
        return summary

    @staticmethod
    def _match_from_document(doc: dict) -> NotificationMatch:
        return NotificationMatch(
            id=doc["_id"],
            user_id=doc["user_id"],
            message_id=doc["message_id"],
            interest_id=doc["interest_id"],
            distance=float(doc.get("distance", 0)),
            matched_at=parse_datetime(doc.get("matched_at")) or _utcnow(),
        )

    async def _dispatch(self, match: NotificationMatch) -> Optional[bool]:
        """Send one match to every device of its user.

        Returns True if any device accepted it, False if all failed and None
        when the user has no subscriptions.
        """

        message = self._store.find_by_id(MESSAGES, match.message_id)
        if message is None:
            self._store.update_one(MATCHES, match.id, {"notified": True, "error": "message not found"})
            return False

        subscriptions = self._store.find_many(SUBSCRIPTIONS, where={"user_id": match.user_id})
        devices: list[dict] = []
        for subscription in subscriptions:
            device = {"subscription_id": subscription["_id"], "sent_at": self._clock().isoformat()}
            try:
                await self._notifier.send(subscription, message, match)
                device["success"] = True
            except InvalidSubscriptionError as exc:
                LOGGER.warning("Stale subscription %s removed", subscription["_id"][:8])
                self._store.delete_many_by_ids(SUBSCRIPTIONS, [subscription["_id"]])
                device.update(success=False, error=str(exc))
            except Exception as exc:
                LOGGER.error("Failed to send notification for match %s: %s", match.id, exc)
                device.update(success=False, error=str(exc))
            devices.append(device)

        if not subscriptions:
            LOGGER.info("No subscriptions for user %s", match.user_id[:8])
        now = self._clock()
        self._store.update_one(
            MATCHES,
            match.id,
            {
                "notified": True,
                "notified_at": now.isoformat(),
                "device_notifications": devices,
                "message_snapshot": {
                    "text": message.get("text", ""),
                    "created_at": message.get("created_at"),
                    "source": message.get("source"),
                },
            },
        )
        if not devices:
            return None
        return any(device["success"] for device in devices)
