"""Logging push adapter.

Writes notifications to the log instead of delivering them; used for local
runs where no push transport is configured.
"""

from __future__ import annotations

import logging
from collections import deque

from adapters.notification_formatting import build_notification_payload, format_notification
from core.models import NotificationMatch

LOGGER = logging.getLogger(__name__)


class LogNotifier:
    """PushNotifier that logs the Markdown rendering of each notification.

    The most recent ``keep_last`` renderings stay available on ``sent``.
    """

    def __init__(self, app_url: str, snippet_chars: int = 100, keep_last: int = 100) -> None:
        self._app_url = app_url
        self._snippet_chars = snippet_chars
        self.sent: deque[str] = deque(maxlen=keep_last)

    async def send(self, subscription: dict, message: dict, match: NotificationMatch) -> None:
        payload = build_notification_payload(message, match, self._app_url, self._snippet_chars)
        text = format_notification(payload, mode="markdown")
        self.sent.append(text)
        LOGGER.info("Notification for subscription %s:\n%s", subscription.get("_id"), text)
