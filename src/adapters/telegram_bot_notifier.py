"""Telegram Bot API push adapter.

Each notification subscription carries the ``chat_id`` of a bot chat; the
adapter renders the payload as HTML and posts it through the Bot API.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request

from adapters.notification_formatting import build_notification_payload, format_notification
from core.errors import InvalidSubscriptionError
from core.models import NotificationMatch

# Bot API answers for chats that will never accept messages again.
_STALE_MARKERS = ("chat not found", "bot was blocked", "user is deactivated")


class TelegramBotNotifier:
    """PushNotifier that delivers notifications via the Telegram Bot API."""

    def __init__(self, bot_token: str, app_url: str, snippet_chars: int = 100) -> None:
        self._bot_token = bot_token
        self._app_url = app_url
        self._snippet_chars = snippet_chars

    def _endpoint(self) -> str:
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    def _post(self, payload: dict) -> None:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=10):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            if e.code in (400, 403) and any(marker in body.lower() for marker in _STALE_MARKERS):
                raise InvalidSubscriptionError(f"Bot API rejected chat {payload['chat_id']}: {body}") from e
            raise RuntimeError(f"Bot API error {e.code}: {body}") from e

    async def send(self, subscription: dict, message: dict, match: NotificationMatch) -> None:
        """Send the formatted notification to the subscription's chat."""

        chat_id = subscription.get("chat_id")
        if not chat_id:
            raise InvalidSubscriptionError(f"Subscription {subscription.get('_id')} has no chat_id")
        notification = build_notification_payload(message, match, self._app_url, self._snippet_chars)
        payload = {
            "chat_id": chat_id,
            "text": format_notification(notification, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        # urllib blocks, so the request runs off the event loop.
        await asyncio.to_thread(self._post, payload)
