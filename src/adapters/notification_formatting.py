"""Shared notification formatting helpers.

Keeping formatting here prevents drift between push adapters: the payload
(title, body, link) is built once and each channel only renders it.
"""

from __future__ import annotations

import html
from urllib.parse import quote

from core.models import NotificationMatch, NotificationPayload

TITLE = "Ново съобщение"


def message_preview(text: str, max_chars: int = 100) -> str:
    """Return the first ``max_chars`` characters, marking truncation with '...'."""

    text = " ".join((text or "").split())
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def build_notification_payload(
    message: dict,
    match: NotificationMatch,
    app_url: str,
    snippet_chars: int = 100,
) -> NotificationPayload:
    """Build the push payload for one matched message."""

    preview = message_preview(message.get("text", ""), snippet_chars)
    body = f"{preview} ({round(match.distance)}m от вашия район)"
    url = f"{app_url.rstrip('/')}/m/{quote(match.message_id, safe='')}"
    return NotificationPayload(title=TITLE, body=body, url=url, message_id=match.message_id)


def _format_markdown(payload: NotificationPayload) -> str:
    def escape_md(value: str) -> str:
        for ch in r"*_[`":
            value = value.replace(ch, f"\\{ch}")
        return value

    return "\n".join(
        [
            f"*{escape_md(payload.title)}*",
            "",
            escape_md(payload.body),
            "",
            payload.url,
        ]
    )


def _format_html(payload: NotificationPayload) -> str:
    safe_link = html.escape(payload.url)
    return "\n".join(
        [
            f"<b>{html.escape(payload.title)}</b>",
            "",
            html.escape(payload.body),
            "",
            f"<a href=\"{safe_link}\">{safe_link}</a>",
        ]
    )


def format_notification(payload: NotificationPayload, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(payload)
    if mode == "html":
        return _format_html(payload)
    raise ValueError(f"Unsupported notification format: {mode}")
