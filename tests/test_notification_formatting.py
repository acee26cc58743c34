from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from adapters.log_notifier import LogNotifier
from adapters.notification_formatting import (
    build_notification_payload,
    format_notification,
    message_preview,
)
from core.models import NotificationMatch


def _match(distance: float = 399.6, message_id: str = "aB3dE5gH") -> NotificationMatch:
    return NotificationMatch(
        user_id="user-1",
        message_id=message_id,
        interest_id="interest-1",
        distance=distance,
        matched_at=datetime(2025, 12, 19, 10, 0, tzinfo=timezone.utc),
    )


def test_payload_has_preview_distance_and_link() -> None:
    payload = build_notification_payload({"text": "в" * 150}, _match(), "https://cityscope.bg/")

    assert payload.title == "Ново съобщение"
    assert payload.body == "в" * 100 + "... (400m от вашия район)"
    assert payload.url == "https://cityscope.bg/m/aB3dE5gH"
    assert payload.message_id == "aB3dE5gH"


def test_short_text_is_not_truncated() -> None:
    assert message_preview("Спиране\n на водата", 100) == "Спиране на водата"


def test_html_escapes_text() -> None:
    payload = build_notification_payload({"text": "<b>ремонт</b> & авария"}, _match(), "https://cityscope.bg")
    rendered = format_notification(payload, mode="html")

    assert rendered.startswith("<b>Ново съобщение</b>")
    assert "&lt;b&gt;ремонт&lt;/b&gt; &amp; авария" in rendered
    assert '<a href="https://cityscope.bg/m/aB3dE5gH">' in rendered


def test_markdown_escapes_specials() -> None:
    payload = build_notification_payload({"text": "ул. *Шипка* [6]"}, _match(), "https://cityscope.bg")
    rendered = format_notification(payload, mode="markdown")

    assert "ул. \\*Шипка\\* \\[6]" in rendered
    assert rendered.endswith("https://cityscope.bg/m/aB3dE5gH")


def test_unknown_mode_is_rejected() -> None:
    payload = build_notification_payload({"text": "x"}, _match(), "https://cityscope.bg")
    with pytest.raises(ValueError):
        format_notification(payload, mode="plain")


def test_log_notifier_renders_markdown() -> None:
    notifier = LogNotifier("https://cityscope.bg")
    asyncio.run(notifier.send({"_id": "sub-1"}, {"text": "Спиране на водата"}, _match(distance=120.2)))

    assert len(notifier.sent) == 1
    assert "Спиране на водата (120m от вашия район)" in notifier.sent[0]


def test_log_notifier_keeps_only_recent_renderings() -> None:
    notifier = LogNotifier("https://cityscope.bg", keep_last=2)

    async def run():
        for index in range(3):
            await notifier.send({"_id": "sub-1"}, {"text": f"съобщение {index}"}, _match())

    asyncio.run(run())

    assert len(notifier.sent) == 2
    assert "съобщение 0" not in notifier.sent[0]
    assert "съобщение 2" in notifier.sent[-1]
