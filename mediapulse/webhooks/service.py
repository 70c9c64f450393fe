from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Sequence

import httpx

from mediapulse.core.config import Settings

logger = logging.getLogger(__name__)

MAX_LISTED_PATHS = 20


class WebhookEvent(str, Enum):
    FOUND = "found"
    PROCESSED = "processed"
    ERROR = "error"


_TITLES = {
    WebhookEvent.FOUND: "Found {count} new file{plural}",
    WebhookEvent.PROCESSED: "Sent {count} path{plural} to targets",
    WebhookEvent.ERROR: "Failed to send {count} path{plural} to targets",
}

_COLOURS = {
    WebhookEvent.FOUND: 0x3498DB,
    WebhookEvent.PROCESSED: 0x2ECC71,
    WebhookEvent.ERROR: 0xE74C3C,
}


class DiscordWebhook:
    def __init__(
        self,
        *,
        url: str,
        username: str = "MediaPulse",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._url = url
        self._username = username
        self._timeout = timeout_seconds
        self._transport = transport

    def payload(self, event: WebhookEvent, paths: Sequence[str], detail: str | None = None) -> dict[str, Any]:
        count = len(paths)
        lines = list(paths[:MAX_LISTED_PATHS])
        if count > MAX_LISTED_PATHS:
            lines.append(f"... and {count - MAX_LISTED_PATHS} more")
        if detail:
            lines.append("")
            lines.append(detail)
        return {
            "username": self._username,
            "embeds": [
                {
                    "title": _TITLES[event].format(count=count, plural="" if count == 1 else "s"),
                    "description": "\n".join(lines),
                    "color": _COLOURS[event],
                }
            ],
        }

    def send(self, event: WebhookEvent, paths: Sequence[str], detail: str | None = None) -> None:
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            response = client.post(self._url, json=self.payload(event, paths, detail))
            response.raise_for_status()


class WebhookNotifier:
    """Fans one event out to every configured webhook.

    Delivery is best effort: a failing webhook is logged and never affects the Job that
    triggered it.
    """

    def __init__(self, webhooks: Mapping[str, DiscordWebhook] | None = None):
        self._webhooks = dict(webhooks or {})

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.BaseTransport | None = None) -> "WebhookNotifier":
        return cls(
            {
                name: DiscordWebhook(
                    url=config.url,
                    username=config.username,
                    timeout_seconds=config.timeout_seconds,
                    transport=transport,
                )
                for name, config in settings.webhooks.items()
            }
        )

    @property
    def names(self) -> list[str]:
        return list(self._webhooks)

    def notify(self, event: WebhookEvent, paths: Sequence[str], detail: str | None = None) -> int:
        if not paths or not self._webhooks:
            return 0
        delivered = 0
        for name, webhook in self._webhooks.items():
            try:
                webhook.send(event, paths, detail)
            except httpx.HTTPError as exc:
                logger.warning("Webhook %s could not deliver %s event: %s", name, event.value, exc)
                continue
            delivered += 1
        return delivered
