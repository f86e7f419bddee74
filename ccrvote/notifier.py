"""Webhook notifications for the minutes/publication service."""

from __future__ import annotations

import httpx
import structlog

log = structlog.get_logger(__name__)


class Notifier:
    """Send webhook notifications for judgment events."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = httpx.AsyncClient()

    async def notify(self, event: str, payload: dict) -> None:
        if not self.webhook_url or event not in self.events:
            return

        body = {"event": event, **payload}
        try:
            response = await self.client.post(self.webhook_url, json=body, timeout=10)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            # Delivery failure must not undo a committed transition
            log.warning("notify.failed", notify_event=event, error=str(exc))

    async def close(self) -> None:
        await self.client.aclose()
