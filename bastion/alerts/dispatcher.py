"""
Bastion — Alert Dispatch.

Posts critical defense events (NEUTRALIZE decisions) to a configurable
webhook. Delivery is best-effort and never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from bastion.config import Settings, settings as default_settings

logger = logging.getLogger("bastion.alerts")


@dataclass
class AlertEvent:
    """Represents a single alert event."""
    level: str          # info | warning | critical
    title: str
    message: str
    source_ip: Optional[str] = None
    incident_id: Optional[str] = None
    metadata: Optional[dict] = None


class WebhookAlert:
    """Send alerts via configurable webhook URL."""

    def __init__(
        self,
        url: Optional[str] = None,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url or (config or default_settings).webhook_url
        self._client = client

    async def send(self, event: AlertEvent) -> bool:
        if not self.url:
            logger.debug("Webhook not configured, skipping alert")
            return False

        payload = {
            "level": event.level,
            "title": event.title,
            "message": event.message,
            "source_ip": event.source_ip,
            "incident_id": event.incident_id,
            "metadata": event.metadata,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload, timeout=10)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(self.url, json=payload, timeout=10)
            resp.raise_for_status()
            logger.info("Webhook alert sent: %s", event.title)
            return True
        except Exception:
            logger.exception("Failed to send webhook alert")
            return False
