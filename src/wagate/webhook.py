"""
Outbound webhook for inbound WhatsApp messages.

Every message a device receives is POSTed as JSON to the configured URL:

    {"type": "text", "device": "d1", "from": "923001234567@c.us",
     "message": "hi", "timestamp": "2024-01-01T12:00:00+00:00"}

Delivery is best-effort: failures are logged and never reach the device.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from wagate.logger import get_logger

logger = get_logger(__name__)


def build_payload(device_id: str, data: dict[str, Any]) -> dict[str, Any]:
    """Shape a bridge message event into the webhook body."""
    media_type = data.get("mediaType") or data.get("media_type")
    payload: dict[str, Any] = {
        "type": "media" if media_type else "text",
        "device": device_id,
        "from": data.get("from", ""),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if media_type:
        payload["mediaType"] = media_type
        payload["filePath"] = data.get("filePath") or data.get("file_path")
    else:
        payload["message"] = data.get("body", data.get("message", ""))
    return payload


class WebhookNotifier:
    """POSTs inbound messages to a single webhook URL."""

    def __init__(self, url: Optional[str], timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def send(self, payload: dict[str, Any]) -> bool:
        if not self.url:
            logger.debug("No webhook URL defined. Skipping webhook.")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook: {e}")
            return False

        logger.debug("Webhook sent.")
        return True

    async def __call__(self, device_id: str, data: dict[str, Any]) -> None:
        """Message handler for DeviceLifecycleManager."""
        await self.send(build_payload(device_id, data))
