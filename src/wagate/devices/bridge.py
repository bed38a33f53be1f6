"""
Protocol client backed by a WhatsApp Web bridge process.

The bridge is a sidecar (whatsapp-web.js running headless Chromium) that
exposes one session per device:

    POST   {bridge}/sessions/{id}/start       create + initialize the client
    WS     {bridge}/sessions/{id}/events      event stream (JSON per frame)
    POST   {bridge}/sessions/{id}/messages    send text (JSON) or media (multipart)
    DELETE {bridge}/sessions/{id}             destroy the client

Event frames:
    {"type": "qr", "qr": "2@..."}
    {"type": "ready"}
    {"type": "authenticated"}
    {"type": "auth_failure", "message": "..."}
    {"type": "disconnected", "reason": "LOGOUT"}
    {"type": "loading_screen", "percent": 40, "message": "..."}
    {"type": "message", "from": "...@c.us", "body": "...", ...}
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import httpx
import websockets

from wagate.devices.base import (
    ClientEvent,
    CredentialStore,
    DeviceHandle,
    EventCallback,
    EventKind,
    MediaPayload,
    Payload,
    ProtocolClient,
)
from wagate.devices.errors import HandshakeFailed, SessionGone
from wagate.logger import get_logger

logger = get_logger(__name__)

CONNECTION_LOST_REASON = "CONNECTION_LOST"

_EVENT_TYPES = {
    "qr": EventKind.QR,
    "ready": EventKind.READY,
    "authenticated": EventKind.AUTHENTICATED,
    "auth_failure": EventKind.AUTH_FAILURE,
    "disconnected": EventKind.DISCONNECTED,
    "loading_screen": EventKind.LOADING_PROGRESS,
    "loading_progress": EventKind.LOADING_PROGRESS,
    "message": EventKind.MESSAGE,
}


def parse_bridge_event(data: dict[str, Any]) -> Optional[ClientEvent]:
    """Map one bridge frame to a ClientEvent; unknown frames yield None."""
    kind = _EVENT_TYPES.get(data.get("type", ""))
    if kind is None:
        return None

    if kind == EventKind.QR:
        return ClientEvent.qr(str(data.get("qr", "")))
    if kind == EventKind.AUTH_FAILURE:
        return ClientEvent.auth_failure(str(data.get("message", "")))
    if kind == EventKind.DISCONNECTED:
        return ClientEvent.disconnected(str(data.get("reason") or "unknown"))
    if kind == EventKind.LOADING_PROGRESS:
        return ClientEvent.loading_progress(
            int(data.get("percent", 0) or 0), str(data.get("message", ""))
        )
    if kind == EventKind.MESSAGE:
        return ClientEvent.message(**{k: v for k, v in data.items() if k != "type"})
    return ClientEvent(kind)


class BridgeHandle(DeviceHandle):
    """One bridge session, plus the task that reads its event stream."""

    def __init__(
        self,
        device_id: str,
        http: httpx.AsyncClient,
        ws,
        on_event: EventCallback,
    ):
        self.device_id = device_id
        self._http = http
        self._ws = ws
        self._on_event = on_event
        self._closed = False
        self._reader: asyncio.Task | None = None

    def start_reader(self) -> None:
        self._reader = asyncio.create_task(
            self._read_events(), name=f"bridge-events:{self.device_id}"
        )

    async def _read_events(self) -> None:
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (TypeError, ValueError):
                    logger.warning(f"[{self.device_id}] Malformed bridge frame")
                    continue

                event = parse_bridge_event(data)
                if event is None:
                    logger.debug(
                        f"[{self.device_id}] Unhandled bridge frame: {data.get('type')}"
                    )
                    continue
                self._on_event(event)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"[{self.device_id}] Bridge event stream closed: {e}")

        if not self._closed:
            self._on_event(ClientEvent.disconnected(CONNECTION_LOST_REASON))

    async def send_message(self, recipient: str, payload: Payload) -> dict[str, Any]:
        if self._closed:
            raise SessionGone(self.device_id)

        url = f"/sessions/{self.device_id}/messages"
        if isinstance(payload, MediaPayload):
            content = await asyncio.to_thread(Path(payload.path).read_bytes)
            response = await self._http.post(
                url,
                data={
                    "chatId": recipient,
                    "caption": payload.caption,
                    "sendAsDocument": "true" if payload.as_document else "false",
                },
                files={"file": (payload.filename, content, payload.mimetype)},
            )
        else:
            response = await self._http.post(
                url, json={"chatId": recipient, "text": payload}
            )

        if response.status_code in (404, 410):
            raise SessionGone(self.device_id)
        response.raise_for_status()

        try:
            return response.json()
        except ValueError:
            return {}

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"[{self.device_id}] Error closing event stream: {e}")

        try:
            await self._http.delete(f"/sessions/{self.device_id}")
        except httpx.HTTPError as e:
            logger.warning(f"[{self.device_id}] Error destroying bridge session: {e}")


class BridgeProtocolClient(ProtocolClient):
    """
    Creates device handles on a WhatsApp Web bridge.

    Args:
        base_url: HTTP base URL of the bridge.
        ws_url: WebSocket base URL of the bridge.
        timeout: Seconds to wait for bridge requests.
        credentials: Store whose per-device directories the bridge persists into.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        ws_url: str,
        timeout: float = 60.0,
        credentials: CredentialStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.ws_url = ws_url.rstrip("/")
        self.credentials = credentials
        self._http = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def connect(self, device_id: str, on_event: EventCallback) -> DeviceHandle:
        events_url = f"{self.ws_url}/sessions/{device_id}/events"
        logger.info(f"[{device_id}] Opening bridge session at {self.base_url}")

        # Subscribe before starting so the first QR frame is not missed.
        try:
            ws = await websockets.connect(events_url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise HandshakeFailed(device_id, f"Cannot reach bridge: {e}") from e

        session_dir = self.credentials.path_for(device_id) if self.credentials else None
        try:
            response = await self._http.post(
                f"/sessions/{device_id}/start",
                json={"sessionDir": str(session_dir) if session_dir else None},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            await ws.close()
            raise HandshakeFailed(device_id, str(e)) from e

        handle = BridgeHandle(device_id, self._http, ws, on_event)
        handle.start_reader()
        return handle

    async def aclose(self) -> None:
        await self._http.aclose()
