"""
Device session records.

A `DeviceSession` is an immutable value: every transition produces a new
record so the registry can swap it in atomically and readers always see
status, QR payload and timestamp that belong together.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class DeviceState(str, Enum):
    """Externally visible lifecycle states of a device."""

    STARTING = "starting"
    WAITING_FOR_SCAN = "waiting_for_scan"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeviceSession:
    """Everything the gateway knows about one device."""

    device_id: str
    status: DeviceState = DeviceState.STARTING
    handle: Optional[Any] = None
    qr_payload: Optional[str] = None
    last_update: datetime = None  # type: ignore[assignment]
    reconnect_attempts: int = 0
    has_stored_credentials: bool = False
    generation: int = 0

    def __post_init__(self):
        if self.last_update is None:
            object.__setattr__(self, "last_update", utcnow())

    @property
    def is_live(self) -> bool:
        """
        True while a handle is being created or is in use.

        A disconnected device may still hold the handle it gave up with; it
        is not live and can be started again.
        """
        if self.status == DeviceState.STARTING:
            return True
        return self.handle is not None and self.status != DeviceState.DISCONNECTED

    def transition(self, status: DeviceState, **changes: Any) -> "DeviceSession":
        """
        Return a copy in a new state.

        The QR payload is dropped unless the caller passes one explicitly,
        and the timestamp is refreshed.
        """
        changes.setdefault("qr_payload", None)
        return replace(self, status=status, last_update=utcnow(), **changes)

    def with_handle(self, handle: Optional[Any]) -> "DeviceSession":
        return replace(self, handle=handle)
