"""
Interfaces of the collaborators the lifecycle manager drives.

A protocol client creates one handle per device. The handle is the live
connection to WhatsApp Web; everything it learns is reported back as
`ClientEvent`s through the callback given to `connect`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

LOGGED_OUT_REASON = "LOGOUT"


class EventKind(str, Enum):
    QR = "qr"
    READY = "ready"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    LOADING_PROGRESS = "loading_progress"
    MESSAGE = "message"


@dataclass(frozen=True)
class ClientEvent:
    """
    One event emitted by a protocol-client handle.

    Example:
        ClientEvent(EventKind.QR, {"qr": "2@abc..."})
        ClientEvent(EventKind.DISCONNECTED, {"reason": "LOGOUT"})
        ClientEvent(EventKind.LOADING_PROGRESS, {"percent": 40, "message": "..."})
    """

    kind: EventKind
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def qr(cls, raw: str) -> "ClientEvent":
        return cls(EventKind.QR, {"qr": raw})

    @classmethod
    def ready(cls) -> "ClientEvent":
        return cls(EventKind.READY)

    @classmethod
    def authenticated(cls) -> "ClientEvent":
        return cls(EventKind.AUTHENTICATED)

    @classmethod
    def auth_failure(cls, message: str = "") -> "ClientEvent":
        return cls(EventKind.AUTH_FAILURE, {"message": message})

    @classmethod
    def disconnected(cls, reason: str) -> "ClientEvent":
        return cls(EventKind.DISCONNECTED, {"reason": reason})

    @classmethod
    def loading_progress(cls, percent: int, message: str = "") -> "ClientEvent":
        return cls(EventKind.LOADING_PROGRESS, {"percent": percent, "message": message})

    @classmethod
    def message(cls, **data: Any) -> "ClientEvent":
        return cls(EventKind.MESSAGE, data)


EventCallback = Callable[[ClientEvent], None]


@dataclass(frozen=True)
class MediaPayload:
    """A file to send as an image or a document."""

    path: Path
    mimetype: str
    filename: str
    caption: str = ""
    as_document: bool = False

    @property
    def is_image(self) -> bool:
        return self.mimetype.startswith("image/") and not self.as_document


Payload = Union[str, MediaPayload]


class DeviceHandle(ABC):
    """Live protocol-client instance for one device."""

    device_id: str

    @abstractmethod
    async def send_message(self, recipient: str, payload: Payload) -> dict[str, Any]:
        """
        Send a text or media message.

        Args:
            recipient: Chat id in the client's format (e.g. "923001234567@c.us").
            payload: Message text or a MediaPayload.

        Returns:
            Whatever delivery info the client reports (may be empty).

        Raises:
            SessionGone: If the handle was closed.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Must be safe to call more than once."""
        pass


class ProtocolClient(ABC):
    """Factory of device handles."""

    @abstractmethod
    async def connect(self, device_id: str, on_event: EventCallback) -> DeviceHandle:
        """
        Create and initialize a handle for a device.

        Returns as soon as the handle exists; pairing progress is reported
        through `on_event`.

        Raises:
            HandshakeFailed: If the client cannot be created or initialized.
        """
        pass

    async def aclose(self) -> None:
        """Release client-wide resources."""
        return None


class CredentialStore(ABC):
    """Persistent per-device pairing credentials."""

    @abstractmethod
    def load_credentials(self, device_id: str) -> bool:
        """Return True if credentials are stored for the device."""
        pass

    @abstractmethod
    def clear_credentials(self, device_id: str) -> bool:
        """
        Delete stored credentials.

        Returns:
            True if something was deleted, False if nothing was stored.

        Raises:
            CredentialPurgeFailed: If the credentials exist but cannot be removed.
        """
        pass

    def list_devices(self) -> list[str]:
        """Device ids that currently have stored credentials."""
        return []

    def path_for(self, device_id: str) -> Optional[Path]:
        return None
