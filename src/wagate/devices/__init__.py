"""
Device lifecycle layer for wagate.

A device is one WhatsApp Web login. The lifecycle manager owns a
protocol-client handle per device, drives its state machine from the
client's events, and schedules reconnects.
"""

from wagate.devices.base import (
    ClientEvent,
    CredentialStore,
    DeviceHandle,
    EventKind,
    MediaPayload,
    ProtocolClient,
)
from wagate.devices.errors import (
    AlreadyRunning,
    CredentialPurgeFailed,
    DeviceError,
    HandshakeFailed,
    RetryExhausted,
    SessionGone,
)
from wagate.devices.manager import DeviceLifecycleManager
from wagate.devices.projector import DeviceStatus, project
from wagate.devices.reconnect import ReconnectPolicy
from wagate.devices.registry import SessionRegistry
from wagate.devices.session import DeviceSession, DeviceState

__all__ = [
    "AlreadyRunning",
    "ClientEvent",
    "CredentialPurgeFailed",
    "CredentialStore",
    "DeviceError",
    "DeviceHandle",
    "DeviceLifecycleManager",
    "DeviceSession",
    "DeviceState",
    "DeviceStatus",
    "EventKind",
    "HandshakeFailed",
    "MediaPayload",
    "ProtocolClient",
    "ReconnectPolicy",
    "RetryExhausted",
    "SessionGone",
    "SessionRegistry",
    "project",
]
