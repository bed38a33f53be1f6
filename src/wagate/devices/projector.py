"""
Projection of internal session records onto the public status view.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from wagate.devices.session import DeviceSession


@dataclass(frozen=True)
class DeviceStatus:
    """What API callers (and logs) see for a device."""

    status: str
    qr_code: Optional[str]
    last_update: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "status": self.status,
            "qrCode": self.qr_code,
            "lastUpdate": self.last_update.isoformat(),
        }


def project(session: DeviceSession) -> DeviceStatus:
    """Strip handle, counters and credential flags from a session."""
    return DeviceStatus(
        status=session.status.value,
        qr_code=session.qr_payload,
        last_update=session.last_update,
    )


def project_all(sessions: Mapping[str, DeviceSession]) -> dict[str, DeviceStatus]:
    return {device_id: project(session) for device_id, session in sessions.items()}
