"""
In-memory registry of device sessions.

The registry is the only shared mutable structure of the lifecycle layer.
Records are immutable and replaced wholesale under a short lock, so HTTP
readers never wait on event handling and never see a half-applied change.
"""

import threading
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from wagate.devices.session import DeviceSession

Mutator = Callable[[Optional[DeviceSession]], Optional[DeviceSession]]


class SessionRegistry:
    """Concurrent-safe mapping of device id -> DeviceSession."""

    def __init__(self):
        self._sessions: dict[str, DeviceSession] = {}
        self._lock = threading.Lock()

    def get(self, device_id: str) -> Optional[DeviceSession]:
        with self._lock:
            return self._sessions.get(device_id)

    def get_all(self) -> Mapping[str, DeviceSession]:
        """Read-only snapshot of every session."""
        with self._lock:
            return MappingProxyType(dict(self._sessions))

    def upsert(self, device_id: str, mutator: Mutator) -> Optional[DeviceSession]:
        """
        Atomically apply a transition to one session.

        Args:
            device_id: Key of the session.
            mutator: Receives the current record (or None) and returns the
                replacement. Returning None removes the entry. Exceptions
                raised by the mutator leave the registry untouched.

        Returns:
            The record stored after the call, or None if absent.
        """
        with self._lock:
            current = self._sessions.get(device_id)
            updated = mutator(current)
            if updated is None:
                self._sessions.pop(device_id, None)
            else:
                self._sessions[device_id] = updated
            return updated

    def delete(self, device_id: str) -> Optional[DeviceSession]:
        """Remove a session, returning the record that was removed."""
        with self._lock:
            return self._sessions.pop(device_id, None)

    def __contains__(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
