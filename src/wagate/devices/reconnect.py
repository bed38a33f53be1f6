"""
Reconnection policy.

Devices that were paired before (stored credentials on disk) are retried
after a fixed delay, indefinitely. Devices that never completed pairing are
not retried; after `max_attempts` disconnects they are dropped for good.
A fresh QR code resets the counter, which is what keeps an unpaired device
alive while the user is still scanning.
"""

from dataclasses import dataclass
from enum import Enum

from wagate.devices.session import DeviceSession

DEFAULT_RECONNECT_DELAY = 5.0  # seconds
DEFAULT_MAX_ATTEMPTS = 3


class ReconnectAction(str, Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class ReconnectDecision:
    action: ReconnectAction
    attempts: int
    delay_seconds: float = 0.0
    exhausted: bool = False

    @property
    def should_retry(self) -> bool:
        return self.action == ReconnectAction.RETRY


class ReconnectPolicy:
    """Decides what happens after a non-logout disconnect."""

    def __init__(
        self,
        delay_seconds: float = DEFAULT_RECONNECT_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if delay_seconds < 0:
            raise ValueError("Reconnect delay cannot be negative")
        if max_attempts < 0:
            raise ValueError("Reconnect ceiling cannot be negative")
        self.delay_seconds = delay_seconds
        self.max_attempts = max_attempts

    def decide(self, session: DeviceSession) -> ReconnectDecision:
        """
        Count one more disconnect and choose between retrying and giving up.

        The returned decision carries the incremented attempt counter; the
        caller stores it on the session.
        """
        attempts = session.reconnect_attempts + 1

        if not session.has_stored_credentials and attempts > self.max_attempts:
            return ReconnectDecision(
                action=ReconnectAction.GIVE_UP, attempts=attempts, exhausted=True
            )

        if session.has_stored_credentials:
            return ReconnectDecision(
                action=ReconnectAction.RETRY,
                attempts=attempts,
                delay_seconds=self.delay_seconds,
            )

        return ReconnectDecision(action=ReconnectAction.GIVE_UP, attempts=attempts)
