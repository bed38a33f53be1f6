"""Exceptions raised by the device lifecycle layer."""


class DeviceError(Exception):
    """Base class for device lifecycle errors."""

    def __init__(self, device_id: str, message: str):
        super().__init__(message)
        self.device_id = device_id


class AlreadyRunning(DeviceError):
    """A live session already exists for the device."""

    def __init__(self, device_id: str):
        super().__init__(device_id, f"Device '{device_id}' is already running")


class SessionGone(DeviceError):
    """No live handle exists for the device (never started, removed or torn down)."""

    def __init__(self, device_id: str, message: str | None = None):
        super().__init__(
            device_id, message or f"Device '{device_id}' not found or not started"
        )


class HandshakeFailed(DeviceError):
    """The protocol client could not be created or initialized."""

    def __init__(self, device_id: str, reason: str):
        super().__init__(device_id, f"Failed to start device '{device_id}': {reason}")
        self.reason = reason


class CredentialPurgeFailed(DeviceError):
    """Stored credentials exist but could not be deleted."""

    def __init__(self, device_id: str, reason: str):
        super().__init__(
            device_id, f"Failed to remove credentials for '{device_id}': {reason}"
        )
        self.reason = reason


class RetryExhausted(DeviceError):
    """A device without stored credentials ran out of reconnect attempts."""

    def __init__(self, device_id: str, attempts: int):
        super().__init__(
            device_id,
            f"Device '{device_id}' gave up after {attempts} reconnect attempts "
            "without valid credentials",
        )
        self.attempts = attempts
