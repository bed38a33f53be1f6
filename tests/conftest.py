"""Shared pytest fixtures and fakes."""

import asyncio
import uuid

import pytest

from wagate.database import GatewayDatabase
from wagate.devices.base import CredentialStore, DeviceHandle, ProtocolClient
from wagate.devices.errors import CredentialPurgeFailed, SessionGone
from wagate.devices.manager import DeviceLifecycleManager
from wagate.devices.reconnect import ReconnectPolicy

TEST_RECONNECT_DELAY = 0.01


class FakeHandle(DeviceHandle):
    """Records sends; tests push events through `emit`."""

    def __init__(self, device_id, on_event):
        self.device_id = device_id
        self.on_event = on_event
        self.sent = []
        self.closed = False
        self.send_error = None

    def emit(self, event):
        self.on_event(event)

    async def send_message(self, recipient, payload):
        if self.closed:
            raise SessionGone(self.device_id)
        if self.send_error:
            raise self.send_error
        self.sent.append((recipient, payload))
        return {"id": f"msg-{len(self.sent)}"}

    async def close(self):
        self.closed = True


class FakeProtocolClient(ProtocolClient):
    def __init__(self):
        self.handles: list[FakeHandle] = []
        self.connect_calls: list[str] = []
        self.fail_with = None
        self.connect_delay = 0.0
        self.closed = False

    async def connect(self, device_id, on_event):
        self.connect_calls.append(device_id)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_with:
            raise self.fail_with
        handle = FakeHandle(device_id, on_event)
        self.handles.append(handle)
        return handle

    async def aclose(self):
        self.closed = True

    def latest(self, device_id) -> FakeHandle:
        return [h for h in self.handles if h.device_id == device_id][-1]


class MemoryCredentialStore(CredentialStore):
    def __init__(self, stored=()):
        self.stored = set(stored)
        self.cleared: list[str] = []
        self.fail = False

    def load_credentials(self, device_id):
        return device_id in self.stored

    def clear_credentials(self, device_id):
        if self.fail:
            raise CredentialPurgeFailed(device_id, "permission denied")
        self.cleared.append(device_id)
        existed = device_id in self.stored
        self.stored.discard(device_id)
        return existed

    def list_devices(self):
        return sorted(self.stored)


def fake_qr_renderer(raw: str) -> str:
    return f"data:image/png;base64,{raw}"


@pytest.fixture
def fake_client():
    return FakeProtocolClient()


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
async def manager(fake_client, credentials):
    mgr = DeviceLifecycleManager(
        client=fake_client,
        credentials=credentials,
        policy=ReconnectPolicy(delay_seconds=TEST_RECONNECT_DELAY, max_attempts=3),
        qr_renderer=fake_qr_renderer,
    )
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database for testing."""
    database = GatewayDatabase(f"sqlite:///{tmp_path / 'wagate-test.db'}")
    yield database

    # Dispose engine to release file locks (Windows)
    database.engine.dispose()


@pytest.fixture
def unique_id():
    """Generate a unique test ID."""
    return f"test-{uuid.uuid4().hex[:12]}"
