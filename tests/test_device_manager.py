"""
Unit tests for the DeviceLifecycleManager state machine.
"""

import asyncio
from unittest.mock import patch

import pytest

from wagate.devices.base import ClientEvent
from wagate.devices.errors import (
    AlreadyRunning,
    CredentialPurgeFailed,
    HandshakeFailed,
    SessionGone,
)
from wagate.devices.session import DeviceState
from wagate.validation import ValidationError

# Reconnect delay in the fixture policy is 0.01s
WAIT_FOR_RETRY = 0.08


async def emit(manager, handle, event):
    handle.emit(event)
    await manager.wait_idle(handle.device_id)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_creates_handle_in_starting(self, manager, fake_client):
        session = await manager.start("d1")

        assert session.status == DeviceState.STARTING
        assert session.handle is fake_client.latest("d1")
        assert manager.get_status("d1").status == "starting"

    @pytest.mark.asyncio
    async def test_status_observable_while_connecting(self, manager, fake_client):
        fake_client.connect_delay = 0.05
        task = asyncio.create_task(manager.start("d1"))
        await asyncio.sleep(0.01)

        assert manager.get_status("d1").status == "starting"
        await task

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_handle(self, manager, fake_client):
        fake_client.connect_delay = 0.05

        results = await asyncio.gather(
            manager.start("d1"), manager.start("d1"), return_exceptions=True
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyRunning)
        assert len(fake_client.handles) == 1

    @pytest.mark.asyncio
    async def test_start_while_connected_raises(self, manager, fake_client):
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())

        with pytest.raises(AlreadyRunning):
            await manager.start("d1")

    @pytest.mark.asyncio
    async def test_handshake_failure_leaves_disconnected(self, manager, fake_client):
        fake_client.fail_with = RuntimeError("chromium crashed")

        with pytest.raises(HandshakeFailed, match="chromium crashed"):
            await manager.start("d1")

        assert manager.get_status("d1").status == "disconnected"
        assert manager.get_session("d1").handle is None

    @pytest.mark.asyncio
    async def test_restart_after_handshake_failure(self, manager, fake_client):
        fake_client.fail_with = RuntimeError("boom")
        with pytest.raises(HandshakeFailed):
            await manager.start("d1")

        fake_client.fail_with = None
        session = await manager.start("d1")
        assert session.handle is not None

    @pytest.mark.asyncio
    async def test_invalid_device_id(self, manager):
        with pytest.raises(ValidationError):
            await manager.start("../etc")

    @pytest.mark.asyncio
    async def test_credentials_checked_at_start(self, manager, credentials):
        credentials.stored.add("d1")
        session = await manager.start("d1")
        assert session.has_stored_credentials is True

    @pytest.mark.asyncio
    async def test_devices_are_independent(self, manager, fake_client):
        await manager.start("d1")
        await manager.start("d2")

        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())

        assert manager.get_status("d1").status == "connected"
        assert manager.get_status("d2").status == "starting"


class TestEvents:
    @pytest.mark.asyncio
    async def test_qr_sets_waiting_for_scan(self, manager, fake_client):
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.qr("X"))

        status = manager.get_status("d1")
        assert status.status == "waiting_for_scan"
        assert status.qr_code == "data:image/png;base64,X"

    @pytest.mark.asyncio
    async def test_ready_clears_qr(self, manager, fake_client):
        await manager.start("d1")
        handle = fake_client.latest("d1")
        await emit(manager, handle, ClientEvent.qr("X"))
        await emit(manager, handle, ClientEvent.ready())

        status = manager.get_status("d1")
        assert status.status == "connected"
        assert status.qr_code is None
        assert manager.connected_count == 1

    @pytest.mark.asyncio
    async def test_loading_progress_preserves_qr(self, manager, fake_client):
        await manager.start("d1")
        handle = fake_client.latest("d1")
        await emit(manager, handle, ClientEvent.qr("X"))
        await emit(manager, handle, ClientEvent.loading_progress(40, "Syncing"))

        status = manager.get_status("d1")
        assert status.status == "connecting"
        assert status.qr_code == "data:image/png;base64,X"

    @pytest.mark.asyncio
    async def test_authenticated_is_informational(self, manager, fake_client):
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.authenticated())
        assert manager.get_status("d1").status == "starting"

    @pytest.mark.asyncio
    async def test_events_processed_in_order(self, manager, fake_client):
        await manager.start("d1")
        handle = fake_client.latest("d1")

        handle.emit(ClientEvent.qr("X"))
        handle.emit(ClientEvent.loading_progress(90))
        handle.emit(ClientEvent.ready())
        await manager.wait_idle("d1")

        assert manager.get_status("d1").status == "connected"

    @pytest.mark.asyncio
    async def test_qr_render_failure_degrades_to_disconnected(
        self, fake_client, credentials
    ):
        from wagate.devices.manager import DeviceLifecycleManager

        def broken_renderer(raw):
            raise ValueError("cannot render")

        mgr = DeviceLifecycleManager(fake_client, credentials, qr_renderer=broken_renderer)
        try:
            await mgr.start("d1")
            await emit(mgr, fake_client.latest("d1"), ClientEvent.qr("X"))

            assert mgr.get_status("d1").status == "disconnected"
            assert mgr.get_status("d1").qr_code is None
        finally:
            await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_events_from_old_handle_are_ignored(self, manager, fake_client):
        await manager.start("d1")
        old = fake_client.latest("d1")
        await manager.remove("d1")
        await manager.start("d1")

        await emit(manager, old, ClientEvent.ready())

        assert manager.get_status("d1").status == "starting"

    @pytest.mark.asyncio
    async def test_status_listener_notified(self, manager, fake_client):
        seen = []
        manager.add_status_listener(lambda device_id, status: seen.append(
            (device_id, status.status if status else None)
        ))

        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())
        await manager.remove("d1")

        assert seen == [("d1", "starting"), ("d1", "connected"), ("d1", None)]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_transitions(self, manager, fake_client):
        async def broken(device_id, status):
            raise RuntimeError("db down")

        manager.add_status_listener(broken)
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())

        assert manager.get_status("d1").status == "connected"

    @pytest.mark.asyncio
    async def test_message_forwarded_to_handler(self, fake_client, credentials):
        from wagate.devices.manager import DeviceLifecycleManager

        received = []

        async def handler(device_id, data):
            received.append((device_id, data))

        mgr = DeviceLifecycleManager(fake_client, credentials, message_handler=handler)
        try:
            await mgr.start("d1")
            await emit(
                mgr, fake_client.latest("d1"), ClientEvent.message(**{"from": "x@c.us", "body": "hi"})
            )
            assert received == [("d1", {"from": "x@c.us", "body": "hi"})]
        finally:
            await mgr.shutdown()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_manual_start_after_giving_up_replaces_kept_handle(
        self, manager, fake_client
    ):
        await manager.start("d1")
        old = fake_client.latest("d1")
        await emit(manager, old, ClientEvent.disconnected("NAVIGATION"))
        assert manager.get_status("d1").status == "disconnected"

        session = await manager.start("d1")

        assert old.closed
        assert session.handle is fake_client.latest("d1")
        assert session.handle is not old
        await emit(manager, old, ClientEvent.ready())
        assert manager.get_status("d1").status == "starting"

    @pytest.mark.asyncio
    async def test_manual_start_after_qr_failure(self, manager, fake_client):
        await manager.start("d1")
        old = fake_client.latest("d1")
        def broken_renderer(raw):
            raise ValueError("cannot render")

        manager._render_qr = broken_renderer
        await emit(manager, old, ClientEvent.qr("X"))
        assert manager.get_status("d1").status == "disconnected"

        await manager.start("d1")

        assert old.closed
        assert len(fake_client.handles) == 2

    @pytest.mark.asyncio
    async def test_without_credentials_gives_up_after_four_disconnects(
        self, manager, fake_client
    ):
        await manager.start("d1")
        handle = fake_client.latest("d1")

        for _ in range(3):
            await emit(manager, handle, ClientEvent.disconnected("NAVIGATION"))
            assert manager.get_status("d1").status == "disconnected"
            assert manager.get_session("d1").handle is handle

        await emit(manager, handle, ClientEvent.disconnected("NAVIGATION"))
        await asyncio.sleep(WAIT_FOR_RETRY)

        session = manager.get_session("d1")
        assert session.status == DeviceState.DISCONNECTED
        assert session.handle is None
        assert handle.closed
        assert not manager.has_pending_reconnect("d1")
        assert fake_client.connect_calls == ["d1"]

    @pytest.mark.asyncio
    async def test_with_credentials_reconnects_once(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        old = fake_client.latest("d1")

        await emit(manager, old, ClientEvent.disconnected("ECONNRESET"))

        session = manager.get_session("d1")
        assert session.status == DeviceState.RECONNECTING
        assert session.handle is None
        assert session.reconnect_attempts == 1
        assert old.closed
        assert manager.has_pending_reconnect("d1")

        await asyncio.sleep(WAIT_FOR_RETRY)
        assert fake_client.connect_calls == ["d1", "d1"]
        assert manager.get_session("d1").handle is fake_client.latest("d1")
        assert not manager.has_pending_reconnect("d1")

        await asyncio.sleep(WAIT_FOR_RETRY)
        assert fake_client.connect_calls == ["d1", "d1"]

    @pytest.mark.asyncio
    async def test_qr_resets_attempts(self, manager, fake_client):
        await manager.start("d1")
        handle = fake_client.latest("d1")
        await emit(manager, handle, ClientEvent.disconnected("NAVIGATION"))
        await emit(manager, handle, ClientEvent.disconnected("NAVIGATION"))
        assert manager.get_session("d1").reconnect_attempts == 2

        await emit(manager, handle, ClientEvent.qr("Y"))

        assert manager.get_session("d1").reconnect_attempts == 0
        assert manager.get_status("d1").status == "waiting_for_scan"

    @pytest.mark.asyncio
    async def test_ready_resets_attempts(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.disconnected("ECONNRESET"))
        await asyncio.sleep(WAIT_FOR_RETRY)

        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())
        assert manager.get_session("d1").reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_logout_ends_session_without_retry(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        handle = fake_client.latest("d1")

        await emit(manager, handle, ClientEvent.disconnected("LOGOUT"))
        await asyncio.sleep(WAIT_FOR_RETRY)

        session = manager.get_session("d1")
        assert session.status == DeviceState.DISCONNECTED
        assert session.handle is None
        assert handle.closed
        assert "d1" in credentials.cleared
        assert fake_client.connect_calls == ["d1"]

    @pytest.mark.asyncio
    async def test_auth_failure_purges_credentials(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        handle = fake_client.latest("d1")

        await emit(manager, handle, ClientEvent.auth_failure("bad session"))

        assert manager.get_status("d1").status == "disconnected"
        assert manager.get_session("d1").handle is None
        assert "d1" not in credentials.stored

        # Must be restarted explicitly
        session = await manager.start("d1")
        assert session.has_stored_credentials is False

    @pytest.mark.asyncio
    async def test_purge_failure_on_logout_is_logged(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        credentials.fail = True
        await manager.start("d1")

        await emit(manager, fake_client.latest("d1"), ClientEvent.disconnected("LOGOUT"))

        assert manager.get_status("d1").status == "disconnected"

    @pytest.mark.asyncio
    async def test_remove_cancels_pending_reconnect(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.disconnected("ECONNRESET"))
        assert manager.has_pending_reconnect("d1")

        await manager.remove("d1")
        await asyncio.sleep(WAIT_FOR_RETRY)

        assert manager.get_status("d1") is None
        assert fake_client.connect_calls == ["d1"]

    @pytest.mark.asyncio
    async def test_manual_start_supersedes_pending_reconnect(
        self, manager, fake_client, credentials
    ):
        credentials.stored.add("d1")
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.disconnected("ECONNRESET"))

        await manager.start("d1")
        await asyncio.sleep(WAIT_FOR_RETRY)

        assert fake_client.connect_calls == ["d1", "d1"]
        assert not manager.has_pending_reconnect("d1")

    @pytest.mark.asyncio
    async def test_failed_reconnect_stays_disconnected(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.disconnected("ECONNRESET"))

        fake_client.fail_with = RuntimeError("bridge down")
        await asyncio.sleep(WAIT_FOR_RETRY)

        assert manager.get_status("d1").status == "disconnected"
        assert not manager.has_pending_reconnect("d1")

    @pytest.mark.asyncio
    async def test_reconnect_attempt_is_noop_unless_reconnecting(self, manager, fake_client):
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())

        assert await manager.start("d1", is_reconnect_attempt=True) is None
        assert await manager.start("ghost", is_reconnect_attempt=True) is None
        assert fake_client.connect_calls == ["d1"]

    @pytest.mark.asyncio
    async def test_pairing_scenario(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        with patch.object(manager, "start", wraps=manager.start) as spy:
            await manager.start("d1")
            handle = fake_client.latest("d1")

            await emit(manager, handle, ClientEvent.qr("X"))
            status = manager.get_status("d1")
            assert status.status == "waiting_for_scan"
            assert status.qr_code is not None

            await emit(manager, handle, ClientEvent.ready())
            status = manager.get_status("d1")
            assert status.status == "connected"
            assert status.qr_code is None

            await emit(manager, handle, ClientEvent.disconnected("ECONNRESET"))
            assert manager.get_status("d1").status == "reconnecting"

            await asyncio.sleep(WAIT_FOR_RETRY)

        reconnects = [
            c for c in spy.await_args_list if c.kwargs.get("is_reconnect_attempt")
        ]
        assert len(reconnects) == 1
        assert reconnects[0].args == ("d1",)


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove_unknown_device_succeeds(self, manager):
        await manager.remove("never-started")
        await manager.remove("never-started")

    @pytest.mark.asyncio
    async def test_remove_tears_down(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        handle = fake_client.latest("d1")

        await manager.remove("d1")

        assert manager.get_status("d1") is None
        assert handle.closed
        assert "d1" not in credentials.stored

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, manager, fake_client):
        await manager.start("d1")
        await manager.remove("d1")
        await manager.remove("d1")

        assert manager.get_status("d1") is None
        assert len(manager.registry) == 0

    @pytest.mark.asyncio
    async def test_remove_propagates_purge_failure(self, manager, credentials):
        await manager.start("d1")
        credentials.fail = True

        with pytest.raises(CredentialPurgeFailed):
            await manager.remove("d1")

        assert manager.get_status("d1") is None

    @pytest.mark.asyncio
    async def test_start_after_remove(self, manager, fake_client):
        await manager.start("d1")
        await manager.remove("d1")

        session = await manager.start("d1")
        assert session.handle is fake_client.latest("d1")
        assert len(fake_client.handles) == 2

    @pytest.mark.asyncio
    async def test_remove_during_start_closes_new_handle(self, manager, fake_client):
        fake_client.connect_delay = 0.05
        task = asyncio.create_task(manager.start("d1"))
        await asyncio.sleep(0.01)

        await manager.remove("d1")

        with pytest.raises(SessionGone):
            await task
        assert fake_client.latest("d1").closed
        assert manager.get_status("d1") is None

    @pytest.mark.asyncio
    async def test_start_during_remove_gets_working_session(self, manager, fake_client):
        await manager.start("d1")
        old = fake_client.latest("d1")

        async def slow_close():
            await asyncio.sleep(0.05)
            old.closed = True

        old.close = slow_close
        removing = asyncio.create_task(manager.remove("d1"))
        await asyncio.sleep(0.01)

        session = await manager.start("d1")
        await removing

        new = fake_client.latest("d1")
        assert new is not old
        assert session.handle is new
        await emit(manager, new, ClientEvent.qr("X"))
        assert manager.get_status("d1").status == "waiting_for_scan"

    @pytest.mark.asyncio
    async def test_remove_does_not_purge_credentials_of_next_session(
        self, manager, fake_client, credentials
    ):
        await manager.start("d1")
        old = fake_client.latest("d1")

        async def slow_close():
            await asyncio.sleep(0.05)

        old.close = slow_close
        removing = asyncio.create_task(manager.remove("d1"))
        await asyncio.sleep(0.01)

        connect = fake_client.connect

        async def connect_and_store(device_id, on_event):
            handle = await connect(device_id, on_event)
            credentials.stored.add(device_id)
            return handle

        fake_client.connect = connect_and_store
        starting = asyncio.create_task(manager.start("d1"))
        await removing
        await starting
        await emit(manager, fake_client.latest("d1"), ClientEvent.ready())

        assert "d1" in credentials.stored
        assert manager.get_status("d1").status == "connected"


class TestSend:
    @pytest.mark.asyncio
    async def test_send_uses_live_handle(self, manager, fake_client):
        await manager.start("d1")

        result = await manager.send_message("d1", "923001234567@c.us", "hello")

        assert result == {"id": "msg-1"}
        assert fake_client.latest("d1").sent == [("923001234567@c.us", "hello")]

    @pytest.mark.asyncio
    async def test_send_unknown_device(self, manager):
        with pytest.raises(SessionGone):
            await manager.send_message("nope", "x@c.us", "hello")

    @pytest.mark.asyncio
    async def test_send_while_reconnecting(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        await emit(manager, fake_client.latest("d1"), ClientEvent.disconnected("ECONNRESET"))

        with pytest.raises(SessionGone):
            await manager.send_message("d1", "x@c.us", "hello")

    @pytest.mark.asyncio
    async def test_send_through_closed_handle(self, manager, fake_client):
        await manager.start("d1")
        await fake_client.latest("d1").close()

        with pytest.raises(SessionGone):
            await manager.send_message("d1", "x@c.us", "hello")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_restore_sessions_starts_stored_devices(
        self, manager, fake_client, credentials
    ):
        credentials.stored.update({"a", "b"})

        started = await manager.restore_sessions()

        assert started == ["a", "b"]
        assert sorted(fake_client.connect_calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_restore_skips_failures(self, manager, fake_client, credentials):
        credentials.stored.add("a")
        fake_client.fail_with = RuntimeError("bridge down")

        assert await manager.restore_sessions() == []

    @pytest.mark.asyncio
    async def test_shutdown_keeps_credentials(self, manager, fake_client, credentials):
        credentials.stored.add("d1")
        await manager.start("d1")
        handle = fake_client.latest("d1")

        await manager.shutdown()

        assert handle.closed
        assert fake_client.closed
        assert "d1" in credentials.stored
        assert manager.get_status("d1") is None
