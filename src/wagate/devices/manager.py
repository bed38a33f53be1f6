"""
Device lifecycle manager.

Owns one protocol-client handle per device and turns the client's event
stream into status transitions:

    starting -> waiting_for_scan -> connecting -> connected
                      ^                              |
                      |                         disconnected
                      +---- reconnecting <-----------+

Events are queued per device and handled by one worker task per device, so
transitions for a device follow the client's delivery order while devices
progress independently. Every `start` gets a fresh generation number; events
from an older handle are dropped. Reconnects are scheduled as cancellable
tasks keyed by device id.
"""

import asyncio
import inspect
import itertools
from typing import Any, Awaitable, Callable, Optional

from wagate.devices.base import (
    LOGGED_OUT_REASON,
    ClientEvent,
    CredentialStore,
    DeviceHandle,
    EventCallback,
    EventKind,
    Payload,
    ProtocolClient,
)
from wagate.devices.errors import (
    AlreadyRunning,
    CredentialPurgeFailed,
    HandshakeFailed,
    RetryExhausted,
    SessionGone,
)
from wagate.devices.projector import DeviceStatus, project, project_all
from wagate.devices.qr import render_qr_data_url
from wagate.devices.reconnect import ReconnectDecision, ReconnectPolicy
from wagate.devices.registry import SessionRegistry
from wagate.devices.session import DeviceSession, DeviceState
from wagate.logger import get_logger
from wagate.validation import validate_device_id

logger = get_logger(__name__)

StatusListener = Callable[[str, Optional[DeviceStatus]], Any]
MessageHandler = Callable[[str, dict[str, Any]], Awaitable[None]]
Change = Callable[[DeviceSession], DeviceSession]


class DeviceLifecycleManager:
    """
    Central coordinator for all device sessions.
    Mirrors the NodeManager pattern, with a state machine per device.
    """

    def __init__(
        self,
        client: ProtocolClient,
        credentials: CredentialStore,
        registry: SessionRegistry | None = None,
        policy: ReconnectPolicy | None = None,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
        message_handler: MessageHandler | None = None,
    ):
        self.client = client
        self.credentials = credentials
        self.registry = registry or SessionRegistry()
        self.policy = policy or ReconnectPolicy()
        self._render_qr = qr_renderer
        self._message_handler = message_handler
        self._status_listeners: list[StatusListener] = []

        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._retry_tasks: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._handlers = {
            EventKind.QR: self._on_qr,
            EventKind.READY: self._on_ready,
            EventKind.AUTHENTICATED: self._on_authenticated,
            EventKind.AUTH_FAILURE: self._on_auth_failure,
            EventKind.DISCONNECTED: self._on_disconnected,
            EventKind.LOADING_PROGRESS: self._on_loading_progress,
            EventKind.MESSAGE: self._on_message,
        }

    # ─── Public API ──────────────────────────────────────────────────

    async def start(
        self, device_id: str, is_reconnect_attempt: bool = False
    ) -> Optional[DeviceSession]:
        """
        Create a protocol-client handle for a device.

        Returns once the handle exists; pairing continues in the background
        and is observable through `get_status`.

        Args:
            device_id: The device to start.
            is_reconnect_attempt: True when called by a scheduled reconnect.
                Such a call is a no-op unless the device is still waiting
                to reconnect.

        Returns:
            The session record, or None if a reconnect attempt was skipped.

        Raises:
            AlreadyRunning: A live handle exists (or is being created).
            HandshakeFailed: The client could not be created.
            SessionGone: The device was removed while starting.
        """
        validate_device_id(device_id)
        self._loop = asyncio.get_running_loop()

        generation = next(self._generations)
        skipped = False
        stale: Optional[DeviceHandle] = None

        def reserve(current: Optional[DeviceSession]) -> Optional[DeviceSession]:
            nonlocal skipped, stale
            if is_reconnect_attempt:
                if current is None or current.status != DeviceState.RECONNECTING:
                    skipped = True
                    return current
                attempts = current.reconnect_attempts
            else:
                if current is not None and current.is_live:
                    raise AlreadyRunning(device_id)
                attempts = 0
            if current is not None:
                stale = current.handle
            return DeviceSession(
                device_id=device_id,
                status=DeviceState.STARTING,
                reconnect_attempts=attempts,
                has_stored_credentials=has_creds,
                generation=generation,
            )

        # Waits for a running remove; the lock is released before connecting
        async with self._device_lock(device_id):
            has_creds = self.credentials.load_credentials(device_id)
            session = self.registry.upsert(device_id, reserve)
            if skipped:
                logger.debug(f"[{device_id}] Reconnect skipped, device no longer waiting")
                return None

            if not is_reconnect_attempt:
                self._cancel_retry(device_id)
            self._ensure_worker(device_id)

        logger.info(
            f"[{device_id}] Starting device session..."
            f"{' (reconnecting)' if is_reconnect_attempt else ''}"
        )
        if stale is not None:
            logger.info(f"[{device_id}] Closing client left over from the last session")
            await self._close_handle(device_id, stale)
        await self._notify(device_id, session)

        try:
            handle = await self.client.connect(
                device_id, self._make_callback(device_id, generation)
            )
        except Exception as e:
            reason = e.reason if isinstance(e, HandshakeFailed) else str(e)
            logger.error(f"[{device_id}] Failed to initialize client: {reason}")
            await self._transition(
                device_id, generation, lambda s: s.transition(DeviceState.DISCONNECTED)
            )
            if isinstance(e, HandshakeFailed):
                raise
            raise HandshakeFailed(device_id, reason) from e

        orphaned = False

        def attach(current: Optional[DeviceSession]) -> Optional[DeviceSession]:
            nonlocal orphaned
            if (
                current is None
                or current.generation != generation
                or current.status == DeviceState.DISCONNECTED
            ):
                orphaned = True
                return current
            return current.with_handle(handle)

        session = self.registry.upsert(device_id, attach)
        if orphaned:
            logger.info(f"[{device_id}] Session ended while starting, closing new client")
            await self._close_handle(device_id, handle)
            raise SessionGone(device_id, f"Device '{device_id}' was removed while starting")

        logger.info(f"[{device_id}] Client initialization started")
        return session

    async def remove(self, device_id: str) -> None:
        """
        Tear a device down completely.

        Cancels a pending reconnect, drops the registry entry, closes the
        handle (errors are logged) and deletes stored credentials. Removing
        an unknown device succeeds.

        Raises:
            CredentialPurgeFailed: Credentials exist but could not be deleted.
        """
        validate_device_id(device_id)
        logger.info(f"[{device_id}] Removing device and cleaning up session files...")

        async with self._device_lock(device_id):
            self._cancel_retry(device_id)
            session = self.registry.delete(device_id)
            worker = self._detach_worker(device_id)

            if session is not None and session.handle is not None:
                await self._close_handle(device_id, session.handle)
                logger.info(f"[{device_id}] WhatsApp connection closed")

            await self._cancel_worker(worker)
            self.credentials.clear_credentials(device_id)

        if session is not None:
            await self._notify(device_id, None)
        logger.info(f"[{device_id}] Device removed successfully")

    async def send_message(
        self, device_id: str, recipient: str, payload: Payload
    ) -> dict[str, Any]:
        """
        Send through the device's live handle.

        Raises:
            SessionGone: No live handle, or it was torn down mid-send.
        """
        session = self.registry.get(device_id)
        if session is None or session.handle is None:
            raise SessionGone(device_id)

        return await session.handle.send_message(recipient, payload) or {}

    def get_session(self, device_id: str) -> Optional[DeviceSession]:
        return self.registry.get(device_id)

    def get_status(self, device_id: str) -> Optional[DeviceStatus]:
        session = self.registry.get(device_id)
        return project(session) if session else None

    def get_all_statuses(self) -> dict[str, DeviceStatus]:
        return project_all(self.registry.get_all())

    def has_pending_reconnect(self, device_id: str) -> bool:
        task = self._retry_tasks.get(device_id)
        return task is not None and not task.done()

    def add_status_listener(self, listener: StatusListener) -> None:
        """
        Register a callback run after every transition.

        The listener receives the device id and its new public status, or
        None once the device is removed. It may be a coroutine function.
        """
        self._status_listeners.append(listener)

    async def wait_idle(self, device_id: str) -> None:
        """Wait until every queued event of a device has been handled."""
        queue = self._queues.get(device_id)
        if queue is not None:
            await queue.join()

    async def restore_sessions(self) -> list[str]:
        """Start every device that has stored credentials."""
        started = []
        for device_id in self.credentials.list_devices():
            try:
                await self.start(device_id)
                started.append(device_id)
            except Exception as e:
                logger.warning(f"[{device_id}] Could not restore session: {e}")
        if started:
            logger.info(f"Restored {len(started)} device session(s)")
        return started

    async def shutdown(self) -> None:
        """Close every handle and stop all workers; credentials are kept."""
        for device_id in list(self._retry_tasks):
            self._cancel_retry(device_id)

        for device_id in list(self.registry.get_all()):
            session = self.registry.delete(device_id)
            if session is not None and session.handle is not None:
                await self._close_handle(device_id, session.handle)

        for device_id in list(self._workers):
            await self._stop_worker(device_id)

        try:
            await self.client.aclose()
        except Exception as e:
            logger.error(f"Error closing protocol client: {e}")
        logger.info("Device manager shut down")

    @property
    def connected_count(self) -> int:
        """Number of devices currently connected."""
        return sum(
            1
            for s in self.registry.get_all().values()
            if s.status == DeviceState.CONNECTED
        )

    # ─── Event plumbing ──────────────────────────────────────────────

    def _make_callback(self, device_id: str, generation: int) -> EventCallback:
        def on_event(event: ClientEvent) -> None:
            self._enqueue(device_id, generation, event)

        return on_event

    def _enqueue(self, device_id: str, generation: int, event: ClientEvent) -> None:
        queue = self._queues.get(device_id)
        if queue is None or self._loop is None:
            logger.debug(f"[{device_id}] Dropping '{event.kind.value}' event, no worker")
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            queue.put_nowait((generation, event))
        else:
            self._loop.call_soon_threadsafe(queue.put_nowait, (generation, event))

    def _device_lock(self, device_id: str) -> asyncio.Lock:
        """Serialises start reservations and removals of one device."""
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def _ensure_worker(self, device_id: str) -> None:
        worker = self._workers.get(device_id)
        if worker is not None and not worker.done():
            return
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[device_id] = queue
        self._workers[device_id] = asyncio.create_task(
            self._run_worker(device_id, queue), name=f"device-worker:{device_id}"
        )

    def _detach_worker(self, device_id: str) -> Optional[asyncio.Task]:
        """Forget the device's queue and worker so a new start gets fresh ones."""
        self._queues.pop(device_id, None)
        return self._workers.pop(device_id, None)

    async def _stop_worker(self, device_id: str) -> None:
        await self._cancel_worker(self._detach_worker(device_id))

    async def _cancel_worker(self, worker: Optional[asyncio.Task]) -> None:
        if worker is None or worker is asyncio.current_task():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def _run_worker(self, device_id: str, queue: asyncio.Queue) -> None:
        while True:
            generation, event = await queue.get()
            try:
                await self._dispatch(device_id, generation, event)
            except Exception as e:
                logger.error(
                    f"[{device_id}] Error handling '{event.kind.value}' event: {e}"
                )
                await self._transition(
                    device_id,
                    generation,
                    lambda s: s.transition(DeviceState.DISCONNECTED),
                )
            finally:
                queue.task_done()

    async def _dispatch(self, device_id: str, generation: int, event: ClientEvent) -> None:
        current = self.registry.get(device_id)
        if current is None or current.generation != generation:
            logger.debug(f"[{device_id}] Ignoring stale '{event.kind.value}' event")
            return

        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning(f"[{device_id}] Unknown event kind: {event.kind}")
            return
        await handler(device_id, generation, event)

    async def _transition(
        self, device_id: str, generation: int, change: Change
    ) -> Optional[DeviceSession]:
        """Apply a change if the session still belongs to `generation`."""
        applied = False

        def mutate(current: Optional[DeviceSession]) -> Optional[DeviceSession]:
            nonlocal applied
            if current is None or current.generation != generation:
                return current
            applied = True
            return change(current)

        updated = self.registry.upsert(device_id, mutate)
        if not applied:
            return None
        await self._notify(device_id, updated)
        return updated

    async def _notify(self, device_id: str, session: Optional[DeviceSession]) -> None:
        status = project(session) if session is not None else None
        for listener in self._status_listeners:
            try:
                result = listener(device_id, status)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{device_id}] Status listener failed: {e}")

    async def _close_handle(self, device_id: str, handle: DeviceHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.error(f"[{device_id}] Error closing connection: {e}")

    # ─── Event handlers ──────────────────────────────────────────────

    async def _on_qr(self, device_id: str, generation: int, event: ClientEvent) -> None:
        raw = event.data.get("qr", "")
        logger.info(f"[{device_id}] QR code generated, scan it with WhatsApp")
        try:
            qr_payload = await asyncio.to_thread(self._render_qr, raw)
        except Exception as e:
            logger.error(f"[{device_id}] Failed to generate QR code: {e}")
            await self._transition(
                device_id, generation, lambda s: s.transition(DeviceState.DISCONNECTED)
            )
            return

        await self._transition(
            device_id,
            generation,
            lambda s: s.transition(
                DeviceState.WAITING_FOR_SCAN, qr_payload=qr_payload, reconnect_attempts=0
            ),
        )

    async def _on_ready(self, device_id: str, generation: int, event: ClientEvent) -> None:
        logger.info(f"[{device_id}] WhatsApp connected, device is ready")
        await self._transition(
            device_id,
            generation,
            lambda s: s.transition(DeviceState.CONNECTED, reconnect_attempts=0),
        )

    async def _on_authenticated(
        self, device_id: str, generation: int, event: ClientEvent
    ) -> None:
        logger.info(f"[{device_id}] Authentication successful")

    async def _on_auth_failure(
        self, device_id: str, generation: int, event: ClientEvent
    ) -> None:
        logger.error(f"[{device_id}] Authentication failed: {event.data.get('message', '')}")
        await self._end_session(device_id, generation)

    async def _on_loading_progress(
        self, device_id: str, generation: int, event: ClientEvent
    ) -> None:
        percent = event.data.get("percent")
        logger.debug(f"[{device_id}] Loading... {percent}% - {event.data.get('message', '')}")
        await self._transition(
            device_id,
            generation,
            lambda s: s.transition(DeviceState.CONNECTING, qr_payload=s.qr_payload),
        )

    async def _on_message(self, device_id: str, generation: int, event: ClientEvent) -> None:
        if self._message_handler is None:
            return
        try:
            await self._message_handler(device_id, dict(event.data))
        except Exception as e:
            logger.error(f"[{device_id}] Inbound message handler failed: {e}")

    async def _on_disconnected(
        self, device_id: str, generation: int, event: ClientEvent
    ) -> None:
        reason = str(event.data.get("reason") or "unknown")
        logger.warning(f"[{device_id}] Client disconnected: {reason}")

        if reason == LOGGED_OUT_REASON:
            logger.info(f"[{device_id}] Logged out. Device session ended.")
            await self._end_session(device_id, generation)
            return

        decision: Optional[ReconnectDecision] = None
        released: Optional[DeviceHandle] = None

        def change(s: DeviceSession) -> DeviceSession:
            nonlocal decision, released
            decision = self.policy.decide(s)
            if decision.should_retry:
                released = s.handle
                return s.transition(
                    DeviceState.RECONNECTING,
                    handle=None,
                    reconnect_attempts=decision.attempts,
                )
            if decision.exhausted:
                released = s.handle
                return s.transition(
                    DeviceState.DISCONNECTED,
                    handle=None,
                    reconnect_attempts=decision.attempts,
                )
            return s.transition(
                DeviceState.DISCONNECTED, reconnect_attempts=decision.attempts
            )

        if await self._transition(device_id, generation, change) is None:
            return

        if released is not None:
            await self._close_handle(device_id, released)

        if decision.should_retry:
            logger.info(
                f"[{device_id}] Attempting to reconnect in {decision.delay_seconds}s... "
                f"(attempt {decision.attempts})"
            )
            self._schedule_reconnect(device_id, generation, decision.delay_seconds)
        elif decision.exhausted:
            logger.warning(str(RetryExhausted(device_id, decision.attempts)))
        else:
            logger.warning(f"[{device_id}] No valid credentials for reconnection")

    async def _end_session(self, device_id: str, generation: int) -> None:
        """Purge credentials and release the handle; the device must be restarted."""
        released: Optional[DeviceHandle] = None

        def change(s: DeviceSession) -> DeviceSession:
            nonlocal released
            released = s.handle
            return s.transition(DeviceState.DISCONNECTED, handle=None, reconnect_attempts=0)

        if await self._transition(device_id, generation, change) is None:
            return

        self._cancel_retry(device_id)
        try:
            if self.credentials.clear_credentials(device_id):
                logger.info(f"[{device_id}] Cleared session directory")
        except CredentialPurgeFailed as e:
            logger.error(f"[{device_id}] Error cleaning session: {e}")

        if released is not None:
            await self._close_handle(device_id, released)

    # ─── Reconnect scheduling ────────────────────────────────────────

    def _schedule_reconnect(self, device_id: str, generation: int, delay: float) -> None:
        self._cancel_retry(device_id)
        self._retry_tasks[device_id] = asyncio.create_task(
            self._reconnect_later(device_id, generation, delay),
            name=f"device-reconnect:{device_id}",
        )

    def _cancel_retry(self, device_id: str) -> None:
        task = self._retry_tasks.pop(device_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug(f"[{device_id}] Cancelled pending reconnect")

    async def _reconnect_later(self, device_id: str, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)

        if self._retry_tasks.get(device_id) is asyncio.current_task():
            self._retry_tasks.pop(device_id, None)

        current = self.registry.get(device_id)
        if (
            current is None
            or current.generation != generation
            or current.status != DeviceState.RECONNECTING
        ):
            logger.debug(f"[{device_id}] Reconnect no longer needed")
            return

        try:
            await self.start(device_id, is_reconnect_attempt=True)
        except Exception as e:
            logger.error(f"[{device_id}] Reconnect attempt failed: {e}")
