"""
Starlette-based web server for the wagate WhatsApp gateway.

This server provides a REST API with the following endpoints:
- /api/devices: device status, start, remove and sends (operator API)
- /api/v1/*: tenant API authenticated with API keys
- /api/instances, /api/send-message: legacy tenant API
- /api/system, /health, /ready: monitoring
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route

from wagate.config import CONFIG, GatewayConfig
from wagate.database import GatewayDatabase, get_database
from wagate.devices.bridge import BridgeProtocolClient
from wagate.devices.credentials import FileCredentialStore
from wagate.devices.manager import DeviceLifecycleManager
from wagate.devices.projector import DeviceStatus
from wagate.devices.reconnect import ReconnectPolicy
from wagate.logger import get_logger, setup_logging
from wagate.middleware import (
    APIKeyAuthMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from wagate.routes.device_routes import (
    device_status,
    list_devices,
    remove_device,
    send_media,
    send_message,
    start_device,
)
from wagate.routes.health_routes import get_system_info, health_check, readiness_check
from wagate.routes.instance_routes import (
    delete_instance_v1,
    list_instances_legacy,
    list_instances_v1,
    send_media_v1,
    send_message_legacy,
    send_message_v1,
)
from wagate.webhook import WebhookNotifier

logger = get_logger(__name__)

MIRRORED_STATUSES = ("connected", "disconnected")


def build_device_manager(config: GatewayConfig) -> DeviceLifecycleManager:
    """Wire the lifecycle manager to the bridge, the session directory and the webhook."""
    credentials = FileCredentialStore(config.sessions_dir)
    client = BridgeProtocolClient(
        base_url=config.bridge_url,
        ws_url=config.effective_bridge_ws_url,
        timeout=config.bridge_timeout,
        credentials=credentials,
    )
    return DeviceLifecycleManager(
        client=client,
        credentials=credentials,
        policy=ReconnectPolicy(
            delay_seconds=config.reconnect_delay,
            max_attempts=config.max_reconnect_attempts,
        ),
        message_handler=WebhookNotifier(config.webhook_url),
    )


def instance_status_listener(database: GatewayDatabase):
    """Mirror connected/disconnected transitions into whats_app_instances."""

    async def on_status(device_id: str, status: Optional[DeviceStatus]) -> None:
        if status is None or status.status not in MIRRORED_STATUSES:
            return
        updated = await asyncio.to_thread(
            database.set_instance_status, device_id, status.status
        )
        if updated:
            logger.debug(f"[{device_id}] Instance status set to {status.status}")

    return on_status


async def startup(app: Starlette) -> None:
    """Initialize services on application startup."""
    config: GatewayConfig = app.state.config
    logger.info("Application startup - initializing services")

    config.ensure_dirs()

    if app.state.database is None:
        app.state.database = get_database()

    if app.state.device_manager is None:
        app.state.device_manager = build_device_manager(config)

    manager: DeviceLifecycleManager = app.state.device_manager
    manager.add_status_listener(instance_status_listener(app.state.database))

    if config.restore_sessions:
        restored = await manager.restore_sessions()
        logger.info(f"Restoring {len(restored)} stored device session(s)")


async def shutdown(app: Starlette) -> None:
    """Cleanup services on application shutdown."""
    logger.info("Application shutdown - cleaning up services")

    manager: Optional[DeviceLifecycleManager] = app.state.device_manager
    if manager:
        await manager.shutdown()

    database: Optional[GatewayDatabase] = app.state.database
    if database:
        database.engine.dispose()


def create_app(
    config: Optional[GatewayConfig] = None,
    device_manager: Optional[DeviceLifecycleManager] = None,
    database: Optional[GatewayDatabase] = None,
) -> Starlette:
    """
    Build the ASGI application.

    Collaborators that are not passed in are created on startup from the
    config.
    """
    config = config or CONFIG

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await startup(app)
        yield
        await shutdown(app)

    app = Starlette(
        routes=[
            Route("/health", health_check, methods=["GET"]),
            Route("/ready", readiness_check, methods=["GET"]),
            Route("/api/system", get_system_info, methods=["GET"]),
            # Operator API
            Route("/api/devices", list_devices, methods=["GET"]),
            Route("/api/devices/{device_id}/status", device_status, methods=["GET"]),
            Route("/api/devices/{device_id}/start", start_device, methods=["POST"]),
            Route("/api/devices/{device_id}", remove_device, methods=["DELETE"]),
            Route("/api/devices/{device_id}/send", send_message, methods=["POST"]),
            Route("/api/devices/{device_id}/send-media", send_media, methods=["POST"]),
            # Tenant API
            Route("/api/v1/send-message", send_message_v1, methods=["POST"]),
            Route("/api/v1/send-media", send_media_v1, methods=["POST"]),
            Route("/api/v1/instances", list_instances_v1, methods=["GET"]),
            Route(
                "/api/v1/instances/{instance_id}", delete_instance_v1, methods=["DELETE"]
            ),
            Route("/api/instances", list_instances_legacy, methods=["GET"]),
            Route("/api/send-message", send_message_legacy, methods=["POST"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=config.cors_origins,
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            ),
            Middleware(RequestLoggingMiddleware),
            Middleware(SecurityHeadersMiddleware),
            Middleware(APIKeyAuthMiddleware),
        ],
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.device_manager = device_manager
    app.state.database = database
    return app


app = create_app()


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Serve the app with uvicorn."""
    import uvicorn

    setup_logging(level=CONFIG.log_level, log_file=CONFIG.log_file)

    host = host or CONFIG.host
    port = port or CONFIG.port
    logger.info(f"Starting wagate on http://{host}:{port}")
    logger.info(f"API endpoints available at http://{host}:{port}/api")
    uvicorn.run(app, host=host, port=port, log_level=CONFIG.log_level.lower())


if __name__ == "__main__":
    run()
