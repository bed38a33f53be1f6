"""
Routes for device management.

Provides:
- Status of all devices and of a single device
- Start / remove of a device session
- Text and media sends through a device
"""

from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from wagate.devices.errors import (
    AlreadyRunning,
    CredentialPurgeFailed,
    HandshakeFailed,
    SessionGone,
)
from wagate.devices.models import SendMessageRequest
from wagate.logger import get_logger
from wagate.uploads import discard_upload, save_upload
from wagate.validation import ValidationError, to_chat_id

logger = get_logger(__name__)


def _get_device_manager(request: Request):
    """Get DeviceLifecycleManager from app state."""
    return getattr(request.app.state, "device_manager", None)


def _not_initialized() -> JSONResponse:
    return JSONResponse({"error": "Device manager not initialized"}, status_code=503)


async def list_devices(request: Request) -> JSONResponse:
    """GET /api/devices — Status of every known device."""
    manager = _get_device_manager(request)
    if not manager:
        return _not_initialized()

    statuses = manager.get_all_statuses()
    return JSONResponse({device_id: s.to_dict() for device_id, s in statuses.items()})


async def device_status(request: Request) -> JSONResponse:
    """GET /api/devices/{device_id}/status"""
    manager = _get_device_manager(request)
    if not manager:
        return _not_initialized()

    status = manager.get_status(request.path_params["device_id"])
    if status is None:
        return JSONResponse({"error": "Device not found"}, status_code=404)
    return JSONResponse(status.to_dict())


async def start_device(request: Request) -> JSONResponse:
    """
    POST /api/devices/{device_id}/start

    Returns as soon as the client exists; poll the status route for the QR
    code and the pairing progress.
    """
    manager = _get_device_manager(request)
    if not manager:
        return _not_initialized()

    device_id = request.path_params["device_id"]
    try:
        await manager.start(device_id)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except AlreadyRunning as e:
        return JSONResponse({"error": str(e), "device": device_id}, status_code=409)
    except (HandshakeFailed, SessionGone) as e:
        return JSONResponse(
            {"error": "Failed to start device", "details": str(e)}, status_code=500
        )

    return JSONResponse({"status": "starting", "device": device_id})


async def remove_device(request: Request) -> JSONResponse:
    """DELETE /api/devices/{device_id} — Tear down a device and its credentials."""
    manager = _get_device_manager(request)
    if not manager:
        return _not_initialized()

    device_id = request.path_params["device_id"]
    try:
        await manager.remove(device_id)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except CredentialPurgeFailed as e:
        logger.error(f"Failed to remove device {device_id}: {e}")
        return JSONResponse(
            {"error": "Failed to remove device", "details": e.reason, "device": device_id},
            status_code=500,
        )

    return JSONResponse(
        {
            "status": "removed",
            "device": device_id,
            "message": (
                f"Device {device_id} and all associated session files have been removed. "
                "User must rescan WhatsApp QR code to reconnect."
            ),
        }
    )


async def send_message(request: Request) -> JSONResponse:
    """POST /api/devices/{device_id}/send — Body: {"to": "...", "message": "..."}"""
    manager = _get_device_manager(request)
    if not manager:
        return _not_initialized()

    device_id = request.path_params["device_id"]
    try:
        body = SendMessageRequest(**(await request.json()))
    except (PydanticValidationError, ValueError, TypeError) as e:
        return JSONResponse(
            {"error": "Fields 'to' and 'message' are required", "details": str(e)},
            status_code=400,
        )

    try:
        await manager.send_message(device_id, to_chat_id(body.to), body.message)
    except SessionGone:
        return JSONResponse({"error": "Device not found or not started"}, status_code=404)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"[{device_id}] Failed to send message: {e}")
        return JSONResponse(
            {"error": "Failed to send message", "details": str(e)}, status_code=500
        )

    return JSONResponse({"status": "sent", "to": body.to, "type": "text"})


async def send_media(request: Request) -> JSONResponse:
    """
    POST /api/devices/{device_id}/send-media

    Multipart form: file, to, caption (optional). Images are sent as images,
    everything else as a document.
    """
    manager = _get_device_manager(request)
    if not manager:
        return _not_initialized()

    device_id = request.path_params["device_id"]
    session = manager.get_session(device_id)
    if session is None or session.handle is None:
        return JSONResponse({"error": "Device not found or not started"}, status_code=404)

    config = request.app.state.config
    form = await request.form()
    upload = form.get("file")
    to = form.get("to") or ""
    caption = form.get("caption") or ""

    if upload is None or isinstance(upload, str):
        await form.close()
        return JSONResponse({"error": "No file uploaded"}, status_code=400)

    try:
        media = await save_upload(
            upload, config.upload_dir, config.max_upload_bytes, caption=caption
        )
    except ValidationError as e:
        await form.close()
        return JSONResponse({"error": str(e)}, status_code=400)

    try:
        await manager.send_message(device_id, to_chat_id(to), media)
    except SessionGone:
        return JSONResponse({"error": "Device not found or not started"}, status_code=404)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"[{device_id}] Failed to send media: {e}")
        return JSONResponse(
            {"error": "Failed to send media message", "details": str(e)}, status_code=500
        )
    finally:
        discard_upload(media.path)
        await form.close()

    return JSONResponse(
        {
            "status": "sent",
            "to": to,
            "type": "document" if media.as_document else "image",
            "filename": media.filename,
        }
    )
