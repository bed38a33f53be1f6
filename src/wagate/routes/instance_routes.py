"""
Tenant API routes (API key required).

Each tenant owns WhatsApp instances; an instance id is a device id. Sends
pick one of the tenant's connected instances (the requested one, or the
most recently updated) and go through the device manager.

All responses use the envelope:
    {"success": bool, "message": str, "data": ..., "error": str?, "technical_error": str?}
"""

from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse

from wagate.devices.errors import SessionGone
from wagate.devices.models import (
    InstanceInfo,
    LegacySendRequest,
    TenantResponse,
    TenantSendRequest,
)
from wagate.logger import get_logger
from wagate.uploads import discard_upload, save_upload
from wagate.validation import (
    ValidationError,
    format_phone_number,
    to_chat_id,
    validate_media_type,
)

logger = get_logger(__name__)

NO_SESSION_MESSAGE = "WhatsApp session not found for the selected instance"
NOT_OWNED_MESSAGE = "The specified instance was not found or does not belong to your account"


def _respond(status_code: int = 200, **fields) -> JSONResponse:
    return JSONResponse(TenantResponse(**fields).to_dict(), status_code=status_code)


def _failure(status_code: int, error: str, message: str, technical_error: str | None = None):
    return _respond(
        status_code,
        success=False,
        error=error,
        message=message,
        technical_error=technical_error,
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _select_instance(instances, instance_id):
    """Requested instance if the tenant owns it, else the first available."""
    if instance_id:
        for inst in instances:
            if inst.instance_id == instance_id:
                return inst
    return instances[0]


def _instance_info(instance) -> dict:
    return InstanceInfo(
        instance_id=instance.instance_id,
        name=instance.name,
        status=instance.status,
        updated_at=instance.updated_at.isoformat() if instance.updated_at else None,
    ).model_dump()


async def _send_text(request: Request, instance, to: str, message: str) -> JSONResponse:
    manager = request.app.state.device_manager
    config = request.app.state.config

    formatted = format_phone_number(to, config.default_country_code)
    try:
        await manager.send_message(instance.instance_id, to_chat_id(formatted), message)
    except SessionGone:
        return _failure(503, "Service unavailable", NO_SESSION_MESSAGE)

    return _respond(
        success=True,
        message="Message sent successfully",
        data={
            "to": formatted,
            "message": message,
            "instance_id": instance.instance_id,
            "instance_name": instance.name,
            "sent_at": _now_iso(),
        },
    )


# ─── v1 ──────────────────────────────────────────────────────────────


async def send_message_v1(request: Request) -> JSONResponse:
    """POST /api/v1/send-message — Body: {"to", "message", "instance_id"?}"""
    try:
        body = TenantSendRequest(**(await request.json()))
    except (PydanticValidationError, ValueError, TypeError):
        return _failure(
            400, "Missing required fields", 'Both "to" and "message" fields are required'
        )

    db = request.app.state.database
    try:
        instances = await run_in_threadpool(db.list_user_instances, request.state.user.id)
        if not instances:
            return _failure(
                400,
                "No instances available",
                "No connected WhatsApp instances found for your account",
            )

        instance = _select_instance(instances, body.instance_id)
        return await _send_text(request, instance, body.to, body.message)
    except ValidationError as e:
        return _failure(400, "Invalid request", str(e))
    except Exception as e:
        logger.error(f"Error sending message via API: {e}")
        return _failure(500, "Internal server error", "Failed to send message", str(e))


async def send_media_v1(request: Request) -> JSONResponse:
    """
    POST /api/v1/send-media

    Multipart form: to, file, type ("image" | "document"), caption?, instance_id?
    """
    config = request.app.state.config
    db = request.app.state.database
    manager = request.app.state.device_manager

    form = await request.form()
    try:
        upload = form.get("file")
        to = form.get("to") or ""
        media_type = form.get("type") or ""
        caption = form.get("caption") or ""
        instance_id = form.get("instance_id") or None

        if not to or not media_type or upload is None or isinstance(upload, str):
            return _failure(
                400, "Missing required fields", 'Fields "to", "file", and "type" are required'
            )

        try:
            validate_media_type(media_type)
        except ValidationError as e:
            return _failure(400, "Invalid type", str(e))

        instances = await run_in_threadpool(db.list_user_instances, request.state.user.id)
        if not instances:
            return _failure(
                400,
                "No instances available",
                "No connected WhatsApp instances found for your account",
            )
        instance = _select_instance(instances, instance_id)

        formatted = format_phone_number(to, config.default_country_code)
        media = await save_upload(
            upload,
            config.upload_dir,
            config.max_upload_bytes,
            caption=caption,
            as_document=media_type == "document",
        )
        try:
            await manager.send_message(instance.instance_id, to_chat_id(formatted), media)
        except SessionGone:
            return _failure(503, "Service unavailable", NO_SESSION_MESSAGE)
        finally:
            discard_upload(media.path)

        return _respond(
            success=True,
            message="Media sent successfully",
            data={
                "to": formatted,
                "type": media_type,
                "filename": media.filename,
                "caption": caption,
                "instance_id": instance.instance_id,
                "instance_name": instance.name,
                "sent_at": _now_iso(),
            },
        )
    except ValidationError as e:
        return _failure(400, "Invalid request", str(e))
    except Exception as e:
        logger.error(f"Error sending media via API: {e}")
        return _failure(500, "Internal server error", "Failed to send media", str(e))
    finally:
        await form.close()


async def list_instances_v1(request: Request) -> JSONResponse:
    """GET /api/v1/instances — The tenant's connected instances."""
    db = request.app.state.database
    try:
        instances = await run_in_threadpool(db.list_user_instances, request.state.user.id)
    except Exception as e:
        logger.error(f"Error getting instances via API: {e}")
        return _failure(500, "Internal server error", "Failed to retrieve instances", str(e))

    return _respond(
        success=True,
        message="Instances retrieved successfully",
        data=[_instance_info(inst) for inst in instances],
    )


async def delete_instance_v1(request: Request) -> JSONResponse:
    """DELETE /api/v1/instances/{instance_id} — Remove the device and its session files."""
    instance_id = request.path_params.get("instance_id", "")
    if not instance_id:
        return _failure(400, "Missing instance ID", "Instance ID is required")

    db = request.app.state.database
    manager = request.app.state.device_manager
    user_id = request.state.user.id
    try:
        instances = await run_in_threadpool(db.list_user_instances, user_id)
        target = next((i for i in instances if i.instance_id == instance_id), None)
        if target is None:
            return _failure(404, "Instance not found", NOT_OWNED_MESSAGE)

        await manager.remove(instance_id)
        await run_in_threadpool(db.set_instance_status, instance_id, "disconnected", user_id)
    except Exception as e:
        logger.error(f"Error deleting instance via API: {e}")
        return _failure(500, "Internal server error", "Failed to delete instance", str(e))

    return _respond(
        success=True,
        message="Instance deleted successfully",
        data={
            "instance_id": instance_id,
            "instance_name": target.name,
            "deleted_at": _now_iso(),
            "note": (
                "All session files have been removed. You will need to scan the "
                "QR code again to reconnect this instance."
            ),
        },
    )


# ─── Legacy (no version prefix) ──────────────────────────────────────


async def list_instances_legacy(request: Request) -> JSONResponse:
    """GET /api/instances"""
    db = request.app.state.database
    try:
        instances = await run_in_threadpool(db.list_user_instances, request.state.user.id)
    except Exception as e:
        logger.error(f"Error getting instances via legacy API: {e}")
        return _failure(500, "Internal server error", "Failed to retrieve instances", str(e))

    payload = TenantResponse(success=True, message="Instances retrieved successfully").to_dict()
    payload["instances"] = [
        {
            "id": inst.instance_id,
            "name": inst.name,
            "status": inst.status,
            "updated_at": inst.updated_at.isoformat() if inst.updated_at else None,
        }
        for inst in instances
    ]
    return JSONResponse(payload)


async def send_message_legacy(request: Request) -> JSONResponse:
    """POST /api/send-message — Body: {"instanceId", "to", "message"}"""
    try:
        body = LegacySendRequest(**(await request.json()))
    except (PydanticValidationError, ValueError, TypeError):
        return _failure(
            400,
            "Missing required fields",
            'Fields "instanceId", "to", and "message" are required',
        )

    db = request.app.state.database
    try:
        instances = await run_in_threadpool(db.list_user_instances, request.state.user.id)
        instance = next((i for i in instances if i.instance_id == body.instanceId), None)
        if instance is None:
            return _failure(404, "Instance not found", NOT_OWNED_MESSAGE)

        if instance.status != "connected":
            return _failure(
                503,
                "Instance not connected",
                "The selected WhatsApp instance is not connected",
            )

        return await _send_text(request, instance, body.to, body.message)
    except ValidationError as e:
        return _failure(400, "Invalid request", str(e))
    except Exception as e:
        logger.error(f"Error sending message via legacy API: {e}")
        return _failure(500, "Internal server error", "Failed to send message", str(e))
