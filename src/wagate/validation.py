"""
Input validation utilities for wagate.

Device ids end up as directory names under the sessions root, so they are
restricted to a safe character set. Phone numbers are normalised to
WhatsApp JIDs before they reach the protocol client.
"""
import re
from typing import Optional
from wagate.logger import get_logger

logger = get_logger(__name__)

JID_SUFFIX = "@s.whatsapp.net"
CHAT_ID_SUFFIX = "@c.us"
MEDIA_TYPES = ["image", "document"]


class ValidationError(Exception):
    """Raised when input validation fails."""
    pass


def validate_device_id(device_id: str) -> str:
    """
    Validate device ID format.

    Device IDs should be alphanumeric with hyphens, underscores or dots,
    and may not start with a dot.
    """
    if not device_id:
        raise ValidationError("Device ID cannot be empty")

    if not re.match(r'^[a-zA-Z0-9_\-][a-zA-Z0-9_\-.]*$', device_id):
        raise ValidationError(
            "Device ID can only contain letters, numbers, dots, hyphens, and underscores"
        )

    if len(device_id) > 100:
        raise ValidationError("Device ID too long (max 100 characters)")

    return device_id


def validate_message_text(message: str) -> str:
    """Validate outgoing text message."""
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message cannot be empty")

    if len(message) > 65536:
        raise ValidationError("Message too long (max 65536 characters)")

    return message


def validate_media_type(media_type: str) -> str:
    """Validate the media type of a tenant media send."""
    if media_type not in MEDIA_TYPES:
        raise ValidationError('Type must be either "image" or "document"')
    return media_type


def format_phone_number(phone: str, default_country_code: str = "92") -> str:
    """
    Normalise a phone number to a WhatsApp JID.

    Non-digits are stripped; a bare 10-digit national number gets the
    default country code.

    Example:
        format_phone_number("300-123 4567") -> "923001234567@s.whatsapp.net"
    """
    if not phone:
        raise ValidationError("Recipient cannot be empty")

    cleaned = re.sub(r"\D", "", phone.replace(JID_SUFFIX, "").replace(CHAT_ID_SUFFIX, ""))
    if not cleaned:
        raise ValidationError(f"Invalid phone number: {phone}")

    if not cleaned.startswith(default_country_code) and len(cleaned) == 10:
        cleaned = default_country_code + cleaned

    return cleaned + JID_SUFFIX


def to_chat_id(recipient: str) -> str:
    """
    Convert a recipient (number or JID) to the bridge chat id format.

    Group ids (`...@g.us`) are passed through unchanged.
    """
    if not recipient:
        raise ValidationError("Recipient cannot be empty")

    if recipient.endswith(("@g.us", CHAT_ID_SUFFIX)):
        return recipient

    return recipient.replace(JID_SUFFIX, "") + CHAT_ID_SUFFIX


def sanitize_filename(filename: Optional[str]) -> str:
    """Strip directory components and unsafe characters from an upload name."""
    name = (filename or "").replace("\\", "/").split("/")[-1]
    name = re.sub(r'[^a-zA-Z0-9_\-. ]', '_', name).strip(" .")
    return name or "upload.bin"
