"""
Temporary storage for uploaded media.

Uploads are written under the configured upload directory, sent, and
deleted again; nothing is kept after the request.
"""

import time
from pathlib import Path

from starlette.datastructures import UploadFile

from wagate.devices.base import MediaPayload
from wagate.logger import get_logger
from wagate.validation import ValidationError, sanitize_filename

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


async def save_upload(
    upload: UploadFile,
    upload_dir: Path,
    max_bytes: int,
    caption: str = "",
    as_document: bool | None = None,
) -> MediaPayload:
    """
    Write an uploaded file to disk and describe it as a MediaPayload.

    Args:
        upload: The multipart file.
        upload_dir: Directory for temporary files.
        max_bytes: Size limit; larger uploads are rejected.
        caption: Caption to send with the media.
        as_document: Force document (True) or image (False) delivery. By
            default images are sent as images and everything else as a document.

    Raises:
        ValidationError: If the file is empty or too large.
    """
    upload_dir.mkdir(parents=True, exist_ok=True)
    filename = sanitize_filename(upload.filename)
    path = upload_dir / f"{int(time.time() * 1000)}-{filename}"

    size = 0
    try:
        with open(path, "wb") as f:
            while chunk := await upload.read(CHUNK_SIZE):
                size += len(chunk)
                if size > max_bytes:
                    raise ValidationError(
                        f"File too large (max {max_bytes // (1024 * 1024)} MB)"
                    )
                f.write(chunk)
    except Exception:
        discard_upload(path)
        raise

    if size == 0:
        discard_upload(path)
        raise ValidationError("Uploaded file is empty")

    mimetype = upload.content_type or "application/octet-stream"
    if as_document is None:
        as_document = not mimetype.startswith("image/")

    return MediaPayload(
        path=path,
        mimetype=mimetype,
        filename=upload.filename or filename,
        caption=caption or "",
        as_document=as_document,
    )


def discard_upload(path: Path) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not delete upload {path}: {e}")
