"""
QR rendering for the pairing flow.

The protocol client reports the raw pairing string; the frontend wants an
image it can drop into an <img> tag.
"""

import base64
import io

import qrcode


def render_qr_png(raw: str) -> bytes:
    """Render a pairing string as PNG bytes."""
    if not raw:
        raise ValueError("Empty QR payload")

    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(raw)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_qr_data_url(raw: str) -> str:
    """Render a pairing string as a `data:image/png;base64,...` URL."""
    encoded = base64.b64encode(render_qr_png(raw)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
