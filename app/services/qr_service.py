"""
services/qr_service.py
Renders verification QR codes as PIL images, PNG bytes and data URLs.
"""
import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_H
from PIL import Image

from app.core.config import settings


def render_qr_image(payload: str, pixel_size: int | None = None) -> Image.Image:
    """Render `payload` as a square QR image with high error correction."""
    pixel_size = pixel_size or settings.QR_PIXEL_SIZE
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_H,
        box_size=10,
        border=1,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image().convert("RGB")
    # Nearest keeps module edges sharp when scaling to the fixed size
    return img.resize((pixel_size, pixel_size), Image.Resampling.NEAREST)


def qr_png_bytes(payload: str, pixel_size: int | None = None) -> bytes:
    buffer = io.BytesIO()
    render_qr_image(payload, pixel_size).save(buffer, format="PNG")
    return buffer.getvalue()


def qr_data_url(payload: str, pixel_size: int | None = None) -> str:
    """PNG data URL for in-browser previews."""
    encoded = base64.b64encode(qr_png_bytes(payload, pixel_size)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
