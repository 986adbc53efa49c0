from __future__ import annotations

from io import BytesIO
from urllib.parse import urlencode

import qrcode
from PIL import Image

from .settings import settings


def qr_image_url(text: str, size: int = 200) -> str:
    """URL of the external QR service rendering `text`."""
    return f"{settings.KR_QR_SERVICE_URL}?{urlencode({'size': f'{size}x{size}', 'data': text})}"


def make_qr_image(text: str, box_size: int = 10, border: int = 2) -> Image.Image:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white").convert("RGB")


def make_qr_png_bytes(text: str, box_size: int = 10, border: int = 2) -> bytes:
    img = make_qr_image(text, box_size=box_size, border=border)
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()
