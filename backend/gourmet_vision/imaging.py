from __future__ import annotations

import base64
import binascii
import io
import os
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


MAX_IMAGE_DIM = _env_int("MENU_IMAGE_MAX_DIM", 2048)
JPEG_QUALITY = _env_int("MENU_JPEG_QUALITY", 90)


class InvalidImageError(ValueError):
    pass


def decode_base64_image(image_base64: str) -> Tuple[bytes, str]:
    """Decode a raw base64 string or a ``data:`` URL into (bytes, mime type)."""
    raw = (image_base64 or "").strip()
    mime_type = "image/jpeg"
    if raw.startswith("data:"):
        if "," not in raw:
            raise InvalidImageError("data URL has no payload")
        header, raw = raw.split(",", 1)
        if ";" in header:
            mime_type = header[5:].split(";", 1)[0] or mime_type

    raw = raw.replace("\n", "").replace("\r", "")
    if not raw:
        raise InvalidImageError("image payload is empty")
    try:
        return base64.b64decode(raw, validate=True), mime_type
    except (binascii.Error, ValueError) as e:
        raise InvalidImageError(f"image payload is not valid base64: {e}") from e


def to_data_url(image_bytes: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"


def prepare_menu_image(image_bytes: bytes, mime_type: str) -> Tuple[bytes, str]:
    """
    Normalise an uploaded menu photo for analysis.

    Applies the EXIF orientation, converts to RGB JPEG and downsizes anything
    larger than MENU_IMAGE_MAX_DIM on its longest side. JPEG input that needs
    neither step is passed through untouched.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImageError(f"cannot read image: {e}") from e

    is_jpeg = image_bytes[:3] == b"\xff\xd8\xff"
    rotated = img.getexif().get(0x0112, 1) != 1  # EXIF Orientation
    w, h = img.size
    longest = max(w, h)
    if is_jpeg and longest <= MAX_IMAGE_DIM and not rotated:
        return image_bytes, "image/jpeg"

    oriented = ImageOps.exif_transpose(img)
    w, h = oriented.size
    if oriented.mode not in ("RGB", "L"):
        oriented = oriented.convert("RGB")
    if longest > MAX_IMAGE_DIM:
        scale = MAX_IMAGE_DIM / longest
        oriented = oriented.resize((max(1, int(w * scale)), max(1, int(h * scale))), resample=Image.LANCZOS)

    out = io.BytesIO()
    oriented.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue(), "image/jpeg"
