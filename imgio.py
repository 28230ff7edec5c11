from __future__ import annotations

import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

THUMBNAIL_MIN_SIDE = 16
THUMBNAIL_MAX_SIDE = 1024


def sniff_content_type(data: bytes) -> str | None:
    """Return the MIME type Pillow recognizes in ``data``, or ``None``."""

    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError):
        return None
    if not image_format:
        return None
    return Image.MIME.get(image_format.upper())


def _convert_to_rgb(image: Image.Image) -> Image.Image:
    if image.mode != "RGB":
        return image.convert("RGB")
    return image.copy()


def _resize_if_needed(image: Image.Image, max_side: int) -> Image.Image:
    width, height = image.size
    current_max = max(width, height)
    if current_max <= max_side:
        return image
    scale = max_side / float(current_max)
    new_width = max(1, int(round(width * scale)))
    new_height = max(1, int(round(height * scale)))
    resized = image.resize((new_width, new_height), Image.Resampling.LANCZOS)
    image.close()
    return resized


def clamp_thumbnail_side(value: int) -> int:
    return min(max(THUMBNAIL_MIN_SIDE, int(value)), THUMBNAIL_MAX_SIDE)


def render_thumbnail(data: bytes, max_side: int, *, quality: int = 85) -> bytes:
    """Downscale image bytes to a JPEG whose longer side is at most ``max_side``."""

    side = clamp_thumbnail_side(max_side)
    with Image.open(io.BytesIO(data)) as original:
        transposed = ImageOps.exif_transpose(original)
        image = _convert_to_rgb(transposed)
        if transposed is not original:
            transposed.close()
    image = _resize_if_needed(image, side)
    buffer = io.BytesIO()
    try:
        image.save(buffer, format="JPEG", quality=quality, progressive=True)
    finally:
        image.close()
    logging.debug("IMAGE thumbnail side=%s bytes=%s", side, buffer.tell())
    return buffer.getvalue()


__all__ = ["sniff_content_type", "render_thumbnail", "clamp_thumbnail_side"]
