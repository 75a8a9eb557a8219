"""Resize and re-encode lab report photos before they go to the vision provider."""
from __future__ import annotations

import base64
import io
import logging
from typing import Tuple

from PIL import Image, ImageOps

logger = logging.getLogger("asklepios")

MAX_DIMENSION = 1024
JPEG_MIME = "image/jpeg"


def _jpeg_quality(quality: float) -> int:
    # Browser-style 0..1 quality onto Pillow's useful 1..95 scale
    return max(1, min(95, int(round(quality * 100))))


def _target_size(width: int, height: int) -> Tuple[int, int]:
    ratio = min(MAX_DIMENSION / width, MAX_DIMENSION / height, 1.0)
    if ratio >= 1.0:
        return width, height
    return (
        max(1, min(MAX_DIMENSION, int(round(width * ratio)))),
        max(1, min(MAX_DIMENSION, int(round(height * ratio)))),
    )


def compress(image: bytes, quality: float = 0.8) -> bytes:
    """Downscale so neither side exceeds 1024px and re-encode as JPEG.

    Never upscales. Any decode or encode failure returns ``image`` unchanged.
    """
    try:
        with Image.open(io.BytesIO(image)) as src:
            img = ImageOps.exif_transpose(src)
            size = _target_size(*img.size)
            if size != img.size:
                img = img.resize(size, Image.Resampling.LANCZOS)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=_jpeg_quality(quality), optimize=True)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning({"function": "compress_image", "status": "fallback_original", "error": str(exc)})
        return image

    data = out.getvalue()
    logger.info({
        "function": "compress_image",
        "original_bytes": len(image),
        "compressed_bytes": len(data),
        "size": list(size),
    })
    return data


def prepare_upload(data: bytes, mime_type: str, quality: float = 0.8) -> Tuple[bytes, str]:
    """Compress and report the MIME type of what is actually sent on."""
    compressed = compress(data, quality)
    if compressed is data:
        return data, mime_type
    return compressed, JPEG_MIME


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


__all__ = ["compress", "prepare_upload", "to_base64", "MAX_DIMENSION"]
