"""Local Tesseract OCR for lab report images (no external provider)."""
from __future__ import annotations

import base64
import binascii
import io
import os

import pytesseract
from PIL import Image

TESSERACT_LANG = os.getenv("TESSERACT_LANG", "rus+eng")


def decode_base64_image(image_base64: str) -> bytes:
    payload = (image_base64 or "").strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image payload is not valid base64") from exc


def image_to_text(data: bytes, lang: str | None = None) -> str:
    img = Image.open(io.BytesIO(data))
    text = pytesseract.image_to_string(img, lang=lang or TESSERACT_LANG)
    if not text.strip():
        raise ValueError("OCR produced empty output")
    return text


__all__ = ["decode_base64_image", "image_to_text"]
