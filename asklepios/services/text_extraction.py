"""Lab report image -> plain text.

The vision provider only transcribes; structuring the rows is done locally by
the biomarker parser. Set ``EXTRACTION_PROVIDER=tesseract`` to read images
with the local Tesseract install instead of calling out.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

import httpx
from fastapi.concurrency import run_in_threadpool

from asklepios.services import ocr
from asklepios.services.llm import AI_TIMEOUT_SECONDS, chat_completion
from asklepios.utils.exceptions import ExtractionError, ProviderError

logger = logging.getLogger("asklepios")

EXTRACTION_PROVIDER = os.getenv("EXTRACTION_PROVIDER", "openai").strip().lower()
VISION_API_KEY = os.getenv("VISION_API_KEY") or os.getenv("OPENAI_API_KEY")
VISION_API_BASE = os.getenv("VISION_API_BASE", "https://api.openai.com/v1")
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o")
VISION_MAX_TOKENS = 2000
VISION_TEMPERATURE = 0.2

DEFAULT_MIME_TYPE = "image/jpeg"
ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

EXTRACTION_SYSTEM_PROMPT = (
    "Вы - ассистент, который переписывает бланки анализов крови в текст. "
    "Извлеките ВСЕ строки с показателями с изображения, включая рукописные пометки. "
    "Каждую строку пишите в формате: "
    "\"<название>: <значение> <единицы> (референс: <мин>-<макс>)\". "
    "Если референс не указан, опустите скобки. "
    "Отвечайте только простым текстом, по одному показателю на строку, без JSON и без пояснений."
)
EXTRACTION_USER_PROMPT = (
    "Перепишите все показатели с этого бланка анализа. "
    "Поддерживаемые лаборатории: Invitro, Helix, KDL, CMD, Гемотест и другие."
)


def normalize_mime_type(mime_type: Optional[str]) -> str:
    """Lowercase and check against the allow-list; anything else becomes JPEG."""
    value = (mime_type or "").split(";", 1)[0].strip().lower()
    if value not in ALLOWED_MIME_TYPES:
        if value:
            logger.info({"function": "normalize_mime_type", "received": value, "using": DEFAULT_MIME_TYPE})
        return DEFAULT_MIME_TYPE
    return value


async def _extract_with_vision(
    image_base64: str,
    mime_type: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    messages = [
        {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": EXTRACTION_USER_PROMPT},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type};base64,{image_base64}", "detail": "high"},
                },
            ],
        },
    ]
    return await chat_completion(
        messages,
        model=VISION_MODEL,
        base_url=VISION_API_BASE,
        api_key=VISION_API_KEY,
        timeout_s=AI_TIMEOUT_SECONDS,
        max_tokens=VISION_MAX_TOKENS,
        temperature=VISION_TEMPERATURE,
        transport=transport,
    )


async def _extract_with_tesseract(image_base64: str) -> str:
    data = ocr.decode_base64_image(image_base64)
    return await run_in_threadpool(ocr.image_to_text, data)


async def extract_text(
    image_base64: str,
    mime_type: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    if not image_base64:
        raise ExtractionError("No image data to read")
    mime = normalize_mime_type(mime_type)
    logger.info({"function": "extract_text", "provider": EXTRACTION_PROVIDER, "mime_type": mime})

    if EXTRACTION_PROVIDER == "tesseract":
        try:
            text = await _extract_with_tesseract(image_base64)
        except (OSError, ValueError, RuntimeError) as exc:
            # pytesseract.TesseractError / TesseractNotFoundError derive from these
            logger.warning({"function": "extract_text", "provider": "tesseract", "error": str(exc)})
            raise ExtractionError(details={"provider": "tesseract", "reason": str(exc)}) from exc
    else:
        try:
            text = await _extract_with_vision(image_base64, mime, transport=transport)
        except ProviderError as exc:
            raise ExtractionError(details=exc.details) from exc

    text = text.strip()
    if not text:
        raise ExtractionError(details={"reason": "empty text"})
    return text


__all__ = ["extract_text", "normalize_mime_type", "ALLOWED_MIME_TYPES", "EXTRACTION_SYSTEM_PROMPT"]
