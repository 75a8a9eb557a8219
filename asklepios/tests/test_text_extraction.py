import asyncio
import base64
import json

import httpx
import pytest
import pytesseract

from asklepios.services import text_extraction
from asklepios.services.text_extraction import extract_text, normalize_mime_type
from asklepios.utils.exceptions import ExtractionError


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def vision_key(monkeypatch):
    monkeypatch.setattr(text_extraction, "VISION_API_KEY", "test-key")
    monkeypatch.setattr(text_extraction, "EXTRACTION_PROVIDER", "openai")


@pytest.mark.parametrize(
    "given,expected",
    [
        ("image/png", "image/png"),
        ("IMAGE/WEBP", "image/webp"),
        ("image/gif; name=x", "image/gif"),
        ("application/pdf", "image/jpeg"),
        ("image/heic", "image/jpeg"),
        ("", "image/jpeg"),
        (None, "image/jpeg"),
    ],
)
def test_normalize_mime_type(given, expected):
    assert normalize_mime_type(given) == expected


def test_vision_request_shape(vision_key):
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("Глюкоза: 7.5 ммоль/л (референс: 3.3-6.1)\n"))

    text = asyncio.run(extract_text("QUJD", "application/pdf", transport=httpx.MockTransport(handler)))

    assert text == "Глюкоза: 7.5 ммоль/л (референс: 3.3-6.1)"
    assert seen["url"].endswith("/chat/completions")
    assert seen["auth"] == "Bearer test-key"
    body = seen["body"]
    assert body["model"] == "gpt-4o"
    assert body["max_tokens"] == 2000
    assert body["messages"][0]["role"] == "system"
    assert "референс" in body["messages"][0]["content"]
    image_part = body["messages"][1]["content"][1]
    assert image_part["image_url"]["url"] == "data:image/jpeg;base64,QUJD"
    assert "response_format" not in body


def test_http_error_raises_extraction_error(vision_key):
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(extract_text("QUJD", "image/png", transport=transport))
    err = exc_info.value
    assert err.code == "EXTRACTION_FAILED"
    assert err.recovery == "manual_entry"
    assert err.details["http_status"] == 500


def test_timeout_raises_extraction_error(vision_key):
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(ExtractionError):
        asyncio.run(extract_text("QUJD", "image/png", transport=httpx.MockTransport(handler)))


def test_empty_completion_raises_extraction_error(vision_key):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=_completion("   ")))
    with pytest.raises(ExtractionError):
        asyncio.run(extract_text("QUJD", "image/png", transport=transport))


def test_missing_api_key_raises_without_calling_out(monkeypatch):
    monkeypatch.setattr(text_extraction, "VISION_API_KEY", None)
    monkeypatch.setattr(text_extraction, "EXTRACTION_PROVIDER", "openai")

    def handler(request):
        raise AssertionError("provider must not be called")

    with pytest.raises(ExtractionError):
        asyncio.run(extract_text("QUJD", "image/png", transport=httpx.MockTransport(handler)))


def test_empty_image_payload():
    with pytest.raises(ExtractionError):
        asyncio.run(extract_text("", "image/png"))


def test_tesseract_provider(monkeypatch, png_bytes):
    monkeypatch.setattr(text_extraction, "EXTRACTION_PROVIDER", "tesseract")
    seen = {}

    def fake_ocr(img, lang=None):
        seen["lang"] = lang
        seen["size"] = img.size
        return "Гемоглобин: 135 г/л\n"

    monkeypatch.setattr(pytesseract, "image_to_string", fake_ocr)
    payload = base64.b64encode(png_bytes(40, 30)).decode()

    text = asyncio.run(extract_text(payload, "image/png"))

    assert text == "Гемоглобин: 135 г/л"
    assert seen == {"lang": "rus+eng", "size": (40, 30)}


def test_tesseract_failure_raises_extraction_error(monkeypatch, png_bytes):
    monkeypatch.setattr(text_extraction, "EXTRACTION_PROVIDER", "tesseract")

    def broken(img, lang=None):
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "image_to_string", broken)
    payload = base64.b64encode(png_bytes()).decode()
    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(extract_text(payload, "image/png"))
    assert exc_info.value.details["provider"] == "tesseract"


def test_tesseract_rejects_bad_base64(monkeypatch):
    monkeypatch.setattr(text_extraction, "EXTRACTION_PROVIDER", "tesseract")
    with pytest.raises(ExtractionError):
        asyncio.run(extract_text("###not-base64###", "image/png"))
