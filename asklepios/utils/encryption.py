"""Transparent at-rest encryption for lab text and analysis payloads."""
import base64
import hashlib
import json
import logging
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.types import TypeDecorator, Text

logger = logging.getLogger("asklepios")


def _build_cipher() -> Fernet:
    """Derive a stable Fernet key from ENCRYPTION_SECRET (or the dev fallback)."""
    secret = os.getenv("ENCRYPTION_SECRET", "dev-secret-key-change-me").encode("utf-8")
    key = base64.urlsafe_b64encode(hashlib.sha256(secret).digest())
    return Fernet(key)


_CIPHER = _build_cipher()


def encrypt_str(value: str) -> str:
    return _CIPHER.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_str(token: str) -> str | None:
    try:
        return _CIPHER.decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        # Rows written under a rotated secret read back as empty
        logger.warning({"function": "decrypt_str", "status": "invalid_token"})
        return None


class EncryptedText(TypeDecorator):
    """Encrypts/decrypts text values (report text, OCR output)."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Any:  # type: ignore[override]
        if value is None:
            return None
        return encrypt_str(value if isinstance(value, str) else str(value))

    def process_result_value(self, value: Any, dialect) -> Any:  # type: ignore[override]
        if value is None:
            return None
        return decrypt_str(value)


class EncryptedJSON(TypeDecorator):
    """Encrypts/decrypts JSON payloads such as AI analysis results."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Any:  # type: ignore[override]
        if value is None:
            return None
        return encrypt_str(json.dumps(value, ensure_ascii=False, default=str))

    def process_result_value(self, value: Any, dialect) -> Any:  # type: ignore[override]
        if value is None:
            return None
        raw = decrypt_str(value)
        if raw is None:
            return None
        return json.loads(raw)
