"""Thin async client for OpenAI-compatible ``/chat/completions`` endpoints.

Both the vision extraction and the results analysis go through here. Any
transport problem, non-2xx status or empty completion raises ``ProviderError``;
callers narrow it to their own error type.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, Optional

import httpx

from asklepios.utils.exceptions import ProviderError

logger = logging.getLogger("asklepios")

AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))


async def chat_completion(
    messages: List[Dict[str, Any]],
    *,
    model: str,
    base_url: str,
    api_key: Optional[str],
    timeout_s: float = AI_TIMEOUT_SECONDS,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    response_format: Optional[Dict[str, Any]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    if not api_key:
        raise ProviderError("AI provider is not configured", details={"model": model})

    payload: Dict[str, Any] = {"model": model, "messages": messages}
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    if temperature is not None:
        payload["temperature"] = temperature
    if response_format is not None:
        payload["response_format"] = response_format

    url = base_url.rstrip("/") + "/chat/completions"
    started = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            resp = await client.post(
                url,
                headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
                json=payload,
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.TimeoutException as exc:
        logger.warning({"function": "chat_completion", "model": model, "status": "timeout"})
        raise ProviderError("AI provider timed out", details={"model": model}) from exc
    except httpx.HTTPStatusError as exc:
        code = exc.response.status_code
        logger.warning({"function": "chat_completion", "model": model, "status": "http_error", "http_status": code})
        raise ProviderError(f"AI provider returned HTTP {code}", details={"model": model, "http_status": code}) from exc
    except httpx.HTTPError as exc:
        logger.warning({"function": "chat_completion", "model": model, "status": "transport_error", "error": str(exc)})
        raise ProviderError("AI provider is unreachable", details={"model": model}) from exc
    except httpx.InvalidURL as exc:
        # misconfigured *_API_BASE
        logger.warning({"function": "chat_completion", "model": model, "status": "invalid_url", "error": str(exc)})
        raise ProviderError("AI provider URL is invalid", details={"model": model}) from exc
    except ValueError as exc:
        raise ProviderError("AI provider returned a non-JSON body", details={"model": model}) from exc

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not isinstance(content, str) or not content.strip():
        raise ProviderError("AI provider returned an empty completion", details={"model": model})

    logger.info({
        "function": "chat_completion",
        "model": model,
        "status": "ok",
        "elapsed_ms": int((time.perf_counter() - started) * 1000),
        "chars": len(content),
    })
    return content


__all__ = ["chat_completion", "AI_TIMEOUT_SECONDS"]
