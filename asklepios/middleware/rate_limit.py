"""Per-user rate limiting for endpoints that call external AI providers."""
import logging
import os
import time

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from asklepios.auth.deps import get_current_user
from asklepios.middleware.tracing import TRACE_ID_CTX_VAR
from asklepios.models.user import User

logger = logging.getLogger("asklepios")

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").strip().lower() not in {"0", "false", "off", "no"}
PROVIDER_RATE_LIMIT = os.getenv("PROVIDER_RATE_LIMIT", "10/minute")


def user_rate_key(request: Request) -> str:
    """Per-user key when ``rate_limited_user`` ran first; otherwise the client IP."""
    uid = getattr(request.state, "user_id", None)
    if uid:
        return str(uid)
    return get_remote_address(request)


limiter = Limiter(key_func=user_rate_key, default_limits=[], enabled=RATE_LIMIT_ENABLED)


def rate_limited_user(request: Request, user: User = Depends(get_current_user)) -> User:
    request.state.user_id = user.id
    return user


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    retry_after = 60
    reset_at = getattr(exc, "reset_time", None)
    if reset_at:
        retry_after = max(1, int(reset_at - time.time()))
    logger.info({
        "function": "rate_limit",
        "path": str(request.url.path),
        "key": user_rate_key(request),
    })
    return JSONResponse(
        status_code=429,
        headers={"Retry-After": str(retry_after)},
        content={
            "code": "TOO_MANY_REQUESTS",
            "message": "Too many requests. Please wait a bit and try again.",
            "recovery": "wait",
            "trace_id": TRACE_ID_CTX_VAR.get(),
        },
    )
