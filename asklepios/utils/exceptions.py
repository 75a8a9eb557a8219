"""Error taxonomy for the ingestion pipeline and the JSON error envelope.

Every failure the pipeline can surface carries a stable ``code``, a
human-readable ``message`` and a ``recovery`` hint telling the client what to
offer next (retry, switch to manual entry, edit the staged fields, log in
again). Handlers below render them as::

    {"code": ..., "message": ..., "details": ..., "recovery": ..., "trace_id": ...}
"""
from typing import Any, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse

from asklepios.middleware.tracing import TRACE_ID_CTX_VAR

RECOVERY_RETRY = "retry"
RECOVERY_MANUAL_ENTRY = "manual_entry"
RECOVERY_EDIT = "edit"
RECOVERY_LOGIN = "login"
RECOVERY_WAIT = "wait"


class PipelineError(Exception):
    code = "PIPELINE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    recovery: Optional[str] = RECOVERY_RETRY
    default_message = "Blood analysis processing failed"

    def __init__(self, message: Optional[str] = None, *, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message, "recovery": self.recovery}
        if self.details is not None:
            body["details"] = self.details
        return body


class EmptyStagingError(PipelineError):
    code = "NEED_AT_LEAST_ONE_FIELD"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    recovery = RECOVERY_EDIT
    default_message = "Add at least one biomarker with a name and a value"


class ProviderError(PipelineError):
    """An external AI provider call failed (non-2xx, timeout, empty or malformed reply)."""

    code = "PROVIDER_FAILED"
    status_code = status.HTTP_502_BAD_GATEWAY


class ExtractionError(ProviderError):
    code = "EXTRACTION_FAILED"
    recovery = RECOVERY_MANUAL_ENTRY
    default_message = "Could not read the lab report image. Try again or type the results manually."


class AnalysisError(ProviderError):
    code = "ANALYSIS_FAILED"
    default_message = "AI analysis of the results failed. Please try again."


class PersistenceError(PipelineError):
    code = "SAVING_FAILED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Saving the analysis failed. Please try again."


class ConcurrentRunError(PipelineError):
    code = "ANALYSIS_IN_PROGRESS"
    status_code = status.HTTP_409_CONFLICT
    recovery = RECOVERY_WAIT
    default_message = "This analysis is already being processed"


class InvalidTransitionError(PipelineError):
    code = "INVALID_STAGE_TRANSITION"
    status_code = status.HTTP_409_CONFLICT
    recovery = None
    default_message = "The analysis is not in a state that allows this action"


class RunNotFoundError(PipelineError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    recovery = None
    default_message = "Blood analysis not found"


def status_to_code(status_code: int) -> str:
    mapping = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        413: "PAYLOAD_TOO_LARGE",
        415: "UNSUPPORTED_MEDIA_TYPE",
        422: "UNPROCESSABLE_ENTITY",
        429: "TOO_MANY_REQUESTS",
        500: "INTERNAL_SERVER_ERROR",
        502: "BAD_GATEWAY",
        503: "SERVICE_UNAVAILABLE",
    }
    return mapping.get(status_code, f"HTTP_{status_code}")


async def handle_pipeline_error(request: Request, exc: PipelineError):
    body = exc.to_dict()
    body["trace_id"] = TRACE_ID_CTX_VAR.get()
    return JSONResponse(status_code=exc.status_code, content=body)


async def handle_http_exception(request: Request, exc: HTTPException):
    trace_id = TRACE_ID_CTX_VAR.get()
    detail: Any = exc.detail
    message = detail if isinstance(detail, str) else "HTTP error"
    body = {"code": status_to_code(exc.status_code), "message": message, "trace_id": trace_id}
    if detail is not None:
        body["details"] = detail
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        # Expired or missing session: the client re-authenticates, never retries
        body["recovery"] = RECOVERY_LOGIN
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


async def handle_unhandled_exception(request: Request, exc: Exception):
    trace_id = TRACE_ID_CTX_VAR.get()
    body = {
        "code": "INTERNAL_SERVER_ERROR",
        "message": "An unexpected error occurred",
        "details": str(exc),
        "trace_id": trace_id,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


async def handle_validation_error(request: Request, exc: RequestValidationError):
    body = {
        "code": "UNPROCESSABLE_ENTITY",
        "message": "Request validation failed",
        "details": jsonable_encoder(exc.errors()),
        "recovery": RECOVERY_EDIT,
        "trace_id": TRACE_ID_CTX_VAR.get(),
    }
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)
