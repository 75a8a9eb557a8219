# --- imports (top of asklepios/app.py) ---
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

# Load env before importing modules that read configuration at import time
BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(ENV_PATH)

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from asklepios.middleware.rate_limit import limiter, rate_limit_handler
from asklepios.middleware.tracing import TRACE_ID_CTX_VAR, TracingMiddleware
from asklepios.models import init_db
from asklepios.routes import auth_routes, biomarker_routes, blood_analysis_routes
from asklepios.services.orchestrator import RunRegistry
from asklepios.utils.exceptions import (
    PipelineError,
    handle_http_exception,
    handle_pipeline_error,
    handle_unhandled_exception,
    handle_validation_error,
)

CORS_ORIGINS = [
    origin.strip()
    for origin in (os.getenv("CORS_ORIGINS") or "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if origin.strip()
]


# --- logging setup ---
class JsonFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "function": record.funcName,
            "message": record.msg if isinstance(record.msg, dict) else record.getMessage(),
        }
        trace_id = TRACE_ID_CTX_VAR.get()
        if trace_id:
            payload["trace_id"] = trace_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> logging.Logger:
    logger = logging.getLogger("asklepios")
    logger.setLevel(logging.INFO)
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    return logger


logger = configure_logging()


# --- app & router setup ---
app = FastAPI(title="Asklepios Backend", version="0.1.0")

# In-memory orchestration state, one table per process
app.state.run_registry = RunRegistry()
app.state.limiter = limiter

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Added last so it runs first and every log line and error envelope has a trace id
app.add_middleware(TracingMiddleware)

app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_exception_handler(PipelineError, handle_pipeline_error)
app.add_exception_handler(StarletteHTTPException, handle_http_exception)
app.add_exception_handler(RequestValidationError, handle_validation_error)
app.add_exception_handler(Exception, handle_unhandled_exception)


@app.on_event("startup")
def _init_db():
    init_db()
    logger.info({"function": "startup", "status": "db_ready"})


@app.get("/api/health")
def health():
    return {"status": "ok", "active_runs": len(app.state.run_registry)}


app.include_router(auth_routes.router)
app.include_router(blood_analysis_routes.router)
app.include_router(biomarker_routes.router)
