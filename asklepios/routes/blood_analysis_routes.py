# asklepios/routes/blood_analysis_routes.py
import logging
import os
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from sqlalchemy.orm import Session

from asklepios.auth.deps import get_current_user
from asklepios.db.session import get_db
from asklepios.middleware.rate_limit import PROVIDER_RATE_LIMIT, limiter, rate_limited_user
from asklepios.models.user import User
from asklepios.schemas.blood_analysis import (
    BiomarkerResultOut,
    BloodAnalysisOut,
    ConfirmIn,
    ReviewEditIn,
    ReviewParseIn,
    RunOut,
    StagingOut,
    TextAnalysisIn,
)
from asklepios.services import analysis_ai, analysis_store, text_extraction
from asklepios.services.biomarker_parser import parse
from asklepios.services.orchestrator import AnalysisOrchestrator, RunRegistry
from asklepios.services.review_stage import StagingBuffer
from asklepios.utils.exceptions import RunNotFoundError

logger = logging.getLogger("asklepios")

MAX_FILE_MB = int(os.getenv("MAX_FILE_MB", "10"))

router = APIRouter(prefix="/api/blood-analyses", tags=["blood-analyses"])


def get_registry(request: Request) -> RunRegistry:
    return request.app.state.run_registry


def _orchestrator(request: Request, db: Session, user: User) -> AnalysisOrchestrator:
    # Providers are looked up per request so tests can monkeypatch the modules
    return AnalysisOrchestrator(
        db,
        str(user.id),
        extractor=text_extraction.extract_text,
        analyzer=analysis_ai.analyze,
        registry=get_registry(request),
    )


# ---- review stage (stateless) ----
@router.post("/review/parse", response_model=StagingOut)
def review_parse(
    payload: ReviewParseIn,
    current_user: User = Depends(get_current_user),
):
    parsed = parse(payload.text)
    return {
        "fields": [item.to_dict() for item in parsed.fields],
        "skipped_lines": parsed.skipped_lines,
    }


@router.post("/review/edit", response_model=StagingOut)
def review_edit(
    payload: ReviewEditIn,
    current_user: User = Depends(get_current_user),
):
    buffer = StagingBuffer.from_dicts(item.model_dump() for item in payload.fields)
    if payload.action == "add":
        buffer = buffer.add()
    else:
        if not payload.field_id:
            raise HTTPException(status_code=422, detail="field_id is required for this action")
        if payload.action == "remove":
            buffer = buffer.remove(payload.field_id)
        else:
            changes = payload.changes.model_dump(exclude_none=True) if payload.changes else {}
            try:
                buffer = buffer.update(payload.field_id, **changes)
            except KeyError:
                raise HTTPException(status_code=404, detail="Staged field not found")
    return {"fields": buffer.to_dicts(), "skipped_lines": 0}


# ---- orchestration ----
@router.post("/photo", response_model=RunOut, status_code=status.HTTP_201_CREATED)
@limiter.limit(PROVIDER_RATE_LIMIT)
async def start_photo_analysis(
    request: Request,
    file: UploadFile = File(...),
    analysis_date: Optional[datetime] = Form(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(rate_limited_user),
):
    content_type = (file.content_type or "").lower()
    if content_type and not content_type.startswith("image/"):
        raise HTTPException(status_code=415, detail="Only image uploads are supported")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > MAX_FILE_MB * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"File too large (max {MAX_FILE_MB} MB)")

    logger.info({
        "function": "start_photo_analysis",
        "user_id": str(current_user.id),
        "bytes": len(data),
        "content_type": content_type,
    })
    run = await _orchestrator(request, db, current_user).start_photo(
        data, content_type or None, file.filename, analysis_date
    )
    return run.to_dict()


@router.post("/text", response_model=RunOut, status_code=status.HTTP_201_CREATED)
@limiter.limit(PROVIDER_RATE_LIMIT)
async def start_text_analysis(
    request: Request,
    payload: TextAnalysisIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(rate_limited_user),
):
    run = await _orchestrator(request, db, current_user).start_text(payload.text, payload.analysis_date)
    return run.to_dict()


@router.post("/{analysis_id}/confirm", response_model=RunOut)
@limiter.limit(PROVIDER_RATE_LIMIT)
async def confirm_analysis(
    request: Request,
    analysis_id: str,
    payload: ConfirmIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(rate_limited_user),
):
    fields = [item.model_dump() for item in payload.fields] if payload.fields is not None else None
    run = await _orchestrator(request, db, current_user).confirm(analysis_id, fields=fields, text=payload.text)
    return run.to_dict()


@router.post("/{analysis_id}/cancel", response_model=RunOut)
def cancel_analysis(
    request: Request,
    analysis_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _orchestrator(request, db, current_user).cancel(analysis_id).to_dict()


@router.get("/{analysis_id}/progress", response_model=RunOut)
def analysis_progress(
    request: Request,
    analysis_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _orchestrator(request, db, current_user).get_run(analysis_id).to_dict()


# ---- stored analyses ----
@router.get("", response_model=List[BloodAnalysisOut])
def list_blood_analyses(
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return analysis_store.list_analyses(db, str(current_user.id), limit=limit)


@router.get("/{analysis_id}", response_model=BloodAnalysisOut)
def get_blood_analysis(
    analysis_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    item = analysis_store.get_analysis(db, analysis_id, user_id=str(current_user.id))
    if not item:
        raise RunNotFoundError(details={"analysis_id": analysis_id})
    return item


@router.get("/{analysis_id}/biomarker-results", response_model=List[BiomarkerResultOut])
def get_biomarker_results(
    analysis_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not analysis_store.get_analysis(db, analysis_id, user_id=str(current_user.id)):
        raise RunNotFoundError(details={"analysis_id": analysis_id})
    return [result for result, _definition in analysis_store.list_results(db, analysis_id)]
