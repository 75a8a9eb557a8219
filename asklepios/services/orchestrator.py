"""Drives one blood analysis from upload to saved results.

Stages move strictly forward::

    idle -> uploading -> recognizing -> analyzing -> saving -> complete

with two shortcuts: typed text skips ``recognizing``, and a retry of a pending
analysis goes straight from ``idle`` to ``analyzing``. Any stage may fall back
to ``idle`` when a step fails; the analysis row then stays ``pending`` and can
be confirmed again.

Progress is not stored. It is derived from the stage and whether the work of
that stage has finished (see ``progress_for``).
"""
from __future__ import annotations

import logging
import mimetypes
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from asklepios.models.blood_analysis import ANALYSIS_ANALYZED, ANALYSIS_PENDING, BloodAnalysis
from asklepios.services import analysis_store, result_store
from asklepios.services.analysis_ai import AnalysisResult, analyze
from asklepios.services.biomarker_parser import BiomarkerField, parse
from asklepios.services.image_preprocessor import prepare_upload, to_base64
from asklepios.services.review_stage import StagingBuffer
from asklepios.services.storage import store_report_image
from asklepios.services.text_extraction import extract_text, normalize_mime_type
from asklepios.utils.exceptions import (
    AnalysisError,
    ConcurrentRunError,
    EmptyStagingError,
    ExtractionError,
    InvalidTransitionError,
    PersistenceError,
    PipelineError,
    RunNotFoundError,
)

logger = logging.getLogger("asklepios")

Extractor = Callable[[str, str], Awaitable[str]]
Analyzer = Callable[[str], Awaitable[AnalysisResult]]


class ProcessingStage(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    RECOGNIZING = "recognizing"
    ANALYZING = "analyzing"
    SAVING = "saving"
    COMPLETE = "complete"


_TRANSITIONS = {
    ProcessingStage.IDLE: {ProcessingStage.UPLOADING, ProcessingStage.ANALYZING},
    ProcessingStage.UPLOADING: {ProcessingStage.RECOGNIZING, ProcessingStage.ANALYZING},
    ProcessingStage.RECOGNIZING: {ProcessingStage.ANALYZING},
    ProcessingStage.ANALYZING: {ProcessingStage.SAVING},
    ProcessingStage.SAVING: {ProcessingStage.COMPLETE},
    ProcessingStage.COMPLETE: set(),
}

# (progress while working, progress once the stage's work is done)
_PROGRESS = {
    ProcessingStage.IDLE: (0, 0),
    ProcessingStage.UPLOADING: (20, 50),
    ProcessingStage.RECOGNIZING: (65, 65),
    ProcessingStage.ANALYZING: (75, 80),
    ProcessingStage.SAVING: (90, 95),
    ProcessingStage.COMPLETE: (100, 100),
}

_CANCELLABLE = (ProcessingStage.IDLE, ProcessingStage.UPLOADING, ProcessingStage.RECOGNIZING)


def advance(current: ProcessingStage, target: ProcessingStage) -> ProcessingStage:
    """Return ``target`` if the move is legal, else raise ``InvalidTransitionError``.

    Falling back to ``idle`` is always legal.
    """
    if target is ProcessingStage.IDLE or target in _TRANSITIONS[current]:
        return target
    raise InvalidTransitionError(details={"from": current.value, "to": target.value})


def progress_for(stage: ProcessingStage, done: bool = False) -> int:
    working, finished = _PROGRESS[stage]
    return finished if done else working


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AnalysisRun:
    analysis_id: str
    user_id: str
    source: str
    stage: ProcessingStage = ProcessingStage.IDLE
    done: bool = False
    error: Optional[Dict[str, Any]] = None
    buffer: StagingBuffer = field(default_factory=StagingBuffer)
    extracted_text: Optional[str] = None
    skipped_lines: int = 0
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def progress(self) -> int:
        return progress_for(self.stage, self.done)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "source": self.source,
            "stage": self.stage.value,
            "progress": self.progress,
            "done": self.done,
            "error": self.error,
            "fields": self.buffer.to_dicts(),
            "extracted_text": self.extracted_text,
            "skipped_lines": self.skipped_lines,
            "updated_at": self.updated_at.isoformat(),
        }


class RunRegistry:
    """In-process table of runs by analysis id.

    Only one step of a given analysis may execute at a time; a second request
    arriving while the first is still inside ``exclusive`` gets
    ``ConcurrentRunError``. Runs are not shared between worker processes.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, AnalysisRun] = {}
        self._busy: set = set()
        self._lock = threading.Lock()

    def get(self, analysis_id: str) -> Optional[AnalysisRun]:
        with self._lock:
            return self._runs.get(analysis_id)

    def put(self, run: AnalysisRun) -> AnalysisRun:
        with self._lock:
            self._runs[run.analysis_id] = run
        return run

    def discard(self, analysis_id: str) -> None:
        with self._lock:
            self._runs.pop(analysis_id, None)

    def is_busy(self, analysis_id: str) -> bool:
        with self._lock:
            return analysis_id in self._busy

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()
            self._busy.clear()

    @contextmanager
    def exclusive(self, analysis_id: str) -> Iterator[None]:
        with self._lock:
            if analysis_id in self._busy:
                raise ConcurrentRunError(details={"analysis_id": analysis_id})
            self._busy.add(analysis_id)
        try:
            yield
        finally:
            with self._lock:
                self._busy.discard(analysis_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


FieldsInput = Iterable[Union[BiomarkerField, Dict[str, Any]]]


class AnalysisOrchestrator:
    def __init__(
        self,
        db: Session,
        user_id: str,
        extractor: Extractor = extract_text,
        analyzer: Analyzer = analyze,
        registry: Optional[RunRegistry] = None,
        upload_root: Optional[str] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.extractor = extractor
        self.analyzer = analyzer
        self.registry = registry if registry is not None else RunRegistry()
        self.upload_root = upload_root

    # ---- stage bookkeeping ----
    def _enter(self, run: AnalysisRun, target: ProcessingStage) -> None:
        run.stage = advance(run.stage, target)
        run.done = False
        run.updated_at = _utcnow()
        logger.info({
            "function": "orchestrator",
            "analysis_id": run.analysis_id,
            "stage": run.stage.value,
            "progress": run.progress,
        })

    def _finish(self, run: AnalysisRun) -> None:
        run.done = True
        run.updated_at = _utcnow()

    def _fail(self, run: AnalysisRun, exc: PipelineError, cause: Optional[BaseException] = None) -> None:
        failed_stage = run.stage.value
        details = exc.details if isinstance(exc.details, dict) else ({"reason": exc.details} if exc.details else {})
        exc.details = {**details, "analysis_id": run.analysis_id, "stage": failed_stage}
        run.error = {"code": exc.code, "message": exc.message, "recovery": exc.recovery}
        run.stage = advance(run.stage, ProcessingStage.IDLE)
        run.done = False
        run.updated_at = _utcnow()
        logger.warning(
            {
                "function": "orchestrator",
                "analysis_id": run.analysis_id,
                "stage": "idle",
                "failed_stage": failed_stage,
                "code": exc.code,
            },
            exc_info=cause,
        )

    @contextmanager
    def _stage(self, run: AnalysisRun, stage: ProcessingStage, error_cls: type) -> Iterator[None]:
        """Run one stage; any failure inside it drops the run back to idle.

        Pipeline errors pass through as raised. Anything else is reported as
        ``error_cls`` so the client always gets a recovery hint.
        """
        self._enter(run, stage)
        try:
            yield
        except PipelineError as exc:
            self._fail(run, exc)
            raise
        except Exception as exc:
            err = error_cls(details={"reason": type(exc).__name__})
            self._fail(run, err, cause=exc)
            raise err from exc
        else:
            self._finish(run)

    def _owned_analysis(self, analysis_id: str) -> BloodAnalysis:
        analysis = analysis_store.get_analysis(self.db, analysis_id, user_id=self.user_id)
        if analysis is None:
            raise RunNotFoundError(details={"analysis_id": analysis_id})
        return analysis

    def _owned_run(self, analysis_id: str) -> Optional[AnalysisRun]:
        run = self.registry.get(analysis_id)
        if run is not None and run.user_id != self.user_id:
            return None
        return run

    # ---- entry points ----
    async def start_photo(
        self,
        image: bytes,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        analysis_date: Optional[datetime] = None,
    ) -> AnalysisRun:
        if not mime_type and filename:
            mime_type = mimetypes.guess_type(filename)[0]
        mime = normalize_mime_type(mime_type)

        analysis = analysis_store.create_analysis(self.db, self.user_id, "photo", analysis_date)
        run = self.registry.put(AnalysisRun(analysis.id, self.user_id, "photo"))

        with self.registry.exclusive(run.analysis_id):
            with self._stage(run, ProcessingStage.UPLOADING, PersistenceError):
                payload, payload_mime = prepare_upload(image, mime)
                try:
                    _, image_url = store_report_image(payload, self.user_id, payload_mime, root=self.upload_root)
                    analysis_store.update_analysis(self.db, analysis, image_url=image_url)
                    self.db.commit()
                except (OSError, SQLAlchemyError) as exc:
                    self.db.rollback()
                    raise PersistenceError("Storing the uploaded image failed") from exc

            with self._stage(run, ProcessingStage.RECOGNIZING, ExtractionError):
                text = await self.extractor(to_base64(payload), payload_mime)
                parsed = parse(text)
                run.extracted_text = text
                run.buffer = StagingBuffer.from_fields(parsed.fields)
                run.skipped_lines = parsed.skipped_lines
        return run

    async def start_text(self, text: str, analysis_date: Optional[datetime] = None) -> AnalysisRun:
        confirmed = (text or "").strip()
        if not confirmed:
            raise EmptyStagingError("Enter at least one biomarker")

        analysis = analysis_store.create_analysis(self.db, self.user_id, "text", analysis_date)
        run = self.registry.put(AnalysisRun(analysis.id, self.user_id, "text"))

        with self.registry.exclusive(run.analysis_id):
            with self._stage(run, ProcessingStage.UPLOADING, PersistenceError):
                pass
            await self._analyze_and_save(run, analysis, confirmed)
        return run

    async def confirm(
        self,
        analysis_id: str,
        fields: Optional[FieldsInput] = None,
        text: Optional[str] = None,
    ) -> AnalysisRun:
        """Analyze and save a pending analysis.

        The text to analyze is taken from, in order: ``fields`` (a review
        buffer), ``text`` (manual entry or extracted text confirmed as-is),
        the run's own staging buffer, and finally the text stored by an
        earlier failed attempt.
        """
        analysis = self._owned_analysis(analysis_id)
        if analysis.status != ANALYSIS_PENDING:
            raise InvalidTransitionError(
                "This analysis has already been processed",
                details={"analysis_id": analysis_id, "status": analysis.status},
            )

        run = self._owned_run(analysis_id)
        if run is None:
            run = self.registry.put(AnalysisRun(analysis.id, self.user_id, analysis.source))

        with self.registry.exclusive(analysis_id):
            if run.stage not in (ProcessingStage.IDLE, ProcessingStage.UPLOADING, ProcessingStage.RECOGNIZING):
                raise InvalidTransitionError(details={"from": run.stage.value, "to": "analyzing"})
            confirmed = self._confirmed_text(run, analysis, fields, text)
            run.error = None
            await self._analyze_and_save(run, analysis, confirmed)
        return run

    def cancel(self, analysis_id: str) -> AnalysisRun:
        """Drop staged fields before analysis starts. Nothing persisted is touched."""
        analysis = self._owned_analysis(analysis_id)
        run = self._owned_run(analysis_id)
        if run is None:
            if analysis.status == ANALYSIS_ANALYZED:
                raise InvalidTransitionError(
                    "Analysis can no longer be cancelled",
                    details={"analysis_id": analysis_id, "stage": ProcessingStage.COMPLETE.value},
                )
            raise RunNotFoundError("No active processing for this analysis", details={"analysis_id": analysis_id})

        with self.registry.exclusive(analysis_id):
            if run.stage not in _CANCELLABLE:
                raise InvalidTransitionError(
                    "Analysis can no longer be cancelled",
                    details={"analysis_id": analysis_id, "stage": run.stage.value},
                )
            run.stage = advance(run.stage, ProcessingStage.IDLE)
            run.done = False
            run.error = None
            run.buffer = StagingBuffer()
            run.extracted_text = None
            run.skipped_lines = 0
            run.updated_at = _utcnow()
        logger.info({"function": "orchestrator", "analysis_id": analysis_id, "stage": "idle", "cancelled": True})
        return run

    def get_run(self, analysis_id: str) -> AnalysisRun:
        run = self._owned_run(analysis_id)
        if run is not None:
            return run
        # Runs live in process memory; after a restart fall back to the row
        analysis = self._owned_analysis(analysis_id)
        if analysis.status == ANALYSIS_ANALYZED:
            return AnalysisRun(analysis.id, self.user_id, analysis.source, ProcessingStage.COMPLETE, done=True)
        return AnalysisRun(analysis.id, self.user_id, analysis.source)

    # ---- internals ----
    def _confirmed_text(
        self,
        run: AnalysisRun,
        analysis: BloodAnalysis,
        fields: Optional[FieldsInput],
        text: Optional[str],
    ) -> str:
        if fields is not None:
            items = list(fields)
            if items and isinstance(items[0], dict):
                return StagingBuffer.from_dicts(items).confirm()
            return StagingBuffer.from_fields(items).confirm()
        if text is not None:
            stripped = text.strip()
            if not stripped:
                raise EmptyStagingError("Enter at least one biomarker")
            return stripped
        if len(run.buffer):
            return run.buffer.confirm()
        if run.extracted_text:
            return run.extracted_text.strip()
        if analysis.raw_text:
            return analysis.raw_text
        raise EmptyStagingError()

    async def _analyze_and_save(self, run: AnalysisRun, analysis: BloodAnalysis, text: str) -> None:
        with self._stage(run, ProcessingStage.ANALYZING, AnalysisError):
            try:
                # keep the confirmed text on the pending row so a retry needs no resubmission
                analysis_store.update_analysis(self.db, analysis, raw_text=text)
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise PersistenceError() from exc
            result = await self.analyzer(text)

        with self._stage(run, ProcessingStage.SAVING, PersistenceError):
            markers = result.biomarkers or parse(text).fields
            try:
                result_store.commit(self.db, analysis.id, self.user_id, markers)
                analysis_store.update_analysis(
                    self.db,
                    analysis,
                    status=ANALYSIS_ANALYZED,
                    results=result.to_payload(),
                    analyzed_at=_utcnow(),
                    raw_text=text,
                )
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise PersistenceError(details={"analysis_id": analysis.id}) from exc
            except Exception:
                self.db.rollback()
                raise

        self._enter(run, ProcessingStage.COMPLETE)
        self._finish(run)
        run.buffer = StagingBuffer()
        # The stored row answers for complete runs from here on
        self.registry.discard(run.analysis_id)


__all__ = [
    "ProcessingStage",
    "advance",
    "progress_for",
    "AnalysisRun",
    "RunRegistry",
    "AnalysisOrchestrator",
]
