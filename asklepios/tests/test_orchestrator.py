import asyncio

import httpx
import pytest

from asklepios.models.biomarker import BiomarkerDefinition, BiomarkerResult
from asklepios.models.blood_analysis import BloodAnalysis
from asklepios.services import analysis_ai, analysis_store, text_extraction
from asklepios.services.orchestrator import (
    AnalysisOrchestrator,
    ProcessingStage,
    RunRegistry,
    advance,
    progress_for,
)
from asklepios.utils.exceptions import (
    AnalysisError,
    ConcurrentRunError,
    EmptyStagingError,
    ExtractionError,
    InvalidTransitionError,
    PersistenceError,
    RunNotFoundError,
)

S = ProcessingStage


@pytest.fixture
def registry():
    return RunRegistry()


@pytest.fixture
def orchestrator(db, user, registry, fake_extractor, fake_analyzer):
    return AnalysisOrchestrator(
        db,
        user.id,
        extractor=text_extraction.extract_text,
        analyzer=analysis_ai.analyze,
        registry=registry,
    )


def _run(coro):
    return asyncio.run(coro)


# ---- state machine ----
@pytest.mark.parametrize(
    "current,target",
    [
        (S.IDLE, S.UPLOADING),
        (S.UPLOADING, S.RECOGNIZING),
        (S.UPLOADING, S.ANALYZING),
        (S.RECOGNIZING, S.ANALYZING),
        (S.ANALYZING, S.SAVING),
        (S.SAVING, S.COMPLETE),
        (S.IDLE, S.ANALYZING),
    ],
)
def test_legal_transitions(current, target):
    assert advance(current, target) is target


@pytest.mark.parametrize(
    "current,target",
    [
        (S.IDLE, S.SAVING),
        (S.UPLOADING, S.COMPLETE),
        (S.RECOGNIZING, S.UPLOADING),
        (S.COMPLETE, S.ANALYZING),
        (S.SAVING, S.ANALYZING),
    ],
)
def test_illegal_transitions(current, target):
    with pytest.raises(InvalidTransitionError):
        advance(current, target)


@pytest.mark.parametrize("stage", list(S))
def test_any_stage_can_fall_back_to_idle(stage):
    assert advance(stage, S.IDLE) is S.IDLE


def test_progress_is_derived_from_stage():
    assert progress_for(S.IDLE) == 0
    assert progress_for(S.UPLOADING) == 20
    assert progress_for(S.UPLOADING, done=True) == 50
    assert progress_for(S.RECOGNIZING) == 65
    assert progress_for(S.ANALYZING) == 75
    assert progress_for(S.ANALYZING, done=True) == 80
    assert progress_for(S.SAVING) == 90
    assert progress_for(S.SAVING, done=True) == 95
    assert progress_for(S.COMPLETE, done=True) == 100


# ---- end to end ----
def test_photo_review_confirm_end_to_end(db, orchestrator, fake_extractor, fake_analyzer, png_bytes, upload_root):
    run = _run(orchestrator.start_photo(png_bytes(2000, 1500), "image/png", "report.png"))

    assert run.stage is S.RECOGNIZING
    assert run.progress == 65
    fields = {f.name: f for f in run.buffer.fields}
    assert set(fields) == {"Глюкоза", "Холестерин"}
    assert fields["Глюкоза"].status == "high"
    assert fields["Холестерин"].status == "normal"
    # compressed JPEG went to the provider and to disk
    assert fake_extractor.calls[0]["mime_type"] == "image/jpeg"
    analysis = analysis_store.get_analysis(db, run.analysis_id)
    assert analysis.status == "pending"
    assert analysis.image_url.startswith("uploads/user-1/")
    assert len(list(upload_root.rglob("*.jpg"))) == 1

    run = _run(orchestrator.confirm(run.analysis_id))

    assert run.stage is S.COMPLETE
    assert run.progress == 100
    assert len(run.buffer) == 0
    assert fake_analyzer.calls == ["Глюкоза: 7.5 ммоль/л\nХолестерин: 4.0 ммоль/л"]

    db.expire_all()
    analysis = analysis_store.get_analysis(db, run.analysis_id)
    assert analysis.status == "analyzed"
    assert analysis.analyzed_at is not None
    assert analysis.results["summary"] == "Глюкоза повышена."
    assert analysis.raw_text == "Глюкоза: 7.5 ммоль/л\nХолестерин: 4.0 ммоль/л"
    assert db.query(BiomarkerDefinition).count() == 2
    statuses = {d.name: r.status for r, d in analysis_store.list_results(db, run.analysis_id)}
    assert statuses == {"Глюкоза": "high", "Холестерин": "normal"}


def test_text_analysis_runs_straight_through(db, orchestrator, scenario_text):
    run = _run(orchestrator.start_text(scenario_text))
    assert run.stage is S.COMPLETE
    db.expire_all()
    assert analysis_store.get_analysis(db, run.analysis_id).status == "analyzed"
    assert db.query(BiomarkerResult).count() == 2


def test_confirm_with_edited_fields(db, orchestrator, fake_analyzer):
    run = _run(orchestrator.start_photo(b"not-really-an-image", "image/jpeg"))
    buf = run.buffer
    glucose = next(f for f in buf.fields if f.name == "Глюкоза")
    edited = buf.update(glucose.id, value="5.0").add()

    _run(orchestrator.confirm(run.analysis_id, fields=edited.fields))

    assert fake_analyzer.calls == ["Глюкоза: 5.0 ммоль/л\nХолестерин: 4.0 ммоль/л"]


def test_confirm_with_field_dicts_from_http(orchestrator, fake_analyzer):
    run = _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))
    dicts = run.buffer.to_dicts()
    dicts[0]["value"] = "6.0"
    _run(orchestrator.confirm(run.analysis_id, fields=dicts))
    assert fake_analyzer.calls[0].startswith("Глюкоза: 6.0 ммоль/л")


def test_local_fields_used_when_ai_returns_no_biomarkers(db, orchestrator, fake_analyzer, scenario_text):
    fake_analyzer.result = analysis_ai.AnalysisResult(biomarkers=[], summary="ok", recommendations=["r"])
    run = _run(orchestrator.start_text(scenario_text))
    statuses = {d.name: r.status for r, d in analysis_store.list_results(db, run.analysis_id)}
    assert statuses == {"Глюкоза": "high", "Холестерин": "normal"}


# ---- failures ----
def test_extraction_failure_returns_to_idle(db, orchestrator, fake_extractor):
    fake_extractor.error = ExtractionError()

    with pytest.raises(ExtractionError) as exc_info:
        _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))

    analysis = db.query(BloodAnalysis).one()
    assert exc_info.value.details["analysis_id"] == analysis.id
    assert analysis.status == "pending"
    assert db.query(BiomarkerResult).count() == 0
    run = orchestrator.get_run(analysis.id)
    assert run.stage is S.IDLE
    assert run.progress == 0
    assert run.error["code"] == "EXTRACTION_FAILED"
    assert run.error["recovery"] == "manual_entry"


def test_manual_entry_after_extraction_failure(db, orchestrator, fake_extractor, scenario_text):
    fake_extractor.error = ExtractionError()
    with pytest.raises(ExtractionError):
        _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))
    analysis_id = db.query(BloodAnalysis).one().id

    run = _run(orchestrator.confirm(analysis_id, text=scenario_text))

    assert run.stage is S.COMPLETE
    assert run.error is None
    db.expire_all()
    assert analysis_store.get_analysis(db, analysis_id).status == "analyzed"


def test_analysis_failure_is_retryable(db, orchestrator, fake_analyzer, scenario_text):
    fake_analyzer.error = AnalysisError()
    with pytest.raises(AnalysisError):
        _run(orchestrator.start_text(scenario_text))

    analysis = db.query(BloodAnalysis).one()
    assert analysis.status == "pending"
    assert db.query(BiomarkerResult).count() == 0
    assert orchestrator.get_run(analysis.id).stage is S.IDLE

    fake_analyzer.error = None
    run = _run(orchestrator.confirm(analysis.id))

    assert run.stage is S.COMPLETE
    assert fake_analyzer.calls == [scenario_text, scenario_text]


@pytest.mark.parametrize("error", [RuntimeError("boom"), httpx.InvalidURL("bad base url")])
def test_unexpected_analyzer_error_does_not_strand_the_run(db, orchestrator, fake_analyzer, scenario_text, error):
    fake_analyzer.error = error
    with pytest.raises(AnalysisError) as exc_info:
        _run(orchestrator.start_text(scenario_text))
    assert exc_info.value.__cause__ is error
    assert exc_info.value.details["reason"] == type(error).__name__

    analysis = db.query(BloodAnalysis).one()
    run = orchestrator.get_run(analysis.id)
    assert run.stage is S.IDLE
    assert run.error["code"] == "ANALYSIS_FAILED"

    fake_analyzer.error = None
    run = _run(orchestrator.confirm(analysis.id))

    assert run.stage is S.COMPLETE
    db.expire_all()
    assert analysis_store.get_analysis(db, analysis.id).status == "analyzed"


def test_unexpected_extractor_error_allows_cancel_and_manual_entry(db, orchestrator, fake_extractor, scenario_text):
    fake_extractor.error = KeyError("choices")
    with pytest.raises(ExtractionError):
        _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))

    analysis_id = db.query(BloodAnalysis).one().id
    run = orchestrator.get_run(analysis_id)
    assert run.stage is S.IDLE
    assert run.error["recovery"] == "manual_entry"
    assert orchestrator.cancel(analysis_id).stage is S.IDLE

    run = _run(orchestrator.confirm(analysis_id, text=scenario_text))
    assert run.stage is S.COMPLETE


def test_saving_failure_leaves_analysis_pending(db, orchestrator, monkeypatch, scenario_text):
    from asklepios.services import result_store

    def broken_commit(*_args, **_kwargs):
        raise PersistenceError()

    monkeypatch.setattr(result_store, "commit", broken_commit)
    with pytest.raises(PersistenceError):
        _run(orchestrator.start_text(scenario_text))

    db.expire_all()
    analysis = db.query(BloodAnalysis).one()
    assert analysis.status == "pending"
    run = orchestrator.get_run(analysis.id)
    assert run.stage is S.IDLE
    assert run.error["code"] == "SAVING_FAILED"


def test_confirm_rejects_already_analyzed(orchestrator, scenario_text):
    run = _run(orchestrator.start_text(scenario_text))
    with pytest.raises(InvalidTransitionError):
        _run(orchestrator.confirm(run.analysis_id, text=scenario_text))


def test_confirm_with_blank_fields_keeps_review_open(orchestrator):
    run = _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))
    blank_only = run.buffer.add()
    for staged in run.buffer.fields:
        blank_only = blank_only.remove(staged.id)

    with pytest.raises(EmptyStagingError):
        _run(orchestrator.confirm(run.analysis_id, fields=blank_only.fields))
    assert orchestrator.get_run(run.analysis_id).stage is S.RECOGNIZING


def test_empty_text_is_rejected_before_anything_is_created(db, orchestrator):
    with pytest.raises(EmptyStagingError):
        _run(orchestrator.start_text("   "))
    assert db.query(BloodAnalysis).count() == 0


def test_unknown_analysis(orchestrator):
    with pytest.raises(RunNotFoundError):
        _run(orchestrator.confirm("missing"))
    with pytest.raises(RunNotFoundError):
        orchestrator.get_run("missing")


# ---- cancel and concurrency ----
def test_cancel_discards_staged_fields(db, orchestrator):
    run = _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))
    cancelled = orchestrator.cancel(run.analysis_id)

    assert cancelled.stage is S.IDLE
    assert len(cancelled.buffer) == 0
    assert cancelled.extracted_text is None
    assert analysis_store.get_analysis(db, run.analysis_id).status == "pending"


def test_cancel_after_analysis_is_rejected(orchestrator, scenario_text):
    run = _run(orchestrator.start_text(scenario_text))
    with pytest.raises(InvalidTransitionError):
        orchestrator.cancel(run.analysis_id)


def test_second_concurrent_step_is_rejected(orchestrator, registry):
    run = _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))
    with registry.exclusive(run.analysis_id):
        with pytest.raises(ConcurrentRunError) as exc_info:
            _run(orchestrator.confirm(run.analysis_id))
        with pytest.raises(ConcurrentRunError):
            orchestrator.cancel(run.analysis_id)
    assert exc_info.value.status_code == 409
    assert not registry.is_busy(run.analysis_id)


def test_runs_of_other_users_are_invisible(db, orchestrator, registry, fake_extractor, fake_analyzer):
    run = _run(orchestrator.start_photo(b"jpeg", "image/jpeg"))
    other = AnalysisOrchestrator(db, "user-2", registry=registry,
                                 extractor=text_extraction.extract_text, analyzer=analysis_ai.analyze)
    with pytest.raises(RunNotFoundError):
        other.get_run(run.analysis_id)
    with pytest.raises(RunNotFoundError):
        other.cancel(run.analysis_id)


def test_get_run_after_restart_falls_back_to_row(db, user, fake_extractor, fake_analyzer, scenario_text):
    first = AnalysisOrchestrator(db, user.id, registry=RunRegistry(),
                                 extractor=text_extraction.extract_text, analyzer=analysis_ai.analyze)
    run = _run(first.start_text(scenario_text))

    fresh = AnalysisOrchestrator(db, user.id, registry=RunRegistry())
    restored = fresh.get_run(run.analysis_id)
    assert restored.stage is S.COMPLETE
    assert restored.progress == 100


def test_completed_runs_leave_the_registry(db, orchestrator, registry, scenario_text):
    ids = [_run(orchestrator.start_text(scenario_text)).analysis_id for _ in range(3)]

    assert len(registry) == 0
    for analysis_id in ids:
        assert orchestrator.get_run(analysis_id).stage is S.COMPLETE


def test_failed_run_stays_registered_until_confirmed(db, orchestrator, registry, fake_analyzer, scenario_text):
    fake_analyzer.error = AnalysisError()
    with pytest.raises(AnalysisError):
        _run(orchestrator.start_text(scenario_text))
    assert len(registry) == 1

    fake_analyzer.error = None
    _run(orchestrator.confirm(db.query(BloodAnalysis).one().id))
    assert len(registry) == 0
