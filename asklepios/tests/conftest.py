import os
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure tests use an in-memory SQLite DB and JSON columns stay generic
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FORCE_GENERIC_JSON", "1")
os.environ.setdefault("ENCRYPTION_SECRET", "test-secret")

from asklepios.app import app
from asklepios.db.session import Base, build_engine, get_db
from asklepios.auth.deps import get_current_user
from asklepios.models.user import User
from asklepios.services import analysis_ai, storage, text_extraction
from asklepios.services.analysis_ai import AnalysisMarker, AnalysisResult


# In-memory SQLite shared across connections
engine = build_engine("sqlite://", poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_USER_ID = "user-1"
SCENARIO_TEXT = "Глюкоза: 7.5 ммоль/л\nХолестерин: 4.0 ммоль/л"


@pytest.fixture(scope="session", autouse=True)
def create_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


def _override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = _override_get_db
app.dependency_overrides[get_current_user] = lambda: SimpleNamespace(id=TEST_USER_ID, email="u@example.com")

import asklepios.db.session as session_mod
session_mod.engine = engine
session_mod.SessionLocal = TestingSessionLocal
import asklepios.models as models_mod
models_mod.engine = engine


@pytest.fixture(autouse=True)
def reset_app_state():
    app.state.limiter.reset()
    app.state.run_registry.clear()
    yield


@pytest.fixture(autouse=True)
def upload_root(tmp_path, monkeypatch):
    root = tmp_path / "uploads"
    monkeypatch.setattr(storage, "UPLOAD_ROOT", root)
    return root


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    item = User(id=TEST_USER_ID, email="u@example.com", hashed_password="x", name="Test")
    db.add(item)
    db.commit()
    return item


@pytest.fixture
def fake_extractor(monkeypatch):
    """Vision provider stand-in; set ``.text`` or ``.error`` to steer it."""
    state = SimpleNamespace(text=SCENARIO_TEXT, error=None, calls=[])

    async def _extract(image_base64, mime_type=None, **_kwargs):
        state.calls.append({"image_base64": image_base64, "mime_type": mime_type})
        if state.error is not None:
            raise state.error
        return state.text

    monkeypatch.setattr(text_extraction, "extract_text", _extract)
    return state


@pytest.fixture
def fake_analyzer(monkeypatch):
    """Analysis provider stand-in returning the two markers of SCENARIO_TEXT."""
    state = SimpleNamespace(
        result=AnalysisResult(
            biomarkers=[
                AnalysisMarker(name="Глюкоза", value="7.5", unit="ммоль/л", status="high",
                               category="metabolism", reference_range="3,3-6,1 ммоль/л",
                               recommendation="Ограничьте быстрые углеводы"),
                AnalysisMarker(name="Холестерин", value="4.0", unit="ммоль/л", status="normal",
                               category="lipids", reference_range="<5.2"),
            ],
            summary="Глюкоза повышена.",
            recommendations=["Повторите анализ глюкозы натощак"],
        ),
        error=None,
        calls=[],
    )

    async def _analyze(text, **_kwargs):
        state.calls.append(text)
        if state.error is not None:
            raise state.error
        return state.result

    monkeypatch.setattr(analysis_ai, "analyze", _analyze)
    return state


@pytest.fixture
def scenario_text():
    return SCENARIO_TEXT


@pytest.fixture
def png_bytes():
    """Build PNG bytes of a given size."""
    import io
    from PIL import Image

    def _make(width=64, height=48, mode="RGB"):
        buf = io.BytesIO()
        Image.new(mode, (width, height), color=(200, 30, 30, 255)[: len(mode)]).save(buf, format="PNG")
        return buf.getvalue()

    return _make
