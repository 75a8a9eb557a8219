# asklepios/models/__init__.py
from asklepios.db.session import Base, engine, SessionLocal

# Import model modules so SQLAlchemy registers all mappers.
from . import user  # noqa: F401
from . import blood_analysis  # noqa: F401
from . import biomarker  # noqa: F401


def init_db() -> None:
    """Create tables if they don't exist."""
    Base.metadata.create_all(bind=engine)
