# asklepios/models/biomarker.py
import os
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, Text, DateTime, ForeignKey, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON as SA_JSON

from asklepios.db.session import Base, engine

# JSON column type: Postgres gets JSONB, others get generic JSON
try:
    from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
except ImportError:
    PG_JSONB = None


def json_col_type():
    # Tests and SQLite force generic JSON
    if os.getenv("FORCE_GENERIC_JSON", "").lower() in ("1", "true", "yes"):
        return SA_JSON
    if engine.dialect.name == "postgresql" and PG_JSONB is not None:
        return PG_JSONB
    return SA_JSON


RESULT_STATUSES = ("normal", "low", "high", "critical", "unknown")
CATEGORIES = (
    "blood",
    "immunity",
    "coagulation",
    "metabolism",
    "lipids",
    "cardiovascular",
    "kidney",
    "liver",
    "hormonal",
    "other",
)
IMPORTANCE_LEVELS = ("high", "medium", "low")
NAME_MAX_LENGTH = 255


class BiomarkerDefinition(Base):
    """Canonical, deduplicated description of a named lab measurement.

    ``name_key`` is the case-folded name used for matching. It is indexed but
    deliberately not unique: two first sightings racing each other may both
    insert a definition.
    """

    __tablename__ = "biomarkers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    name_key: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    importance: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    normal_range: Mapped[Optional[dict]] = mapped_column(json_col_type(), nullable=True)
    recommendations: Mapped[Optional[list]] = mapped_column(json_col_type(), nullable=True)

    results: Mapped[List["BiomarkerResult"]] = relationship(
        "BiomarkerResult", back_populates="biomarker"
    )


class BiomarkerResult(Base):
    """One observed value of a biomarker inside one blood analysis."""

    __tablename__ = "biomarker_results"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    analysis_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("blood_analyses.id", ondelete="CASCADE"), index=True, nullable=False
    )
    biomarker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("biomarkers.id"), index=True, nullable=False
    )

    # Kept as text to preserve the report's own formatting ("7,5", "150.0")
    value: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    education: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    analysis = relationship("BloodAnalysis", back_populates="biomarker_results")
    biomarker = relationship("BiomarkerDefinition", back_populates="results")
