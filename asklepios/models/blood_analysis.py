# asklepios/models/blood_analysis.py
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, DateTime, ForeignKey, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from asklepios.db.session import Base
from asklepios.utils.encryption import EncryptedText, EncryptedJSON

ANALYSIS_PENDING = "pending"
ANALYSIS_ANALYZED = "analyzed"
ANALYSIS_FAILED = "failed"
ANALYSIS_STATUSES = (ANALYSIS_PENDING, ANALYSIS_ANALYZED, ANALYSIS_FAILED)


class BloodAnalysis(Base):
    """One ingestion event (photo or typed text) and its AI-derived results."""

    __tablename__ = "blood_analyses"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ANALYSIS_PENDING)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    raw_text: Mapped[Optional[str]] = mapped_column(EncryptedText, nullable=True)
    results: Mapped[Optional[dict]] = mapped_column(EncryptedJSON, nullable=True)

    analysis_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user = relationship("User", back_populates="blood_analyses")
    biomarker_results: Mapped[List["BiomarkerResult"]] = relationship(
        "BiomarkerResult",
        back_populates="analysis",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
