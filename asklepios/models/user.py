import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, DateTime, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from asklepios.db.session import Base


class User(Base):
    """Account owning blood analyses. Sessions and profiles live elsewhere."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )

    blood_analyses: Mapped[List["BloodAnalysis"]] = relationship(
        "BloodAnalysis",
        back_populates="user",
        cascade="all, delete-orphan"
    )
