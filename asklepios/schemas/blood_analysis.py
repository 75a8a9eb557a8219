# asklepios/schemas/blood_analysis.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, constr


# ---------- Auth ----------
class RegisterIn(BaseModel):
    email: EmailStr
    password: constr(min_length=6, max_length=128)
    name: Optional[str] = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class RefreshIn(BaseModel):
    refresh_token: str


class TokenOut(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


# ---------- Review stage ----------
class BiomarkerFieldIn(BaseModel):
    id: Optional[str] = None
    name: str = ""
    value: str = ""
    unit: str = ""
    status: Optional[str] = None
    category: Optional[str] = None
    reference_range: Optional[str] = None
    is_editing: bool = False


class BiomarkerFieldOut(BaseModel):
    id: str
    name: str
    value: str
    unit: str
    status: str = Field(..., description="normal|low|high|unknown")
    category: str
    reference_range: Optional[str] = None
    is_editing: bool = False


class ReviewParseIn(BaseModel):
    text: str = Field(..., max_length=20000)


class FieldChanges(BaseModel):
    name: Optional[str] = None
    value: Optional[str] = None
    unit: Optional[str] = None
    reference_range: Optional[str] = None
    is_editing: Optional[bool] = None


class ReviewEditIn(BaseModel):
    fields: List[BiomarkerFieldIn] = Field(default_factory=list)
    action: Literal["add", "update", "remove"]
    field_id: Optional[str] = None
    changes: Optional[FieldChanges] = None


class StagingOut(BaseModel):
    fields: List[BiomarkerFieldOut]
    skipped_lines: int = 0


# ---------- Orchestration ----------
class TextAnalysisIn(BaseModel):
    text: str = Field(..., max_length=20000)
    analysis_date: Optional[datetime] = None


class ConfirmIn(BaseModel):
    """Either a reviewed field list or plain text. Empty body retries with what is already staged."""

    fields: Optional[List[BiomarkerFieldIn]] = None
    text: Optional[str] = Field(default=None, max_length=20000)


class RunError(BaseModel):
    code: str
    message: str
    recovery: Optional[str] = None


class RunOut(BaseModel):
    analysis_id: str
    source: str
    stage: str
    progress: int = Field(..., ge=0, le=100)
    done: bool
    error: Optional[RunError] = None
    fields: List[BiomarkerFieldOut] = Field(default_factory=list)
    extracted_text: Optional[str] = None
    skipped_lines: int = 0
    updated_at: datetime


# ---------- Stored analyses ----------
class BloodAnalysisOut(BaseModel):
    id: str
    user_id: str
    status: str
    source: str
    image_url: Optional[str] = None
    raw_text: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    analysis_date: Optional[datetime] = None
    analyzed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NormalRange(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Optional[str] = None


class BiomarkerOut(BaseModel):
    id: str
    name: str
    description: str = ""
    category: str
    importance: str
    normal_range: Optional[NormalRange] = None
    recommendations: Optional[List[str]] = None

    class Config:
        from_attributes = True


class BiomarkerResultOut(BaseModel):
    id: str
    analysis_id: str
    biomarker_id: str
    value: str
    unit: str
    status: str
    recommendation: Optional[str] = None
    education: Optional[str] = None
    created_at: datetime
    biomarker: Optional[BiomarkerOut] = None

    class Config:
        from_attributes = True


class HistoryPoint(BaseModel):
    analysis_id: str
    result_id: str
    value: str
    unit: str
    status: str
    taken_at: datetime


class BiomarkerHistoryOut(BaseModel):
    biomarker: BiomarkerOut
    points: List[HistoryPoint]
