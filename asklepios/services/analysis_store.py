"""Persistence boundary for blood analyses, biomarker definitions and results.

Writes here only ``flush``; committing is the caller's job so that a result
set and its analysis update land in one transaction. ``create_analysis`` is
the exception: the pending row must exist before any provider is called.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from asklepios.models.biomarker import BiomarkerDefinition, BiomarkerResult
from asklepios.models.blood_analysis import ANALYSIS_PENDING, BloodAnalysis


def name_key(name: str) -> str:
    """Case-folded, whitespace-collapsed matching key.

    Done in Python because SQLite's ``lower()`` only folds ASCII.
    """
    return " ".join((name or "").split()).casefold()


def create_analysis(
    db: Session,
    user_id: str,
    source: str,
    analysis_date: Optional[datetime] = None,
    image_url: Optional[str] = None,
) -> BloodAnalysis:
    item = BloodAnalysis(
        user_id=user_id,
        status=ANALYSIS_PENDING,
        source=source,
        analysis_date=analysis_date,
        image_url=image_url,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def get_analysis(db: Session, analysis_id: str, user_id: Optional[str] = None) -> Optional[BloodAnalysis]:
    query = db.query(BloodAnalysis).filter(BloodAnalysis.id == analysis_id)
    if user_id is not None:
        query = query.filter(BloodAnalysis.user_id == user_id)
    return query.first()


def update_analysis(db: Session, analysis: BloodAnalysis, **changes: Any) -> BloodAnalysis:
    for key, value in changes.items():
        if not hasattr(BloodAnalysis, key):
            raise AttributeError(f"BloodAnalysis has no column {key!r}")
        setattr(analysis, key, value)
    db.flush()
    return analysis


def list_analyses(db: Session, user_id: str, limit: Optional[int] = None) -> List[BloodAnalysis]:
    query = (
        db.query(BloodAnalysis)
        .filter(BloodAnalysis.user_id == user_id)
        .order_by(BloodAnalysis.created_at.desc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def list_definitions(db: Session, category: Optional[str] = None) -> List[BiomarkerDefinition]:
    query = db.query(BiomarkerDefinition)
    if category:
        query = query.filter(BiomarkerDefinition.category == category)
    return query.order_by(BiomarkerDefinition.name).all()


def get_definition(db: Session, biomarker_id: str) -> Optional[BiomarkerDefinition]:
    return db.query(BiomarkerDefinition).filter(BiomarkerDefinition.id == biomarker_id).first()


def find_definition(db: Session, name: str) -> Optional[BiomarkerDefinition]:
    """First definition whose key matches ``name`` after case-folding."""
    return (
        db.query(BiomarkerDefinition)
        .filter(BiomarkerDefinition.name_key == name_key(name))
        .order_by(BiomarkerDefinition.id)
        .first()
    )


def create_definition(
    db: Session,
    name: str,
    category: str,
    importance: str,
    normal_range: Optional[Dict[str, Any]] = None,
    description: str = "",
    recommendations: Optional[List[str]] = None,
) -> BiomarkerDefinition:
    item = BiomarkerDefinition(
        name=" ".join(name.split()),
        name_key=name_key(name),
        description=description,
        category=category,
        importance=importance,
        normal_range=normal_range,
        recommendations=recommendations or [],
    )
    db.add(item)
    db.flush()
    return item


def create_result(
    db: Session,
    analysis_id: str,
    biomarker_id: str,
    value: str,
    unit: str = "",
    status: str = "unknown",
    recommendation: Optional[str] = None,
    education: Optional[str] = None,
) -> BiomarkerResult:
    item = BiomarkerResult(
        analysis_id=analysis_id,
        biomarker_id=biomarker_id,
        value=value,
        unit=unit,
        status=status,
        recommendation=recommendation,
        education=education,
    )
    db.add(item)
    db.flush()
    return item


def list_results(db: Session, analysis_id: str) -> List[Tuple[BiomarkerResult, BiomarkerDefinition]]:
    return (
        db.query(BiomarkerResult, BiomarkerDefinition)
        .join(BiomarkerDefinition, BiomarkerResult.biomarker_id == BiomarkerDefinition.id)
        .filter(BiomarkerResult.analysis_id == analysis_id)
        .order_by(BiomarkerResult.created_at, BiomarkerResult.id)
        .all()
    )


def biomarker_history(
    db: Session, biomarker_id: str, user_id: str
) -> List[Tuple[BiomarkerResult, BloodAnalysis]]:
    """Every reading of one biomarker across a user's analyses, oldest first."""
    taken_at = func.coalesce(BloodAnalysis.analysis_date, BloodAnalysis.created_at)
    return (
        db.query(BiomarkerResult, BloodAnalysis)
        .join(BloodAnalysis, BiomarkerResult.analysis_id == BloodAnalysis.id)
        .filter(
            BiomarkerResult.biomarker_id == biomarker_id,
            BloodAnalysis.user_id == user_id,
        )
        .order_by(taken_at.asc(), BiomarkerResult.created_at.asc())
        .all()
    )


__all__ = [
    "name_key",
    "create_analysis",
    "get_analysis",
    "update_analysis",
    "list_analyses",
    "list_definitions",
    "get_definition",
    "find_definition",
    "create_definition",
    "create_result",
    "list_results",
    "biomarker_history",
]
