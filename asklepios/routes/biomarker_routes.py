# asklepios/routes/biomarker_routes.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from asklepios.auth.deps import get_current_user
from asklepios.db.session import get_db
from asklepios.models.user import User
from asklepios.schemas.blood_analysis import BiomarkerHistoryOut, BiomarkerOut
from asklepios.services import analysis_store

router = APIRouter(prefix="/api/biomarkers", tags=["biomarkers"])


@router.get("", response_model=List[BiomarkerOut])
def list_biomarkers(
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return analysis_store.list_definitions(db, category=category)


@router.get("/{biomarker_id}", response_model=BiomarkerOut)
def get_biomarker(
    biomarker_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    item = analysis_store.get_definition(db, biomarker_id)
    if not item:
        raise HTTPException(status_code=404, detail="Biomarker not found")
    return item


@router.get("/{biomarker_id}/history", response_model=BiomarkerHistoryOut)
def get_biomarker_history(
    biomarker_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Readings of one biomarker across the current user's analyses, oldest first."""
    definition = analysis_store.get_definition(db, biomarker_id)
    if not definition:
        raise HTTPException(status_code=404, detail="Biomarker not found")
    rows = analysis_store.biomarker_history(db, biomarker_id, str(current_user.id))
    points = [
        {
            "analysis_id": analysis.id,
            "result_id": result.id,
            "value": result.value,
            "unit": result.unit,
            "status": result.status,
            "taken_at": analysis.analysis_date or analysis.created_at,
        }
        for result, analysis in rows
    ]
    return {"biomarker": definition, "points": points}
