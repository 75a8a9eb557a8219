"""Turn confirmed biomarkers into BiomarkerResult rows.

Definitions are created on first sighting of a name and reused on a
case-insensitive match afterwards. A commit is all-or-nothing: either every
field of the analysis gets a result row, or the transaction is rolled back
and ``PersistenceError`` is raised.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from asklepios.models.biomarker import (
    CATEGORIES,
    NAME_MAX_LENGTH,
    RESULT_STATUSES,
    BiomarkerDefinition,
    BiomarkerResult,
)
from asklepios.services import analysis_store
from asklepios.services.reference_ranges import categorize, classify, infer_importance, parse_reference_range
from asklepios.utils.exceptions import PersistenceError, RunNotFoundError

logger = logging.getLogger("asklepios")


def _attr(item: Any, name: str, default: Any = None) -> Any:
    # Accepts review-stage fields and AI markers alike
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def _create_definition(db: Session, item: Any, name: str) -> BiomarkerDefinition:
    category = _attr(item, "category")
    if category not in CATEGORIES or category == "other":
        category = categorize(name)
    return analysis_store.create_definition(
        db,
        name=name,
        category=category,
        importance=infer_importance(name),
        normal_range=parse_reference_range(_attr(item, "reference_range")),
    )


def _status_for(item: Any) -> str:
    status = _attr(item, "status")
    if status in RESULT_STATUSES and status != "unknown":
        return status
    return classify(_attr(item, "name", ""), _attr(item, "value", ""), _attr(item, "unit", ""))


def commit(
    db: Session,
    analysis_id: str,
    user_id: str,
    fields: Sequence[Any],
) -> List[BiomarkerResult]:
    """Flush one result per field into the caller's open transaction.

    Nothing is committed here; on any database error the session is rolled
    back before ``PersistenceError`` propagates.
    """
    analysis = analysis_store.get_analysis(db, analysis_id, user_id=user_id)
    if analysis is None:
        raise RunNotFoundError(details={"analysis_id": analysis_id})

    created: List[BiomarkerResult] = []
    new_definitions = 0
    try:
        for item in fields:
            # name is width-limited; value and unit are Text
            name = str(_attr(item, "name", "")).strip()[:NAME_MAX_LENGTH].rstrip()
            value = str(_attr(item, "value", "")).strip()
            if not name or not value:
                continue
            definition = analysis_store.find_definition(db, name)
            if definition is None:
                definition = _create_definition(db, item, name)
                new_definitions += 1
            created.append(
                analysis_store.create_result(
                    db,
                    analysis_id=analysis.id,
                    biomarker_id=definition.id,
                    value=value,
                    unit=str(_attr(item, "unit", "") or "").strip(),
                    status=_status_for(item),
                    recommendation=_optional_text(_attr(item, "recommendation")),
                    education=_optional_text(_attr(item, "education")),
                )
            )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error({"function": "commit_results", "analysis_id": analysis_id, "error": str(exc)})
        raise PersistenceError(details={"analysis_id": analysis_id}) from exc

    logger.info({
        "function": "commit_results",
        "analysis_id": analysis_id,
        "results": len(created),
        "new_definitions": new_definitions,
    })
    return created


def _optional_text(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = ["commit"]
