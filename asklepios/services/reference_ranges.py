"""Built-in norms and category tables for quick biomarker status chips.

The thresholds are coarse adult ranges, one per marker. They are not a
substitute for the lab's own reference interval: ``unknown`` means a human
has to judge the value, not that something went wrong.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional, Sequence, Tuple

Status = str  # "normal" | "low" | "high" | "unknown"
Category = str

# (keywords, (min, max), unit). Order matters: first substring hit wins.
NormEntry = Tuple[Tuple[str, ...], Tuple[float, float], str]

BIOMARKER_NORMS: Tuple[NormEntry, ...] = (
    (("гемоглобин", "hemoglobin", "haemoglobin"), (110.0, 160.0), "г/л"),
    (("эритроцит", "erythrocyte", "rbc"), (3.5, 5.5), "×10¹²/л"),
    (("лейкоцит", "leukocyte", "wbc"), (4.0, 9.0), "×10⁹/л"),
    (("тромбоцит", "platelet", "plt"), (150.0, 400.0), "×10⁹/л"),
    (("глюкоза", "glucose"), (3.3, 6.1), "ммоль/л"),
    (("холестерин", "cholesterol"), (3.0, 5.2), "ммоль/л"),
    (("креатинин", "creatinine"), (44.0, 115.0), "мкмоль/л"),
    (("гематокрит", "hematocrit", "haematocrit"), (35.0, 50.0), "%"),
)

CategoryGroup = Tuple[Tuple[str, ...], Category]

CATEGORY_GROUPS: Tuple[CategoryGroup, ...] = (
    (
        (
            "гемоглобин", "эритроцит", "гематокрит", "цветовой показатель", "ферритин", "железо",
            "hemoglobin", "haemoglobin", "erythrocyte", "rbc", "hematocrit", "ferritin", "iron",
        ),
        "blood",
    ),
    (
        (
            "лейкоцит", "лимфоцит", "нейтрофил", "моноцит", "эозинофил", "базофил", "соэ",
            "с-реактивный", "срб",
            "leukocyte", "wbc", "lymphocyte", "neutrophil", "monocyte", "eosinophil", "basophil",
            "esr", "c-reactive",
        ),
        "immunity",
    ),
    (
        (
            "тромбоцит", "фибриноген", "протромбин", "мно", "ачтв", "d-димер", "д-димер",
            "platelet", "plt", "fibrinogen", "prothrombin", "inr", "aptt", "d-dimer",
        ),
        "coagulation",
    ),
    (
        (
            "глюкоза", "холестерин", "триглицерид", "липопротеин", "билирубин", "белок", "альбумин",
            "гликированный",
            "glucose", "cholesterol", "triglyceride", "lipoprotein", "ldl", "hdl", "bilirubin",
            "protein", "albumin", "hba1c",
        ),
        "metabolism",
    ),
    (
        (
            "креатинин", "мочевина", "мочевая кислота", "скф",
            "creatinine", "urea", "uric acid", "egfr",
        ),
        "kidney",
    ),
)

_NUM = r"[-+]?\d+(?:[.,]\d+)?"
_RANGE_BETWEEN = re.compile(r"(?P<lo>" + _NUM + r")\s*(?:-|–|—|\.\.)\s*(?P<hi>" + _NUM + r")\s*(?P<unit>.*)$")
_RANGE_UPPER = re.compile(r"(?:<=|≤|<)\s*(?P<v>" + _NUM + r")\s*(?P<unit>.*)$")
_RANGE_LOWER = re.compile(r"(?:>=|≥|>)\s*(?P<v>" + _NUM + r")\s*(?P<unit>.*)$")
_RANGE_PREFIX = re.compile(r"^\s*(?:референс|норма|ref(?:erence)?)\s*[:\-]?\s*", re.IGNORECASE)


def parse_number(value: Any) -> Optional[float]:
    """Parse a report value, accepting a comma as the decimal separator."""
    if value is None:
        return None
    text = str(value).strip().replace(",", ".")
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _normalize_name(name: str) -> str:
    return (name or "").strip().lower()


def find_norm(name: str, norms: Sequence[NormEntry] = BIOMARKER_NORMS) -> Optional[NormEntry]:
    key = _normalize_name(name)
    if not key:
        return None
    for entry in norms:
        keywords = entry[0]
        if any(word in key for word in keywords):
            return entry
    return None


def classify(
    name: str,
    value: Any,
    unit: str = "",
    norms: Sequence[NormEntry] = BIOMARKER_NORMS,
) -> Status:
    """Classify a reading as low/normal/high against the built-in norms table.

    ``unit`` is accepted for the call contract but not used for conversion;
    the table assumes the units printed by Russian labs.
    """
    number = parse_number(value)
    if number is None:
        return "unknown"
    entry = find_norm(name, norms)
    if entry is None:
        return "unknown"
    lo, hi = entry[1]
    if number < lo:
        return "low"
    if number > hi:
        return "high"
    return "normal"


def categorize(name: str, groups: Sequence[CategoryGroup] = CATEGORY_GROUPS) -> Category:
    key = _normalize_name(name)
    if not key:
        return "other"
    for keywords, category in groups:
        if any(word in key for word in keywords):
            return category
    return "other"


def infer_importance(name: str) -> str:
    if find_norm(name) is not None:
        return "high"
    if categorize(name) != "other":
        return "medium"
    return "low"


def parse_reference_range(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Turn reference text such as ``"3,5 - 5,5 ммоль/л"`` or ``"<5.2"`` into
    ``{"min", "max", "unit"}``. Missing bounds are ``None``; unreadable text
    yields ``None``.
    """
    if not text:
        return None
    body = _RANGE_PREFIX.sub("", str(text)).strip().strip("()").strip()
    if not body:
        return None
    match = _RANGE_BETWEEN.search(body)
    if match:
        return {
            "min": parse_number(match.group("lo")),
            "max": parse_number(match.group("hi")),
            "unit": match.group("unit").strip(),
        }
    match = _RANGE_UPPER.search(body)
    if match:
        return {"min": None, "max": parse_number(match.group("v")), "unit": match.group("unit").strip()}
    match = _RANGE_LOWER.search(body)
    if match:
        return {"min": parse_number(match.group("v")), "max": None, "unit": match.group("unit").strip()}
    return None


__all__ = [
    "BIOMARKER_NORMS",
    "CATEGORY_GROUPS",
    "classify",
    "categorize",
    "infer_importance",
    "parse_number",
    "parse_reference_range",
]
