"""Lab report text parsing into staged biomarker fields.

Accepts either OCR output or text typed by the user, one reading per line::

    Гемоглобин: 135 г/л (референс: 120-160)
    Glucose: 5,4 mmol/L

Lines that do not fit this shape are skipped and counted.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from asklepios.services.reference_ranges import categorize, classify

logger = logging.getLogger("asklepios")

LINE_PATTERN = re.compile(
    r"""^
    (?P<name>[^:]+?)\s*:\s*
    (?:[^\d:()]{1,12}?\s*)?
    (?P<value>\d[\d.,]*)
    \s*(?P<unit>[^()]*)
    (?:\((?P<ref>[^)]*)\))?
    .*$
    """,
    re.VERBOSE,
)
REFERENCE_LABEL = re.compile(r"^\s*(?:референс|норма|ref(?:erence)?)\s*:?\s*", re.IGNORECASE)


def new_field_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class BiomarkerField:
    """A parsed, not yet persisted biomarker candidate."""

    id: str
    name: str = ""
    value: str = ""
    unit: str = ""
    status: str = "unknown"
    category: str = "other"
    reference_range: Optional[str] = None
    is_editing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BiomarkerField":
        return cls(
            id=str(data.get("id") or new_field_id()),
            name=str(data.get("name") or ""),
            value=str(data.get("value") or ""),
            unit=str(data.get("unit") or ""),
            status=str(data.get("status") or "unknown"),
            category=str(data.get("category") or "other"),
            reference_range=data.get("reference_range") or None,
            is_editing=bool(data.get("is_editing", False)),
        )


@dataclass
class ParseResult:
    fields: List[BiomarkerField] = field(default_factory=list)
    skipped_lines: int = 0


def clean_value_token(token: str) -> str:
    # "181." and "4,7," are OCR artifacts of the separator column
    return re.sub(r"[.,]+$", "", token.strip())


def _clean_reference(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    cleaned = REFERENCE_LABEL.sub("", ref).strip()
    return cleaned or None


def build_field(
    name: str,
    value: str,
    unit: str = "",
    reference_range: Optional[str] = None,
    field_id: Optional[str] = None,
) -> BiomarkerField:
    """Create a field with status and category computed up front."""
    return BiomarkerField(
        id=field_id or new_field_id(),
        name=name,
        value=value,
        unit=unit,
        status=classify(name, value, unit),
        category=categorize(name),
        reference_range=reference_range,
    )


def parse_line(line: str) -> Optional[BiomarkerField]:
    raw = line.strip()
    if not raw:
        return None
    match = LINE_PATTERN.match(raw)
    if not match:
        return None
    name = match.group("name").strip()
    value = clean_value_token(match.group("value"))
    if not name or not value:
        return None
    unit = (match.group("unit") or "").strip()
    return build_field(name, value, unit, _clean_reference(match.group("ref")))


def parse(text: str) -> ParseResult:
    result = ParseResult()
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        parsed = parse_line(line)
        if parsed is None:
            result.skipped_lines += 1
            continue
        result.fields.append(parsed)

    logger.info({
        "function": "biomarker_parse",
        "parsed_count": len(result.fields),
        "skipped_lines": result.skipped_lines,
    })
    return result


def serialize(fields: Iterable[BiomarkerField]) -> str:
    """Write fields back in the ``name: value unit`` line format read by ``parse``."""
    lines = []
    for item in fields:
        line = f"{item.name.strip()}: {item.value.strip()} {item.unit.strip()}".rstrip()
        lines.append(line)
    return "\n".join(lines)


__all__ = ["BiomarkerField", "ParseResult", "build_field", "parse", "parse_line", "serialize"]
