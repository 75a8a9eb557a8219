"""Editable staging buffer for parsed biomarkers awaiting user confirmation.

The buffer is an immutable value: every edit returns a new buffer, so the
caller owns the state and nothing is persisted until ``confirm()`` hands the
serialized text to the orchestrator.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Tuple

from asklepios.services.biomarker_parser import (
    BiomarkerField,
    new_field_id,
    parse,
    serialize,
)
from asklepios.services.reference_ranges import categorize, classify
from asklepios.utils.exceptions import EmptyStagingError

EDITABLE_FIELDS = ("name", "value", "unit", "reference_range", "is_editing")
_RECLASSIFY_ON = ("name", "value", "unit")


@dataclass(frozen=True)
class StagingBuffer:
    fields: Tuple[BiomarkerField, ...] = ()

    @classmethod
    def from_text(cls, text: str) -> "StagingBuffer":
        return cls(tuple(parse(text).fields))

    @classmethod
    def from_fields(cls, fields: Iterable[BiomarkerField]) -> "StagingBuffer":
        return cls(tuple(fields))

    @classmethod
    def from_dicts(cls, items: Iterable[Dict[str, Any]]) -> "StagingBuffer":
        return cls(tuple(BiomarkerField.from_dict(item) for item in items))

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.fields]

    def __len__(self) -> int:
        return len(self.fields)

    def get(self, field_id: str) -> BiomarkerField:
        for item in self.fields:
            if item.id == field_id:
                return item
        raise KeyError(field_id)

    def add(self) -> "StagingBuffer":
        blank = BiomarkerField(id=new_field_id(), is_editing=True)
        return StagingBuffer(self.fields + (blank,))

    def update(self, field_id: str, **changes: Any) -> "StagingBuffer":
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        current = self.get(field_id)
        updated = replace(current, **changes)
        if any(key in changes for key in _RECLASSIFY_ON):
            updated = replace(
                updated,
                status=classify(updated.name, updated.value, updated.unit),
                category=categorize(updated.name),
            )
        return StagingBuffer(tuple(updated if item.id == field_id else item for item in self.fields))

    def remove(self, field_id: str) -> "StagingBuffer":
        return StagingBuffer(tuple(item for item in self.fields if item.id != field_id))

    def complete_fields(self) -> List[BiomarkerField]:
        return [item for item in self.fields if item.name.strip() and item.value.strip()]

    def confirm(self) -> str:
        """Serialize every field that has both a name and a value.

        Incomplete fields are dropped silently. Raises ``EmptyStagingError``
        when nothing is left to analyze.
        """
        kept = self.complete_fields()
        if not kept:
            raise EmptyStagingError()
        return serialize(kept)


__all__ = ["StagingBuffer", "BiomarkerField"]
