"""
Row validation against an approved dataset schema.

Rows are normalized through the tagged value tree first, so empty cells
count as missing: a row that leaves a required field empty is invalid.
"""

from __future__ import annotations

from typing import Any

from jsonschema import Draft202012Validator

from eventimport.schemas.values import from_python, to_python


def _drop_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_nulls(v) for v in value]
    return value


class RowValidator:
    """Validate raw rows with a JSON schema (draft 2020-12)."""

    def __init__(self, schema: dict[str, Any]):
        self.schema = schema
        self._validator = Draft202012Validator(schema)

    def normalize(self, row: dict[str, Any]) -> dict[str, Any]:
        return _drop_nulls(to_python(from_python(row)))

    def errors(self, row: dict[str, Any]) -> list[str]:
        """Return readable validation errors; empty when the row is valid."""
        messages = []
        for error in sorted(self._validator.iter_errors(self.normalize(row)), key=lambda e: list(e.absolute_path)):
            location = ".".join(str(p) for p in error.absolute_path)
            messages.append(f"{location}: {error.message}" if location else error.message)
        return messages

    def is_valid(self, row: dict[str, Any]) -> bool:
        return not self.errors(row)
