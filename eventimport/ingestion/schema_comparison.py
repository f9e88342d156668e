"""
Schema comparison and approval decisions.

Compares the schema detected for an import with the dataset's latest
approved schema version, classifies every difference, and decides whether a
human must approve the change before events are created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from eventimport.errors import SchemaIncompatible
from eventimport.schemas.dataset import SchemaConfig


class ChangeType(str, Enum):
    NEW_FIELD = "new_field"
    REMOVED_FIELD = "removed_field"
    TYPE_CHANGE = "type_change"
    ENUM_CHANGE = "enum_change"
    REQUIRED_CHANGE = "required_change"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class SchemaChange:
    """One difference between the approved and the detected schema."""

    type: ChangeType
    path: str
    severity: Severity
    breaking: bool
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.path,
            "change": self.type.value,
            "severity": self.severity.value,
            **self.details,
        }


@dataclass
class SchemaComparison:
    changes: list[SchemaChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def is_breaking(self) -> bool:
        return any(c.breaking for c in self.changes)

    @property
    def breaking_changes(self) -> list[SchemaChange]:
        return [c for c in self.changes if c.breaking]

    @property
    def new_fields(self) -> list[SchemaChange]:
        return [c for c in self.changes if c.type == ChangeType.NEW_FIELD]

    @property
    def enum_changes(self) -> list[SchemaChange]:
        return [c for c in self.changes if c.type == ChangeType.ENUM_CHANGE]


@dataclass(frozen=True)
class ApprovalDecision:
    requires_approval: bool
    reason: str | None = None


# ============================================================================
# FLATTENING
# ============================================================================


def flatten_schema(schema: dict[str, Any] | None, prefix: str = "") -> dict[str, tuple[dict[str, Any], bool]]:
    """
    Map every field path of a JSON schema to ``(field_schema, required)``.

    Nested object properties use ``parent.child``; array items use ``field[]``.
    """
    flat: dict[str, tuple[dict[str, Any], bool]] = {}
    if not schema:
        return flat

    required = set(schema.get("required", []))
    for name, child in (schema.get("properties") or {}).items():
        path = f"{prefix}.{name}" if prefix else name
        flat[path] = (child, name in required)
        flat.update(flatten_schema(child, path))
        items = child.get("items")
        if isinstance(items, dict):
            flat[f"{path}[]"] = (items, False)
            flat.update(flatten_schema(items, f"{path}[]"))
    return flat


def type_set(field_schema: dict[str, Any]) -> set[str]:
    """Non-null JSON types of a field, with integer folded into number."""
    declared = field_schema.get("type", [])
    types = {declared} if isinstance(declared, str) else set(declared)
    types.discard("null")
    if "integer" in types:
        types.discard("integer")
        types.add("number")
    return types


def _enum_values(field_schema: dict[str, Any]) -> set[Any] | None:
    values = field_schema.get("enum")
    if values is None:
        return None
    return {v for v in values if v is not None}


# ============================================================================
# COMPARISON
# ============================================================================


def compare_schemas(approved: dict[str, Any] | None, detected: dict[str, Any], config: SchemaConfig | None = None) -> SchemaComparison:
    """
    Classify the differences between the approved and detected schemas.

    Breaking: removed fields, type changes, optional fields becoming required,
    new fields when ``auto_grow`` is off, and every change when the dataset
    is ``locked``. Numeric widening and nullability toggles are not type
    changes.
    """
    config = config or SchemaConfig()
    old = flatten_schema(approved)
    new = flatten_schema(detected)
    changes: list[SchemaChange] = []

    for path, (field_schema, required) in new.items():
        if path in old:
            continue
        breaking = not config.auto_grow
        changes.append(
            SchemaChange(
                ChangeType.NEW_FIELD,
                path,
                Severity.ERROR if breaking else Severity.INFO,
                breaking,
                {"type": field_schema.get("type"), "optional": not required},
            )
        )

    for path, (old_schema, old_required) in old.items():
        if path not in new:
            changes.append(
                SchemaChange(ChangeType.REMOVED_FIELD, path, Severity.ERROR, True, {"was_required": old_required})
            )
            continue

        new_schema, new_required = new[path]
        old_types, new_types = type_set(old_schema), type_set(new_schema)
        if old_types and new_types and old_types != new_types:
            changes.append(
                SchemaChange(
                    ChangeType.TYPE_CHANGE,
                    path,
                    Severity.ERROR,
                    True,
                    {"from": sorted(old_types), "to": sorted(new_types)},
                )
            )

        old_enum, new_enum = _enum_values(old_schema), _enum_values(new_schema)
        if old_enum is not None and new_enum is not None and old_enum != new_enum:
            removed = sorted(old_enum - new_enum, key=str)
            added = sorted(new_enum - old_enum, key=str)
            changes.append(
                SchemaChange(
                    ChangeType.ENUM_CHANGE,
                    path,
                    Severity.WARNING if removed else Severity.INFO,
                    False,
                    {"added": added, "removed": removed},
                )
            )

        if new_required and not old_required:
            changes.append(
                SchemaChange(ChangeType.REQUIRED_CHANGE, path, Severity.ERROR, True, {"from": "optional", "to": "required"})
            )
        elif old_required and not new_required:
            changes.append(
                SchemaChange(ChangeType.REQUIRED_CHANGE, path, Severity.INFO, False, {"from": "required", "to": "optional"})
            )

    if config.locked:
        for change in changes:
            change.breaking = True
            change.severity = Severity.ERROR

    return SchemaComparison(changes)


def add_type_conflicts(comparison: SchemaComparison, conflicts: list[dict[str, Any]]) -> SchemaComparison:
    """
    Record type conflicts observed between batches of the same import.

    A field that was numeric in one batch and text in another is a breaking
    type change even when no approved schema exists yet.
    """
    reported = {c.path for c in comparison.changes if c.type == ChangeType.TYPE_CHANGE}
    for conflict in conflicts:
        path = conflict["path"]
        if path in reported:
            continue
        reported.add(path)
        comparison.changes.append(
            SchemaChange(
                ChangeType.TYPE_CHANGE,
                path,
                Severity.ERROR,
                True,
                {"from": list(conflict["existing_types"]), "to": [conflict["new_type"]], "within_import": True},
            )
        )
    return comparison


def evaluate_approval(comparison: SchemaComparison, config: SchemaConfig) -> ApprovalDecision:
    """
    Decide whether a schema delta needs manual approval.

    An empty delta never needs approval. Otherwise approval is required when
    the dataset is locked, when any change is breaking, or when non-breaking
    changes may not be auto-approved.
    """
    if not comparison.has_changes:
        return ApprovalDecision(False)
    if config.locked:
        return ApprovalDecision(True, "Dataset schema is locked; all changes require approval")
    if comparison.is_breaking:
        return ApprovalDecision(True, f"{len(comparison.breaking_changes)} breaking schema change(s) detected")
    if not config.auto_approve_non_breaking:
        return ApprovalDecision(True, "Schema changes require manual approval")
    return ApprovalDecision(False)


def check_compatibility(comparison: SchemaComparison, config: SchemaConfig) -> None:
    """Raise SchemaIncompatible when breaking changes meet a locked or strict dataset."""
    if comparison.is_breaking and (config.locked or config.strict_validation):
        mode = "locked" if config.locked else "strict"
        raise SchemaIncompatible(
            f"{len(comparison.breaking_changes)} breaking change(s) on a {mode} dataset",
            [c.to_dict() for c in comparison.breaking_changes],
        )


def generate_change_summary(comparison: SchemaComparison) -> str:
    """Human-readable summary for reviewers."""
    if not comparison.has_changes:
        return "No schema changes detected."

    lines = []
    breaking = comparison.breaking_changes
    if breaking:
        lines.append(f"Breaking changes ({len(breaking)}):")
        lines.extend(f"  - {_describe(c)}" for c in breaking)

    other = [c for c in comparison.changes if not c.breaking]
    if other:
        lines.append(f"Non-breaking changes ({len(other)}):")
        lines.extend(f"  - {_describe(c)}" for c in other)
    return "\n".join(lines)


def _describe(change: SchemaChange) -> str:
    d = change.details
    if change.type == ChangeType.NEW_FIELD:
        return f"New field '{change.path}' ({d.get('type')}{', optional' if d.get('optional') else ''})"
    if change.type == ChangeType.REMOVED_FIELD:
        return f"Removed field '{change.path}'"
    if change.type == ChangeType.TYPE_CHANGE:
        return f"Type of '{change.path}' changed from {'/'.join(d['from'])} to {'/'.join(d['to'])}"
    if change.type == ChangeType.ENUM_CHANGE:
        parts = []
        if d.get("added"):
            parts.append(f"added {d['added']}")
        if d.get("removed"):
            parts.append(f"removed {d['removed']}")
        return f"Enum values of '{change.path}' changed: {', '.join(parts)}"
    return f"'{change.path}' changed from {d.get('from')} to {d.get('to')}"
