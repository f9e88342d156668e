"""
Progressive schema builder.

Infers a JSON-Schema structure from rows batch by batch. All knowledge about
earlier batches lives in ``SchemaBuilderState`` (stored on the import job), so
a multi-batch import never re-reads rows it has already seen.

Per field the builder tracks occurrence and null counts, the distribution of
observed value types, string formats, numeric ranges, a capped set of
distinct string values (for enum detection) and a few samples. Nested objects
are followed up to ``max_depth``; array items are tracked under ``field[]``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from eventimport.schemas.dataset import EnumMode, SchemaConfig
from eventimport.schemas.values import (
    ArrayValue,
    JsonValue,
    NullValue,
    NumberValue,
    ObjectValue,
    StringValue,
    from_python,
    to_python,
    value_type,
)

logger = logging.getLogger(__name__)

REQUIRED_RATIO = 0.9
MAX_SAMPLES = 5

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL = re.compile(r"^https?://\S+$", re.IGNORECASE)
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")

_LATITUDE_NAMES = {"lat", "latitude"}
_LONGITUDE_NAMES = {"lng", "lon", "long", "longitude"}
_ADDRESS_NAMES = {"address", "location", "fulladdress", "streetaddress", "venueaddress", "addr", "place", "venue"}
_ID_NAME = re.compile(r"(^id$|[_\-]id$|^externalid$|^uuid$|^guid$|^key$)")
_CAMEL_ID = re.compile(r"[a-z]Id$")

JSON_TYPES = {
    "integer": "integer",
    "number": "number",
    "boolean": "boolean",
    "string": "string",
    "date": "string",
    "boolean-string": "string",
    "array": "array",
    "object": "object",
}


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _leaf_name(path: str) -> str:
    leaf = path.rsplit(".", 1)[-1].replace("[]", "")
    return leaf.lower().replace("_", "").replace("-", "").replace(" ", "")


def _is_id_name(name: str) -> bool:
    return bool(_ID_NAME.search(name.lower()) or _CAMEL_ID.search(name))


# ============================================================================
# STATE MODELS
# ============================================================================


class NumericStats(BaseModel):
    min: float | None = None
    max: float | None = None
    total: float = 0.0
    count: int = 0
    is_integer: bool = True

    @property
    def avg(self) -> float | None:
        return self.total / self.count if self.count else None

    def observe(self, value: NumberValue) -> None:
        v = float(value.value)
        self.min = v if self.min is None else min(self.min, v)
        self.max = v if self.max is None else max(self.max, v)
        self.total += v
        self.count += 1
        self.is_integer = self.is_integer and value.is_integer


class FieldStatistics(BaseModel):
    """Accumulated observations for one field path."""

    path: str
    depth: int = 0
    occurrences: int = 0
    present_count: int = 0
    null_count: int = 0
    type_distribution: dict[str, int] = Field(default_factory=dict)
    formats: dict[str, int] = Field(default_factory=dict)
    string_count: int = 0
    numeric_stats: NumericStats | None = None
    value_counts: dict[str, int] = Field(default_factory=dict)
    distinct_overflow: bool = False
    samples: list[Any] = Field(default_factory=list)
    is_enum_candidate: bool = False
    enum_values: list[str] = Field(default_factory=list)
    first_seen_batch: int = 0
    last_seen_batch: int = 0

    def observed_types(self) -> set[str]:
        """Non-null value types seen so far."""
        return {t for t in self.type_distribution if t != "null"}

    def json_types(self) -> list[str]:
        types = {JSON_TYPES[t] for t in self.observed_types()}
        if {"integer", "number"} <= types:
            types.discard("integer")
        ordered = sorted(types)
        if self.null_count:
            ordered.append("null")
        return ordered


class TypeConflict(BaseModel):
    path: str
    existing_types: list[str]
    new_type: str
    batch: int


class GeoFieldDetection(BaseModel):
    latitude_path: str | None = None
    longitude_path: str | None = None
    address_path: str | None = None
    confidence: float = 0.0

    @property
    def found(self) -> bool:
        return bool(self.address_path or (self.latitude_path and self.longitude_path))


class SchemaBuilderState(BaseModel):
    """Everything the builder needs to continue with the next batch."""

    version: int = 0
    record_count: int = 0
    batch_count: int = 0
    field_stats: dict[str, FieldStatistics] = Field(default_factory=dict)
    detected_id_fields: list[str] = Field(default_factory=list)
    detected_geo_fields: GeoFieldDetection = Field(default_factory=GeoFieldDetection)
    type_conflicts: list[TypeConflict] = Field(default_factory=list)
    last_updated: datetime | None = None


# ============================================================================
# BUILDER
# ============================================================================


class ProgressiveSchemaBuilder:
    """
    Build a JSON schema incrementally across batches.

    Args:
        state: Previously persisted state, or None to start fresh
        config: Dataset schema configuration (depth and enum thresholds)
        max_unique_values: Cap on distinct string values tracked per field
    """

    def __init__(
        self,
        state: SchemaBuilderState | dict[str, Any] | None = None,
        config: SchemaConfig | None = None,
        max_unique_values: int = 100,
    ):
        if isinstance(state, dict):
            state = SchemaBuilderState.model_validate(state)
        self.state = state or SchemaBuilderState()
        self.config = config or SchemaConfig()
        self.max_unique_values = max(max_unique_values, self.config.enum_threshold)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def process_batch(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Fold a batch of raw rows into the state.

        Returns:
            Changes observed in this batch: ``new_field`` and ``type_conflict``
            entries, in observation order.
        """
        self.state.batch_count += 1
        changes: list[dict[str, Any]] = []

        for row in rows:
            record = from_python(row)
            if not isinstance(record, ObjectValue):
                continue
            self.state.record_count += 1
            seen: set[str] = set()
            present: set[str] = set()
            for key, value in record.fields.items():
                self._walk(value, key, 1, seen, present, changes)
            for path in seen:
                self.state.field_stats[path].occurrences += 1
            for path in present:
                self.state.field_stats[path].present_count += 1

        self._update_enums()
        self._detect_id_fields()
        self._detect_geo_fields()

        if changes:
            self.state.version += 1
        self.state.last_updated = _utc_now()
        logger.debug(
            f"Schema batch {self.state.batch_count}: {len(rows)} row(s), "
            f"{len(self.state.field_stats)} field(s), {len(changes)} change(s)"
        )
        return changes

    def _walk(self, value: JsonValue, path: str, depth: int, seen: set[str], present: set[str], changes: list) -> None:
        self._observe(path, depth, value, changes)
        seen.add(path)
        if not isinstance(value, NullValue):
            present.add(path)

        if depth >= self.config.max_schema_depth:
            return
        if isinstance(value, ObjectValue):
            for key, child in value.fields.items():
                self._walk(child, f"{path}.{key}", depth + 1, seen, present, changes)
        elif isinstance(value, ArrayValue):
            for item in value.items:
                self._walk(item, f"{path}[]", depth + 1, seen, present, changes)

    def _observe(self, path: str, depth: int, value: JsonValue, changes: list) -> None:
        stats = self.state.field_stats.get(path)
        if stats is None:
            stats = FieldStatistics(path=path, depth=depth, first_seen_batch=self.state.batch_count)
            self.state.field_stats[path] = stats
            changes.append({"type": "new_field", "path": path})
        stats.last_seen_batch = self.state.batch_count

        kind = value_type(value)
        if kind == "null":
            stats.null_count += 1
            stats.type_distribution["null"] = stats.type_distribution.get("null", 0) + 1
            return

        existing = stats.observed_types()
        if existing and kind not in existing and not self._compatible(existing, kind):
            conflict = TypeConflict(path=path, existing_types=sorted(existing), new_type=kind, batch=self.state.batch_count)
            self.state.type_conflicts.append(conflict)
            changes.append({"type": "type_conflict", "path": path, "existing_types": conflict.existing_types, "new_type": kind})
        stats.type_distribution[kind] = stats.type_distribution.get(kind, 0) + 1

        if isinstance(value, NumberValue):
            if stats.numeric_stats is None:
                stats.numeric_stats = NumericStats()
            stats.numeric_stats.observe(value)
        elif isinstance(value, StringValue):
            self._observe_string(stats, value.value)

        if len(stats.samples) < MAX_SAMPLES and not isinstance(value, (ObjectValue, ArrayValue)):
            sample = to_python(value)
            if sample not in stats.samples:
                stats.samples.append(sample)

    @staticmethod
    def _compatible(existing: set[str], kind: str) -> bool:
        numeric = {"integer", "number"}
        textual = {"string", "date", "boolean-string"}
        return (kind in numeric and existing <= numeric) or (kind in textual and existing <= textual)

    def _observe_string(self, stats: FieldStatistics, text: str) -> None:
        stats.string_count += 1
        fmt = None
        if _EMAIL.match(text):
            fmt = "email"
        elif _URL.match(text):
            fmt = "url"
        elif _DATE.match(text):
            fmt = "date"
        elif _DATETIME.match(text):
            fmt = "date-time"
        elif _NUMERIC.match(text):
            fmt = "numeric"
        if fmt:
            stats.formats[fmt] = stats.formats.get(fmt, 0) + 1

        if stats.distinct_overflow:
            return
        if text in stats.value_counts:
            stats.value_counts[text] += 1
        elif len(stats.value_counts) < self.max_unique_values:
            stats.value_counts[text] = 1
        else:
            stats.distinct_overflow = True
            stats.value_counts = {}

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _update_enums(self) -> None:
        threshold = self.config.enum_threshold
        for stats in self.state.field_stats.values():
            textual_only = stats.observed_types() and stats.observed_types() <= {"string", "boolean-string"}
            distinct = len(stats.value_counts)
            candidate = bool(textual_only) and not stats.distinct_overflow and 0 < distinct < stats.string_count
            if candidate:
                if self.config.enum_mode == EnumMode.PERCENTAGE:
                    candidate = (distinct / stats.string_count) * 100 <= threshold
                else:
                    candidate = distinct <= threshold
            stats.is_enum_candidate = candidate
            stats.enum_values = sorted(stats.value_counts) if candidate else []

    def _detect_id_fields(self) -> None:
        detected = []
        for path, stats in self.state.field_stats.items():
            if stats.depth != 1 or not _is_id_name(path):
                continue
            values_seen = sum(stats.value_counts.values())
            unique = stats.distinct_overflow or values_seen == len(stats.value_counts)
            if stats.numeric_stats is not None:
                unique = True
            if unique and stats.present_count == self.state.record_count:
                detected.append(path)
        self.state.detected_id_fields = sorted(detected)

    def _detect_geo_fields(self) -> None:
        geo = GeoFieldDetection()
        for path, stats in self.state.field_stats.items():
            leaf = _leaf_name(path)
            numeric = stats.numeric_stats
            if leaf in _LATITUDE_NAMES and numeric and -90 <= (numeric.min or 0) and (numeric.max or 0) <= 90:
                geo.latitude_path = geo.latitude_path or path
            elif leaf in _LONGITUDE_NAMES and numeric and -180 <= (numeric.min or 0) and (numeric.max or 0) <= 180:
                geo.longitude_path = geo.longitude_path or path
            elif leaf in _ADDRESS_NAMES and "string" in stats.observed_types():
                geo.address_path = geo.address_path or path

        if geo.latitude_path and geo.longitude_path:
            geo.confidence = 0.9
        elif geo.address_path:
            geo.confidence = 0.7
        self.state.detected_geo_fields = geo

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def get_state(self) -> SchemaBuilderState:
        return self.state

    def _field_schema(self, stats: FieldStatistics) -> dict[str, Any]:
        types = stats.json_types()
        schema: dict[str, Any] = {"type": types[0] if len(types) == 1 else types}

        if stats.is_enum_candidate:
            schema["enum"] = list(stats.enum_values) + ([None] if stats.null_count else [])
        if stats.string_count and stats.formats:
            fmt, count = max(stats.formats.items(), key=lambda kv: kv[1])
            if count == stats.string_count and fmt in ("email", "date", "date-time"):
                schema["format"] = fmt
            elif count == stats.string_count and fmt == "url":
                schema["format"] = "uri"
        if "object" in types:
            schema["properties"] = {}
            schema["required"] = []
        return schema

    def _is_required(self, stats: FieldStatistics, parent_present: int) -> bool:
        if parent_present <= 0:
            return False
        return stats.present_count / parent_present >= REQUIRED_RATIO

    def build_schema(self) -> dict[str, Any]:
        """Return the inferred JSON schema for all observed fields."""
        root: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
        nodes: dict[str, dict[str, Any]] = {}

        for path in sorted(self.state.field_stats, key=lambda p: (len(p), p)):
            stats = self.state.field_stats[path]
            schema = self._field_schema(stats)
            nodes[path] = schema

            if path.endswith("[]"):
                owner = nodes.get(path[:-2])
                if owner is not None:
                    owner["items"] = schema
                continue

            parent_path, _, name = path.rpartition(".")
            if parent_path:
                parent = nodes.get(parent_path)
                if parent is None:
                    continue
                parent.setdefault("properties", {})[name] = schema
                if not parent_path.endswith("[]"):
                    parent_stats = self.state.field_stats[parent_path]
                    if self._is_required(stats, parent_stats.present_count):
                        parent.setdefault("required", []).append(name)
            else:
                root["properties"][name] = schema
                if self._is_required(stats, self.state.record_count):
                    root["required"].append(name)

        for node in [root, *nodes.values()]:
            if "required" in node:
                node["required"] = sorted(node["required"])
        return root

    def field_metadata(self) -> dict[str, Any]:
        """Per-field statistics suitable for a schema version snapshot."""
        metadata: dict[str, Any] = {}
        for path, stats in self.state.field_stats.items():
            entry: dict[str, Any] = {
                "occurrences": stats.occurrences,
                "null_count": stats.null_count,
                "occurrence_percent": round(100 * stats.occurrences / self.state.record_count, 2) if self.state.record_count else 0.0,
                "type_distribution": dict(stats.type_distribution),
                "formats": dict(stats.formats),
                "samples": list(stats.samples),
                "depth": stats.depth,
            }
            if stats.numeric_stats is not None:
                entry["numeric_stats"] = {
                    "min": stats.numeric_stats.min,
                    "max": stats.numeric_stats.max,
                    "avg": stats.numeric_stats.avg,
                    "is_integer": stats.numeric_stats.is_integer,
                }
            if stats.is_enum_candidate:
                entry["enum_values"] = [
                    {"value": v, "count": stats.value_counts[v]} for v in stats.enum_values
                ]
            metadata[path] = entry
        return metadata

    def summary(self) -> dict[str, Any]:
        return {
            "total_fields": len(self.state.field_stats),
            "record_count": self.state.record_count,
            "batch_count": self.state.batch_count,
            "enum_fields": sorted(p for p, s in self.state.field_stats.items() if s.is_enum_candidate),
            "id_fields": list(self.state.detected_id_fields),
            "geo_fields": self.state.detected_geo_fields.model_dump(),
            "type_conflicts": len(self.state.type_conflicts),
        }
