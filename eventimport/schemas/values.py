"""
Tagged value tree for row and schema data.

Rows arrive as loosely typed dictionaries (CSV cells, spreadsheet values,
JSON feeds). Converting them once into a closed set of value classes lets
schema inference and key generation dispatch on the value kind instead of
probing Python types all over the pipeline.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Union

# ============================================================================
# VALUE CLASSES
# ============================================================================


@dataclass(frozen=True)
class NullValue:
    """Absent or empty value."""


@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class NumberValue:
    value: int | float

    @property
    def is_integer(self) -> bool:
        return isinstance(self.value, int) or float(self.value).is_integer()


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class ArrayValue:
    items: tuple = ()


@dataclass(frozen=True)
class ObjectValue:
    fields: dict = field(default_factory=dict)

    def get(self, key: str) -> "JsonValue | None":
        return self.fields.get(key)


JsonValue = Union[NullValue, BoolValue, NumberValue, StringValue, ArrayValue, ObjectValue]

NULL = NullValue()


# ============================================================================
# CONVERSION
# ============================================================================


def from_python(obj: Any) -> JsonValue:
    """
    Convert a Python value into the tagged tree.

    NaN floats (pandas empty cells) and blank strings map to ``NullValue``.
    Dates become ISO strings, Decimals become numbers, unknown objects are
    stringified.
    """
    if obj is None:
        return NULL
    if isinstance(obj, bool):
        return BoolValue(obj)
    if isinstance(obj, int):
        return NumberValue(obj)
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return NULL
        return NumberValue(obj)
    if isinstance(obj, Decimal):
        return NumberValue(int(obj) if obj == obj.to_integral_value() else float(obj))
    if isinstance(obj, str):
        if not obj.strip():
            return NULL
        return StringValue(obj)
    if isinstance(obj, (datetime, date, time)):
        return StringValue(obj.isoformat())
    if isinstance(obj, dict):
        return ObjectValue({str(k): from_python(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return ArrayValue(tuple(from_python(v) for v in obj))
    # numpy scalars and similar expose .item()
    if hasattr(obj, "item"):
        return from_python(obj.item())
    return StringValue(str(obj))


def to_python(value: JsonValue) -> Any:
    """Convert a tagged value back into plain JSON-compatible Python."""
    if isinstance(value, NullValue):
        return None
    if isinstance(value, (BoolValue, NumberValue, StringValue)):
        return value.value
    if isinstance(value, ArrayValue):
        return [to_python(v) for v in value.items]
    if isinstance(value, ObjectValue):
        return {k: to_python(v) for k, v in value.fields.items()}
    raise TypeError(f"Not a tagged value: {value!r}")


def canonical_json(value: JsonValue) -> str:
    """Stable JSON text with sorted keys, used for hashing and equality."""
    return json.dumps(to_python(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def get_path(value: JsonValue, path: str) -> JsonValue | None:
    """
    Resolve a dotted path (``venue.address.city``) inside an object value.

    Returns None when any segment is missing. A present-but-null leaf returns
    ``NullValue`` so callers can distinguish missing from empty.
    """
    current: JsonValue | None = value
    for segment in path.split("."):
        if not isinstance(current, ObjectValue):
            return None
        current = current.get(segment)
        if current is None:
            return None
    return current


def is_missing(value: JsonValue | None) -> bool:
    return value is None or isinstance(value, NullValue)


# ============================================================================
# TYPE CLASSIFICATION
# ============================================================================

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$")
_SLASH_DATE = re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}$")
_BOOLEAN_STRINGS = {"true", "false", "yes", "no"}


def looks_like_date(text: str) -> bool:
    text = text.strip()
    return bool(_ISO_DATE.match(text) or _ISO_DATETIME.match(text) or _SLASH_DATE.match(text))


def value_type(value: JsonValue) -> str:
    """
    Classify a value for schema inference.

    Returns one of ``null``, ``boolean``, ``integer``, ``number``, ``date``,
    ``boolean-string``, ``string``, ``array``, ``object``.
    """
    if isinstance(value, NullValue):
        return "null"
    if isinstance(value, BoolValue):
        return "boolean"
    if isinstance(value, NumberValue):
        return "integer" if value.is_integer else "number"
    if isinstance(value, StringValue):
        if looks_like_date(value.value):
            return "date"
        if value.value.strip().lower() in _BOOLEAN_STRINGS:
            return "boolean-string"
        return "string"
    if isinstance(value, ArrayValue):
        return "array"
    if isinstance(value, ObjectValue):
        return "object"
    raise TypeError(f"Not a tagged value: {value!r}")
