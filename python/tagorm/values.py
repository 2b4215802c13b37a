"""Classification and coercion of driver values onto model attributes."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from tagorm.errors import SchemaError

_TRUE_STRINGS = frozenset({"1", "t", "true", "y", "yes", "on"})


class ValueKind(Enum):
    """The closed set of shapes a column value can take."""

    NULL = "null"
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    BOOLEAN = "boolean"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"
    OPAQUE = "opaque"


def classify(value: Any) -> ValueKind:
    """Map a driver value onto its ValueKind.

    Anything the drivers hand back that isn't a scalar we know (JSON
    documents, arrays, UUIDs) is OPAQUE and passed through untouched.
    """
    match value:
        case None:
            return ValueKind.NULL
        case bool():
            return ValueKind.BOOLEAN
        case int():
            return ValueKind.INTEGER
        case float() | Decimal():
            return ValueKind.FLOAT
        case str():
            return ValueKind.TEXT
        case bytes() | bytearray() | memoryview():
            return ValueKind.BYTES
        case datetime() | date() | time():
            return ValueKind.TIMESTAMP
        case _:
            return ValueKind.OPAQUE


def coerce(value: Any, target: type | None, column: str = "") -> Any:
    """Convert a driver value to the attribute's declared Python type.

    Integer widths collapse to plain ``int``; MySQL's TINYINT(1) booleans
    come back as 0/1 and become ``bool``.

    Raises:
        SchemaError: The value cannot represent the target type.
    """
    if target is None:
        return value

    try:
        match classify(value):
            case ValueKind.NULL:
                return None
            case ValueKind.BOOLEAN:
                if issubclass(target, bool):
                    return value
                if issubclass(target, (int, float)):
                    return int(value)
                if issubclass(target, str):
                    return "true" if value else "false"
                return value
            case ValueKind.INTEGER:
                if issubclass(target, bool):
                    return bool(value)
                if issubclass(target, int):
                    return int(value)
                if issubclass(target, float):
                    return float(value)
                if issubclass(target, str):
                    return str(value)
                if issubclass(target, datetime):
                    return datetime.fromtimestamp(value, UTC)
                return value
            case ValueKind.FLOAT:
                if issubclass(target, bool):
                    return bool(value)
                if issubclass(target, int):
                    return int(value)
                if issubclass(target, float):
                    return float(value)
                if issubclass(target, Decimal):
                    return Decimal(value)
                if issubclass(target, str):
                    return str(value)
                return value
            case ValueKind.TEXT:
                if issubclass(target, str):
                    return value
                if issubclass(target, bool):
                    return value.strip().lower() in _TRUE_STRINGS
                if issubclass(target, int):
                    return int(value)
                if issubclass(target, float):
                    return float(value)
                if issubclass(target, (bytes, bytearray)):
                    return value.encode("utf-8")
                if issubclass(target, datetime):
                    return datetime.fromisoformat(value)
                if issubclass(target, date):
                    return date.fromisoformat(value)
                return value
            case ValueKind.BYTES:
                if issubclass(target, str):
                    return bytes(value).decode("utf-8")
                if issubclass(target, (bytes, bytearray)):
                    return bytes(value)
                return value
            case ValueKind.TIMESTAMP:
                if issubclass(target, datetime) and not isinstance(value, datetime):
                    if isinstance(value, date):
                        return datetime.combine(value, time())
                    return value
                if issubclass(target, str):
                    return value.isoformat()
                return value
            case ValueKind.OPAQUE:
                return value
    except (ValueError, TypeError, UnicodeDecodeError) as e:
        raise SchemaError(
            f"cannot convert {value!r} to {target.__name__} for column {column!r}"
        ) from e
