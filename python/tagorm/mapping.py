"""Moving values between model instances and result rows."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from tagorm.errors import SchemaError
from tagorm.fields import LegacyTag, OrmTag, RelationTag
from tagorm.metadata import ModelMetadata
from tagorm.values import coerce

_MISSING = object()


def read_attribute(entity: Any, attribute: str, default: Any = None) -> Any:
    """Read an attribute, treating an unset tagged class attribute as ``default``."""
    value = getattr(entity, attribute, _MISSING)
    if value is _MISSING or isinstance(value, (OrmTag, LegacyTag, RelationTag)):
        return default
    return value


def primary_key_value(metadata: ModelMetadata, entity: Any) -> Any:
    column = metadata.primary_key_column()
    value = getattr(entity, column.attribute, _MISSING)
    if value is _MISSING:
        raise SchemaError(
            f"entity {type(entity).__name__} is missing primary key field {column.attribute!r}"
        )
    if isinstance(value, (OrmTag, LegacyTag, RelationTag)):
        return None
    return value


def is_zero(value: Any) -> bool:
    """Whether a primary key value means "not yet inserted"."""
    if value is None:
        return True
    if isinstance(value, bool):
        return value is False
    if isinstance(value, (int, float, str, bytes)):
        return not value
    return False


def hydrate(metadata: ModelMetadata, row: Mapping[str, Any]) -> Any:
    """Build a model instance from a result row without calling ``__init__``.

    Mapped attributes missing from the row are set to None; relation
    attributes start empty until eager loading fills them.
    """
    instance = object.__new__(metadata.model)
    for column in metadata.columns:
        object.__setattr__(instance, column.attribute, None)
    for rel in metadata.relations.values():
        object.__setattr__(instance, rel.attribute, [] if rel.kind.is_collection else None)

    for key, value in row.items():
        attribute = metadata.attribute_for(key)
        if attribute is None:
            continue
        column = metadata.column_for_attribute(attribute)
        target = column.python_type if column is not None else None
        object.__setattr__(instance, attribute, coerce(value, target, key))
    return instance


def set_attribute(metadata: ModelMetadata, entity: Any, column_name: str, value: Any) -> None:
    """Write a database value (e.g. a generated key) back onto the entity."""
    column = metadata.column(column_name)
    if column is None:
        raise SchemaError(f"unknown column {column_name!r} on {metadata.table_name}")
    setattr(entity, column.attribute, coerce(value, column.python_type, column_name))
