"""Optional convenience base class for tagged models."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, ClassVar

from tagorm.mapping import read_attribute
from tagorm.metadata import ModelMetadata, default_manager


def _metadata(cls: type) -> ModelMetadata:
    return default_manager().extract_metadata(cls)


class Model:
    """Base class for models; gives keyword construction and ``to_dict``.

    Subclassing is optional: any class with tagged attributes (including
    dataclasses) can be registered with the ORM.

    Example:
        >>> class User(Model):
        ...     __tablename__ = "users"
        ...     id: Mapped[int] = orm("pk,auto")
        ...     name: Mapped[str] = orm("length:100")
        ...     age: Mapped[int] = orm("default:18")
        >>> User(name="Alice")
        <User id=None>
        >>> User(name="Alice").age
        18
    """

    __tablename__: ClassVar[str]
    __scopes__: ClassVar[dict[str, Callable[..., Any]]] = {}

    def __init__(self, **kwargs: Any) -> None:
        metadata = _metadata(type(self))
        known = {c.attribute for c in metadata.columns} | set(metadata.relations)
        for key in kwargs:
            if key not in known:
                raise TypeError(f"Unknown field for {type(self).__name__}: {key}")

        for column in metadata.columns:
            if column.attribute in kwargs:
                value = kwargs[column.attribute]
            elif column.python_type is not None and isinstance(column.default, column.python_type):
                value = column.default
            else:
                # Database-side defaults such as CURRENT_TIMESTAMP stay unset
                value = None
            setattr(self, column.attribute, value)

        for relation in metadata.relations.values():
            empty: Any = [] if relation.kind.is_collection else None
            setattr(self, relation.attribute, kwargs.get(relation.attribute, empty))

    def __repr__(self) -> str:
        metadata = _metadata(type(self))
        column = next((c for c in metadata.columns if c.primary_key), None)
        if column is None:
            return f"<{type(self).__name__}>"
        return f"<{type(self).__name__} {column.attribute}={read_attribute(self, column.attribute)!r}>"

    def to_dict(self, include_relations: bool = False) -> dict[str, Any]:
        """Mapped attributes keyed by attribute name."""
        metadata = _metadata(type(self))
        result = {c.attribute: read_attribute(self, c.attribute) for c in metadata.columns}
        if include_relations:
            for name in metadata.relations:
                value = read_attribute(self, name)
                if isinstance(value, list):
                    result[name] = [_as_dict(v) for v in value]
                else:
                    result[name] = _as_dict(value) if value is not None else None
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Model:
        """Build an instance, ignoring keys that are not mapped attributes."""
        metadata = _metadata(cls)
        known = {c.attribute for c in metadata.columns} | set(metadata.relations)
        return cls(**{k: v for k, v in data.items() if k in known})


def _as_dict(value: Any) -> Any:
    return value.to_dict() if isinstance(value, Model) else value
