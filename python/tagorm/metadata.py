"""Model introspection: turns tagged classes into cached table descriptions."""

from __future__ import annotations

import inspect
import logging
import sys
import threading
import typing
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, ClassVar

from tagorm.errors import SchemaError
from tagorm.fields import (
    LegacyTag,
    Mapped,
    OrmTag,
    RelationTag,
    Tag,
    parse_default,
    parse_tag,
    sql_type_for,
    unwrap_annotation,
)

logger = logging.getLogger(__name__)


class RelationKind(StrEnum):
    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_ONE = "many_to_one"
    MANY_TO_MANY = "many_to_many"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO = "belongs_to"
    BELONGS_TO_MANY = "belongs_to_many"
    MORPH_ONE = "morph_one"
    MORPH_MANY = "morph_many"
    MORPH_TO = "morph_to"
    MORPH_TO_MANY = "morph_to_many"
    MORPHED_BY_MANY = "morphed_by_many"

    @classmethod
    def parse(cls, value: str) -> RelationKind:
        """Parse a relation kind; unknown names fall back to one-to-one."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.ONE_TO_ONE

    @property
    def is_collection(self) -> bool:
        return self in _COLLECTION_KINDS


_COLLECTION_KINDS = frozenset({
    RelationKind.ONE_TO_MANY,
    RelationKind.MANY_TO_MANY,
    RelationKind.HAS_MANY,
    RelationKind.BELONGS_TO_MANY,
    RelationKind.MORPH_MANY,
    RelationKind.MORPH_TO_MANY,
    RelationKind.MORPHED_BY_MANY,
})


@dataclass(frozen=True)
class ForeignKey:
    """Reference from a column to ``table.column``."""

    table: str
    column: str
    ondelete: str | None = None
    onupdate: str | None = None

    @classmethod
    def parse(
        cls, target: str, ondelete: str | None = None, onupdate: str | None = None
    ) -> ForeignKey | None:
        """Parse ``"table.column"``; anything else yields None."""
        parts = target.split(".")
        if len(parts) != 2 or not all(parts):
            return None
        return cls(parts[0], parts[1], ondelete or None, onupdate or None)


@dataclass(frozen=True)
class Column:
    """A mapped column."""

    name: str
    type: str
    attribute: str
    python_type: Any = None
    length: int | None = None
    nullable: bool = True
    primary_key: bool = False
    auto_increment: bool = False
    unique: bool = False
    index: bool = False
    default: Any = None
    foreign_key: ForeignKey | None = None
    soft_delete: bool = False
    created: bool = False
    updated: bool = False


@dataclass(frozen=True)
class Index:
    name: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class Relation:
    """A declared relationship to another model.

    ``target`` is the related class, or its name when the annotation could
    not be resolved at extraction time.
    """

    attribute: str
    kind: RelationKind
    target: type | str | None = None
    foreign_key: str | None = None
    referenced_key: str | None = None
    join_table: str | None = None
    lazy: bool = False

    @property
    def target_name(self) -> str | None:
        if isinstance(self.target, str):
            return self.target
        return self.target.__name__ if self.target is not None else None


@dataclass(frozen=True, eq=False)
class ModelMetadata:
    """Immutable schema description of one model type."""

    model: type
    table_name: str
    columns: tuple[Column, ...]
    primary_key: str | None = None
    auto_increment: str | None = None
    relations: typing.Mapping[str, Relation] = field(default_factory=lambda: MappingProxyType({}))
    indexes: tuple[Index, ...] = ()
    soft_delete_column: str | None = None
    created_at_column: str | None = None
    updated_at_column: str | None = None
    # Column name -> attribute, one lookup table per resolution rule
    _explicit_names: typing.Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    _legacy_names: typing.Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    _lower_attributes: typing.Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def soft_deletes(self) -> bool:
        return self.soft_delete_column is not None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_for_attribute(self, attribute: str) -> Column | None:
        for col in self.columns:
            if col.attribute == attribute:
                return col
        return None

    def primary_key_column(self) -> Column:
        if self.primary_key is None:
            raise SchemaError(f"model {self.model.__name__} has no primary key")
        col = self.column(self.primary_key)
        if col is None:
            raise SchemaError(f"primary key {self.primary_key!r} of {self.model.__name__} is not a column")
        return col

    def attribute_for(self, column_name: str) -> str | None:
        """Resolve the attribute a result column maps onto.

        Precedence: explicit ``column:`` name, then a legacy ``db`` name, then
        a case-insensitive attribute name match.
        """
        if column_name in self._explicit_names:
            return self._explicit_names[column_name]
        if column_name in self._legacy_names:
            return self._legacy_names[column_name]
        return self._lower_attributes.get(column_name.lower())


class MetadataManager:
    """Extracts and caches ModelMetadata, keyed by model type.

    Repeated extraction for the same type returns the identical object.
    The cache lives as long as the manager. Models and ORM facades share
    the process-wide manager from :func:`default_manager` unless a facade
    is given its own.

    Example:
        >>> manager = MetadataManager()
        >>> meta = manager.extract_metadata(User)
        >>> meta is manager.extract_metadata(User())
        True
    """

    def __init__(self) -> None:
        self._cache: dict[type, ModelMetadata] = {}
        self._lock = threading.Lock()

    def extract_metadata(self, model: Any) -> ModelMetadata:
        cls = model_type(model)
        cached = self._cache.get(cls)
        if cached is not None:
            return cached
        with self._lock:
            cached = self._cache.get(cls)
            if cached is None:
                cached = _extract(cls)
                self._cache[cls] = cached
                logger.debug(
                    "Extracted model metadata",
                    extra={"model": cls.__name__, "table": cached.table_name},
                )
            return cached

    get_metadata = extract_metadata

    def cached(self, model: Any) -> bool:
        return model_type(model) in self._cache

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


_default_manager = MetadataManager()


def default_manager() -> MetadataManager:
    """The manager shared by ``Model`` and every ORM built without one."""
    return _default_manager


def model_type(model: Any) -> type:
    """Return the class behind a model class or instance."""
    cls = model if isinstance(model, type) else type(model)
    if cls.__module__ == "builtins" or issubclass(cls, type):
        raise SchemaError(f"model must be a class or an instance of one, got {cls.__name__}")
    return cls


def _extract(cls: type) -> ModelMetadata:
    hints = _type_hints(cls)

    columns: list[Column] = []
    relations: dict[str, Relation] = {}
    explicit: dict[str, str] = {}
    legacy: dict[str, str] = {}
    lower: dict[str, str] = {}

    for attr in _attribute_order(cls):
        hint = hints.get(attr)
        if typing.get_origin(hint) is ClassVar or hint is ClassVar:
            continue
        lower.setdefault(attr.lower(), attr)

        python_type, optional, tags = unwrap_annotation(hint) if hint is not None else (None, False, [])
        class_value = _class_attribute(cls, attr)
        if isinstance(class_value, (OrmTag, LegacyTag, RelationTag)):
            tags.append(class_value)

        orm_tag = _first(tags, OrmTag)
        legacy_tag = _first(tags, LegacyTag)
        relation_tag = _first(tags, RelationTag)

        if legacy_tag is not None and legacy_tag.name and legacy_tag.name != "-":
            legacy.setdefault(legacy_tag.name, attr)

        if orm_tag is not None:
            parsed = parse_tag(orm_tag.text)
            if parsed.skip:
                continue
            if parsed.relation:
                relations[attr] = Relation(
                    attribute=attr,
                    kind=RelationKind.parse(parsed.relation),
                    target=_relation_target(python_type),
                    foreign_key=parsed.foreign_key,
                    referenced_key=parsed.references,
                    join_table=parsed.join_table,
                    lazy=parsed.lazy,
                )
                continue
            name = parsed.column or attr.lower()
            if parsed.column:
                explicit.setdefault(parsed.column, attr)
            col_type = python_type if isinstance(python_type, type) else None
            columns.append(
                Column(
                    name=name,
                    type=sql_type_for(python_type),
                    attribute=attr,
                    python_type=col_type,
                    length=parsed.length if parsed.length and parsed.length > 0 else None,
                    nullable=not parsed.primary_key and (parsed.nullable or optional or parsed.soft_delete),
                    primary_key=parsed.primary_key,
                    auto_increment=parsed.auto_increment,
                    unique=parsed.unique,
                    index=parsed.index,
                    default=parse_default(parsed.default, col_type) if parsed.default else None,
                    foreign_key=ForeignKey.parse(parsed.foreign_key, parsed.ondelete, parsed.onupdate)
                    if parsed.foreign_key
                    else None,
                    soft_delete=parsed.soft_delete,
                    created=parsed.created,
                    updated=parsed.updated,
                )
            )
        elif relation_tag is not None:
            relations[attr] = Relation(
                attribute=attr,
                kind=RelationKind.parse(relation_tag.kind),
                target=_relation_target(python_type),
                foreign_key=relation_tag.foreign_key,
                referenced_key=relation_tag.referenced_key,
                join_table=relation_tag.join_table,
                lazy=relation_tag.lazy,
            )
        elif legacy_tag is not None:
            if legacy_tag.name == "-":
                continue
            col_type = python_type if isinstance(python_type, type) else None
            columns.append(
                Column(
                    name=legacy_tag.name or attr.lower(),
                    type=sql_type_for(python_type),
                    attribute=attr,
                    python_type=col_type,
                    length=legacy_tag.length if legacy_tag.length and legacy_tag.length > 0 else None,
                    nullable=not legacy_tag.primary,
                    primary_key=legacy_tag.primary,
                    auto_increment=legacy_tag.autoincrement,
                    unique=legacy_tag.unique,
                    index=legacy_tag.index,
                    default=parse_default(legacy_tag.default, col_type) if legacy_tag.default else None,
                    foreign_key=ForeignKey.parse(legacy_tag.foreign, legacy_tag.ondelete, legacy_tag.onupdate)
                    if legacy_tag.foreign
                    else None,
                )
            )

    primary_key = next((c.name for c in columns if c.primary_key), None)
    auto_increment = next((c.name for c in columns if c.auto_increment), None)
    indexes = tuple(
        Index(name=f"idx_{c.attribute.lower()}", columns=(c.name,), unique=c.unique)
        for c in columns
        if c.index
    )

    return ModelMetadata(
        model=cls,
        table_name=cls.__dict__.get("__tablename__") or cls.__name__.lower(),
        columns=tuple(columns),
        primary_key=primary_key,
        auto_increment=auto_increment,
        relations=MappingProxyType(relations),
        indexes=indexes,
        soft_delete_column=next((c.name for c in columns if c.soft_delete), None),
        created_at_column=next((c.name for c in columns if c.created), None),
        updated_at_column=next((c.name for c in columns if c.updated), None),
        _explicit_names=MappingProxyType(explicit),
        _legacy_names=MappingProxyType(legacy),
        _lower_attributes=MappingProxyType(lower),
    )


def _attribute_order(cls: type) -> list[str]:
    """Annotated attribute names, the class's own first, then inherited ones."""
    seen: list[str] = []
    for klass in cls.__mro__:
        if klass is object:
            continue
        for name in inspect.get_annotations(klass):
            if not name.startswith("_") and name not in seen:
                seen.append(name)
    return seen


def _type_hints(cls: type) -> dict[str, Any]:
    """Resolve annotations; unresolvable ones are kept as raw strings."""
    try:
        return typing.get_type_hints(cls, include_extras=True)
    except (NameError, TypeError, AttributeError, SyntaxError) as e:
        logger.debug(
            "Resolving annotations one by one",
            extra={"model": cls.__name__, "error": str(e)},
        )

    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        module = sys.modules.get(klass.__module__)
        globalns = dict(vars(module)) if module is not None else {}
        globalns.setdefault("Mapped", Mapped)
        localns = dict(vars(klass))
        for name, raw in inspect.get_annotations(klass).items():
            hints[name] = _resolve_one(klass, name, raw, globalns, localns)
    return hints


def _resolve_one(klass: type, name: str, raw: Any, globalns: dict[str, Any], localns: dict[str, Any]) -> Any:
    """Resolve a single annotation through a holder class carrying only it."""
    if not isinstance(raw, str):
        return raw
    holder = type(f"_{klass.__name__}Hint", (), {"__annotations__": {name: raw}, "__module__": klass.__module__})
    try:
        return typing.get_type_hints(holder, globalns=globalns, localns=localns, include_extras=True)[name]
    except (NameError, TypeError, AttributeError, SyntaxError):
        return raw


def _strip_unresolved(raw: str) -> str:
    """Reduce an unresolvable annotation such as ``Mapped[list[Post]]`` to ``Post``."""
    inner = raw
    for wrapper in ("Mapped[", "list[", "set[", "tuple[", "Optional["):
        if inner.startswith(wrapper) and inner.endswith("]"):
            inner = inner[len(wrapper) : -1]
    inner = inner.split("|")[0].strip().strip("'\"")
    return inner


def _relation_target(python_type: Any) -> type | str | None:
    if python_type is None:
        return None
    origin = typing.get_origin(python_type)
    if origin in (list, set, tuple, frozenset) or (
        origin is not None and getattr(origin, "__name__", "") in ("Sequence", "Iterable")
    ):
        args = [a for a in typing.get_args(python_type) if a is not Ellipsis]
        python_type = args[0] if args else None
        python_type, _, _ = unwrap_annotation(python_type)
    if isinstance(python_type, str):
        return _strip_unresolved(python_type)
    if isinstance(python_type, typing.ForwardRef):
        return python_type.__forward_arg__
    if isinstance(python_type, type):
        return python_type
    return None


def _class_attribute(cls: type, name: str) -> Any:
    for klass in cls.__mro__:
        if name in vars(klass):
            return vars(klass)[name]
    return None


def _first(tags: list[Tag], kind: type) -> Any:
    return next((t for t in tags if isinstance(t, kind)), None)
