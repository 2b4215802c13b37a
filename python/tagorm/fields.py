"""Field annotations for tagorm models.

A model field is mapped to a column by attaching a tag, either as the class
attribute value or inside ``typing.Annotated``:

    >>> class User(Model):
    ...     id: Mapped[int] = orm("pk,auto")
    ...     email: Mapped[str] = orm("unique,length:120")
    ...     name: Annotated[str, orm("column:display_name")] = ""

The ``orm`` grammar is a comma-separated list of flags (``pk``, ``auto``,
``unique``, ``index``, ``nullable``, ``soft``, ``created``, ``updated``,
``lazy``) and ``key:value`` pairs (``column``, ``fk``, ``length``,
``default``, ``relation``, ``references``, ``join_table``, ``ondelete``,
``onupdate``). A lone ``-`` skips the field.

Older models may use the one-flag-per-concern ``db(...)`` form instead, and
``relation(...)`` for relationships.
"""

from __future__ import annotations

import types
import typing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped attribute.

    Example:
        >>> class User(Model):
        ...     id: Mapped[int] = orm("pk,auto")
        ...     age: Mapped[int | None] = orm("nullable")
    """

    pass


# Width markers. Python has a single int and float type, so columns that need
# a wider or unsigned SQL type are annotated with one of these subclasses.


class BigInt(int):
    """64-bit integer column (BIGINT)."""


class UnsignedInt(int):
    """Unsigned integer column (INT UNSIGNED)."""


class UnsignedBigInt(int):
    """Unsigned 64-bit integer column (BIGINT UNSIGNED)."""


class Float32(float):
    """Single precision float column (FLOAT)."""


@dataclass(frozen=True)
class OrmTag:
    """An ``orm:"..."`` annotation; see :func:`orm`."""

    text: str


@dataclass(frozen=True)
class LegacyTag:
    """The older one-flag-per-concern annotation; see :func:`db`."""

    name: str | None = None
    primary: bool = False
    autoincrement: bool = False
    unique: bool = False
    index: bool = False
    length: int | None = None
    default: str | None = None
    foreign: str | None = None
    ondelete: str | None = None
    onupdate: str | None = None


@dataclass(frozen=True)
class RelationTag:
    """A relationship declared in the older annotation form; see :func:`relation`."""

    kind: str
    foreign_key: str | None = None
    referenced_key: str | None = None
    join_table: str | None = None
    lazy: bool = False


Tag = OrmTag | LegacyTag | RelationTag


def orm(text: str) -> Any:
    """Declare a mapped column or relation with the compact tag grammar.

    Args:
        text: Comma-separated tokens, for example ``"pk,auto"``,
            ``"column:author_id,fk:users.id,index"`` or
            ``"relation:one_to_many,fk:author_id"``.

    Example:
        >>> class Post(Model):
        ...     id: Mapped[int] = orm("pk,auto")
        ...     author_id: Mapped[int] = orm("fk:users.id,ondelete:CASCADE")
        ...     posts: Mapped[list[Comment]] = orm("relation:one_to_many,fk:post_id")
    """
    return OrmTag(text)


def db(
    name: str | None = None,
    *,
    primary: bool = False,
    autoincrement: bool = False,
    unique: bool = False,
    index: bool = False,
    length: int | None = None,
    default: Any = None,
    foreign: str | None = None,
    ondelete: str | None = None,
    onupdate: str | None = None,
) -> Any:
    """Declare a mapped column with the older annotation form.

    Columns declared this way are nullable unless they are the primary key.

    Example:
        >>> class Account(Model):
        ...     id: Mapped[int] = db("id", primary=True, autoincrement=True)
        ...     owner: Mapped[int] = db("owner_id", foreign="users.id", ondelete="CASCADE")
    """
    return LegacyTag(
        name=name,
        primary=primary,
        autoincrement=autoincrement,
        unique=unique,
        index=index,
        length=length,
        default=None if default is None else str(default),
        foreign=foreign,
        ondelete=ondelete,
        onupdate=onupdate,
    )


def relation(
    kind: str,
    *,
    foreign_key: str | None = None,
    referenced_key: str | None = None,
    join_table: str | None = None,
    lazy: bool = False,
) -> Any:
    """Declare a relationship with the older annotation form.

    Example:
        >>> class User(Model):
        ...     id: Mapped[int] = orm("pk,auto")
        ...     roles: Mapped[list[Role]] = relation(
        ...         "many_to_many", join_table="user_roles", foreign_key="user_id"
        ...     )
    """
    return RelationTag(
        kind=kind,
        foreign_key=foreign_key,
        referenced_key=referenced_key,
        join_table=join_table,
        lazy=lazy,
    )


@dataclass
class ParsedTag:
    """Result of parsing an ``orm(...)`` tag."""

    skip: bool = False
    column: str | None = None
    primary_key: bool = False
    auto_increment: bool = False
    unique: bool = False
    index: bool = False
    nullable: bool = False
    soft_delete: bool = False
    created: bool = False
    updated: bool = False
    lazy: bool = False
    foreign_key: str | None = None
    references: str | None = None
    join_table: str | None = None
    ondelete: str | None = None
    onupdate: str | None = None
    length: int | None = None
    default: str | None = None
    relation: str | None = None


_FLAGS = {
    "pk": "primary_key",
    "primary": "primary_key",
    "auto": "auto_increment",
    "auto_increment": "auto_increment",
    "unique": "unique",
    "index": "index",
    "nullable": "nullable",
    "soft": "soft_delete",
    "created": "created",
    "updated": "updated",
    "lazy": "lazy",
}

_KEYS = {
    "column": "column",
    "fk": "foreign_key",
    "foreign_key": "foreign_key",
    "references": "references",
    "join_table": "join_table",
    "ondelete": "ondelete",
    "onupdate": "onupdate",
    "default": "default",
    "relation": "relation",
}


def parse_tag(text: str) -> ParsedTag:
    """Parse the ``orm`` tag grammar.

    Unknown tokens are ignored, and so is a ``length`` that is not an integer.

    Example:
        >>> tag = parse_tag("column:title,index,length:200")
        >>> tag.column, tag.index, tag.length
        ('title', True, 200)
    """
    tag = ParsedTag()
    if text.strip() == "-":
        tag.skip = True
        return tag

    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if ":" in part:
            key, value = (s.strip() for s in part.split(":", 1))
            if key == "length":
                try:
                    tag.length = int(value)
                except ValueError:
                    pass
            elif key in _KEYS:
                setattr(tag, _KEYS[key], value)
        elif part in _FLAGS:
            setattr(tag, _FLAGS[part], True)
    return tag


def parse_default(value: str, python_type: type | None) -> Any:
    """Coerce a ``default:`` literal to the field's Python type.

    Literals that don't parse are kept as strings.
    """
    if python_type is None or python_type is str:
        return value
    if issubclass(python_type, bool):
        return value.lower() == "true"
    if issubclass(python_type, int):
        try:
            return int(value)
        except ValueError:
            return value
    if issubclass(python_type, float):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def unwrap_annotation(hint: Any) -> tuple[Any, bool, list[Tag]]:
    """Strip ``Annotated``, ``Mapped`` and ``Optional`` from a type hint.

    Returns:
        ``(inner_type, optional, tags)``. The tags are the markers found in
        ``Annotated`` metadata.
    """
    tags: list[Tag] = []
    optional = False

    while True:
        origin = typing.get_origin(hint)
        if origin is typing.Annotated:
            args = typing.get_args(hint)
            tags.extend(a for a in args[1:] if isinstance(a, (OrmTag, LegacyTag, RelationTag)))
            hint = args[0]
        elif origin is Mapped:
            hint = typing.get_args(hint)[0]
        elif origin is Union or origin is types.UnionType:
            args = typing.get_args(hint)
            non_none = [a for a in args if a is not type(None)]
            if len(non_none) != len(args):
                optional = True
            if len(non_none) != 1:
                return hint, optional, tags
            hint = non_none[0]
        else:
            return hint, optional, tags


def sql_type_for(python_type: Any) -> str:
    """Generic SQL type for a Python type; dialects refine it further."""
    if not isinstance(python_type, type):
        return "TEXT"
    # bool is an int subclass; check it first
    if issubclass(python_type, bool):
        return "BOOLEAN"
    if issubclass(python_type, UnsignedBigInt):
        return "BIGINT UNSIGNED"
    if issubclass(python_type, UnsignedInt):
        return "INT UNSIGNED"
    if issubclass(python_type, BigInt):
        return "BIGINT"
    if issubclass(python_type, int):
        return "INT"
    if issubclass(python_type, Float32):
        return "FLOAT"
    if issubclass(python_type, float):
        return "DOUBLE"
    if issubclass(python_type, str):
        return "VARCHAR(255)"
    if issubclass(python_type, (bytes, bytearray)):
        return "BLOB"
    if issubclass(python_type, datetime):
        return "TIMESTAMP"
    return "TEXT"
