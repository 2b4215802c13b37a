"""Fluent SELECT builder that compiles to SQL text plus ordered arguments."""

from __future__ import annotations

import copy
import functools
import logging
import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tagorm.errors import ConfigurationError, QueryError, UnsupportedOperationError
from tagorm.mapping import hydrate, read_attribute
from tagorm.metadata import ModelMetadata, Relation, RelationKind

if TYPE_CHECKING:
    from tagorm.dialects.base import Dialect, Executor, Row
    from tagorm.session import ORM

logger = logging.getLogger(__name__)

_OPERATORS = frozenset({"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE", "ILIKE", "NOT ILIKE"})

# Relations whose foreign key lives on the declaring model
_OWNING_KINDS = frozenset({RelationKind.MANY_TO_ONE, RelationKind.BELONGS_TO})
_PIVOT_KINDS = frozenset({RelationKind.MANY_TO_MANY, RelationKind.BELONGS_TO_MANY})
_MORPH_KINDS = frozenset({
    RelationKind.MORPH_ONE,
    RelationKind.MORPH_MANY,
    RelationKind.MORPH_TO,
    RelationKind.MORPH_TO_MANY,
    RelationKind.MORPHED_BY_MANY,
})

_UNSET: Any = object()


@dataclass(frozen=True)
class WhereCondition:
    """A predicate fragment; ``?`` marks each bound argument."""

    sql: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class OrderBy:
    field: str
    direction: str = "ASC"


@dataclass(frozen=True)
class Join:
    kind: str
    table: str
    condition: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class PaginationResult[T]:
    """One page of results plus the numbers needed to render pagination."""

    data: list[T]
    total: int
    per_page: int
    current_page: int
    last_page: int
    from_: int
    to: int
    has_more: bool


class _Binder:
    """Numbers placeholders in emission order while collecting arguments."""

    def __init__(self, dialect: Dialect) -> None:
        self._dialect = dialect
        self.args: list[Any] = []

    def bind(self, fragment: str, args: Sequence[Any] = ()) -> str:
        if not args:
            return fragment
        out: list[str] = []
        used = 0
        quote: str | None = None
        escaped = False
        for ch in fragment:
            if quote is not None:
                out.append(ch)
                if escaped:
                    escaped = False
                elif ch == "\\" and quote != "`" and self._dialect.backslash_escapes:
                    escaped = True
                elif ch == quote:
                    quote = None
            elif ch in ("'", '"', "`"):
                quote = ch
                out.append(ch)
            elif ch == "?" and used < len(args):
                out.append(self._dialect.get_placeholder(len(self.args)))
                self.args.append(args[used])
                used += 1
            else:
                out.append(ch)
        if used != len(args):
            raise QueryError(
                f"{fragment!r} has {used} placeholders but {len(args)} arguments"
            )
        return "".join(out)


def _chain(method: Callable[..., Any]) -> Callable[..., Any]:
    """Skip the call once an error is recorded, and record QueryErrors."""

    @functools.wraps(method)
    def wrapper(self: QueryBuilder[Any], *args: Any, **kwargs: Any) -> QueryBuilder[Any]:
        if self._error is not None:
            return self
        try:
            method(self, *args, **kwargs)
        except QueryError as e:
            self._error = e
        return self

    return wrapper


class QueryBuilder[T]:
    """Fluent, single-owner SELECT builder.

    Each chained call mutates the builder and returns it. Errors raised by a
    call (bad operator, unknown relation) are recorded and every later call
    becomes a no-op; the error is raised by the terminal call. Terminal calls
    (``find``, ``find_one``, ``count``, ``exists``, ``paginate``) work on a
    scoped copy, so the builder can be executed again afterwards.

    Clauses always compile in the order SELECT, FROM, JOIN, WHERE, GROUP BY,
    HAVING, ORDER BY, LIMIT, OFFSET, lock, whatever order they were added in.

    Example:
        >>> users = (
        ...     orm.query(User)
        ...     .where("age", ">", 30)
        ...     .where_in("status", ["active", "trial"])
        ...     .order_by("name")
        ...     .limit(10)
        ...     .find()
        ... )
        >>> orm.query(User).where("age", ">", 30).get_sql()
        'SELECT * FROM users WHERE age > ?'
    """

    def __init__(
        self,
        executor: Executor | None,
        metadata: ModelMetadata | None = None,
        *,
        orm: ORM | None = None,
        error: BaseException | None = None,
    ) -> None:
        self._executor = executor
        self._metadata = metadata
        self._orm = orm
        self._error = error
        if error is None and executor is None:
            self._error = ConfigurationError("dialect is not set")

        self._fields: list[str] = ["*"]
        self._table = metadata.table_name if metadata is not None else ""
        self._distinct = False
        self._joins: list[Join] = []
        self._conditions: list[WhereCondition] = []
        self._group_by: list[str] = []
        self._having: list[WhereCondition] = []
        self._orders: list[OrderBy] = []
        self._limit = 0
        self._offset = 0
        self._lock_clause: str | None = None
        self._sub_queries: list[tuple[str, QueryBuilder[Any]]] = []
        self._unions: list[tuple[bool, QueryBuilder[Any]]] = []
        self._with: list[str] = []
        self._with_count: list[str] = []
        self._with_exists: list[str] = []
        self._cache_ttl: float | None = None
        self._raw: tuple[str, tuple[Any, ...]] | None = None

    def __repr__(self) -> str:
        target = self._table or "?"
        return f"<QueryBuilder {target}>"

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def metadata(self) -> ModelMetadata | None:
        return self._metadata

    @property
    def dialect(self) -> Dialect:
        return self._require_executor().dialect

    # ========== Projection and Source ==========

    @_chain
    def select(self, *fields: str) -> QueryBuilder[T]:
        self._fields = list(fields) if fields else ["*"]
        return self

    @_chain
    def from_(self, table: str) -> QueryBuilder[T]:
        self._table = table
        return self

    @_chain
    def distinct(self) -> QueryBuilder[T]:
        self._distinct = True
        return self

    @_chain
    def raw(self, sql: str, *args: Any) -> QueryBuilder[T]:
        """Run ``sql`` verbatim instead of the compiled clauses."""
        self._raw = (sql, args)
        return self

    @_chain
    def sub_query(self, alias: str, fn: Callable[[QueryBuilder[Any]], Any]) -> QueryBuilder[T]:
        """Add ``(<sub select>) AS alias`` to the projection.

        Example:
            >>> orm.query(User).sub_query(
            ...     "post_total",
            ...     lambda q: q.from_("posts").select("COUNT(*)").where_raw("posts.user_id = users.id"),
            ... )
        """
        sub: QueryBuilder[Any] = QueryBuilder(self._executor, orm=self._orm)
        result = fn(sub)
        if isinstance(result, QueryBuilder):
            sub = result
        if sub._error is not None:
            raise QueryError(f"sub query {alias!r}: {sub._error}")
        self._sub_queries.append((alias, sub))
        return self

    # ========== Predicates ==========

    @_chain
    def where(self, field: str, operator: Any, value: Any = _UNSET) -> QueryBuilder[T]:
        """Add ``field <operator> value``; ``where(field, value)`` means ``=``.

        Comparing to None with ``=`` or ``!=`` emits IS [NOT] NULL.
        """
        if value is _UNSET:
            operator, value = "=", operator
        self._conditions.append(_comparison(field, operator, value))
        return self

    @_chain
    def where_or(self, *conditions: Sequence[Any] | WhereCondition) -> QueryBuilder[T]:
        """Add one parenthesised group of OR-ed comparisons.

        Example:
            >>> query.where_or(("role", "admin"), ("karma", ">", 1000))
        """
        parts: list[WhereCondition] = []
        for condition in conditions:
            if isinstance(condition, WhereCondition):
                parts.append(condition)
            elif len(condition) == 2:
                parts.append(_comparison(condition[0], "=", condition[1]))
            elif len(condition) == 3:
                parts.append(_comparison(condition[0], condition[1], condition[2]))
            else:
                raise QueryError(f"invalid OR condition: {condition!r}")
        if parts:
            sql = "(" + " OR ".join(p.sql for p in parts) + ")"
            args = tuple(a for p in parts for a in p.args)
            self._conditions.append(WhereCondition(sql, args))
        return self

    @_chain
    def where_raw(self, sql: str, *args: Any) -> QueryBuilder[T]:
        """Add a raw predicate; use ``?`` for each argument."""
        self._conditions.append(WhereCondition(f"({sql})", args))
        return self

    @_chain
    def where_in(self, field: str, values: Iterable[Any]) -> QueryBuilder[T]:
        values = list(values)
        if values:
            marks = ", ".join("?" for _ in values)
            self._conditions.append(WhereCondition(f"{field} IN ({marks})", tuple(values)))
        return self

    @_chain
    def where_not_in(self, field: str, values: Iterable[Any]) -> QueryBuilder[T]:
        values = list(values)
        if values:
            marks = ", ".join("?" for _ in values)
            self._conditions.append(WhereCondition(f"{field} NOT IN ({marks})", tuple(values)))
        return self

    @_chain
    def where_between(self, field: str, low: Any, high: Any) -> QueryBuilder[T]:
        self._conditions.append(WhereCondition(f"{field} BETWEEN ? AND ?", (low, high)))
        return self

    @_chain
    def where_not_between(self, field: str, low: Any, high: Any) -> QueryBuilder[T]:
        self._conditions.append(WhereCondition(f"{field} NOT BETWEEN ? AND ?", (low, high)))
        return self

    @_chain
    def where_null(self, field: str) -> QueryBuilder[T]:
        self._conditions.append(WhereCondition(f"{field} IS NULL"))
        return self

    @_chain
    def where_not_null(self, field: str) -> QueryBuilder[T]:
        self._conditions.append(WhereCondition(f"{field} IS NOT NULL"))
        return self

    @_chain
    def where_like(self, field: str, pattern: str) -> QueryBuilder[T]:
        self._conditions.append(WhereCondition(f"{field} LIKE ?", (pattern,)))
        return self

    @_chain
    def where_not_like(self, field: str, pattern: str) -> QueryBuilder[T]:
        self._conditions.append(WhereCondition(f"{field} NOT LIKE ?", (pattern,)))
        return self

    @_chain
    def where_regexp(self, field: str, pattern: str) -> QueryBuilder[T]:
        operator = self.dialect.regexp_operator(negate=False)
        self._conditions.append(WhereCondition(f"{field} {operator} ?", (pattern,)))
        return self

    @_chain
    def where_not_regexp(self, field: str, pattern: str) -> QueryBuilder[T]:
        operator = self.dialect.regexp_operator(negate=True)
        self._conditions.append(WhereCondition(f"{field} {operator} ?", (pattern,)))
        return self

    @_chain
    def full_text_search(self, fields: str | Sequence[str], query: str) -> QueryBuilder[T]:
        """Match ``query`` against one or more text columns.

        MySQL needs a FULLTEXT index covering the columns.
        """
        columns = [fields] if isinstance(fields, str) else list(fields)
        if not columns:
            raise QueryError("full text search needs at least one field")
        predicate = self.dialect.full_text_search(columns, "?")
        self._conditions.append(WhereCondition(predicate, (query,)))
        return self

    # ========== Joins ==========

    @_chain
    def join(self, table: str, condition: str, *args: Any) -> QueryBuilder[T]:
        """INNER JOIN; ``condition`` may use ``?`` for arguments."""
        self._joins.append(Join("INNER", table, condition, args))
        return self

    @_chain
    def inner_join(self, table: str, condition: str, *args: Any) -> QueryBuilder[T]:
        self._joins.append(Join("INNER", table, condition, args))
        return self

    @_chain
    def left_join(self, table: str, condition: str, *args: Any) -> QueryBuilder[T]:
        self._joins.append(Join("LEFT", table, condition, args))
        return self

    @_chain
    def right_join(self, table: str, condition: str, *args: Any) -> QueryBuilder[T]:
        self._joins.append(Join("RIGHT", table, condition, args))
        return self

    # ========== Grouping, Ordering, Paging ==========

    @_chain
    def group_by(self, *fields: str) -> QueryBuilder[T]:
        self._group_by.extend(fields)
        return self

    @_chain
    def having(self, condition: str, *args: Any) -> QueryBuilder[T]:
        """Add a HAVING predicate; use ``?`` for each argument.

        Example:
            >>> query.select("status", "COUNT(*) AS n").group_by("status").having("COUNT(*) > ?", 5)
        """
        self._having.append(WhereCondition(condition, args))
        return self

    @_chain
    def order_by(self, field: str, direction: str = "ASC") -> QueryBuilder[T]:
        direction = direction.strip().upper()
        if direction not in ("ASC", "DESC"):
            raise QueryError(f"invalid order direction: {direction!r}")
        self._orders.append(OrderBy(field, direction))
        return self

    @_chain
    def limit(self, n: int) -> QueryBuilder[T]:
        if n < 0:
            raise QueryError("limit must not be negative")
        self._limit = n
        return self

    @_chain
    def offset(self, n: int) -> QueryBuilder[T]:
        if n < 0:
            raise QueryError("offset must not be negative")
        self._offset = n
        return self

    @_chain
    def cursor_paginate(self, cursor_field: str, cursor_value: Any, limit: int) -> QueryBuilder[T]:
        """Keyset paging: rows after ``cursor_value``, ``limit`` at a time.

        Pass ``None`` as the cursor for the first page.
        """
        if cursor_value is not None:
            self._conditions.append(_comparison(cursor_field, ">", cursor_value))
        if limit < 0:
            raise QueryError("limit must not be negative")
        self._limit = limit
        return self

    @_chain
    def offset_paginate(self, page: int, per_page: int) -> QueryBuilder[T]:
        if page < 1 or per_page < 1:
            raise QueryError("page and per_page must be positive")
        self._offset = (page - 1) * per_page
        self._limit = per_page
        return self

    @_chain
    def lock(self, clause: str = "FOR UPDATE") -> QueryBuilder[T]:
        self._lock_clause = clause
        return self

    @_chain
    def for_update(self) -> QueryBuilder[T]:
        self._lock_clause = "FOR UPDATE"
        return self

    @_chain
    def for_share(self) -> QueryBuilder[T]:
        self._lock_clause = "FOR SHARE"
        return self

    # ========== Unions ==========

    @_chain
    def union(self, other: QueryBuilder[Any]) -> QueryBuilder[T]:
        if other._error is not None:
            raise QueryError(f"union: {other._error}")
        self._unions.append((False, other))
        return self

    @_chain
    def union_all(self, other: QueryBuilder[Any]) -> QueryBuilder[T]:
        if other._error is not None:
            raise QueryError(f"union: {other._error}")
        self._unions.append((True, other))
        return self

    # ========== Relations ==========

    @_chain
    def with_(self, *relations: str) -> QueryBuilder[T]:
        """Eager-load relations after ``find``, one ``IN`` query per relation.

        Example:
            >>> users = orm.query(User).with_("posts").find()
            >>> users[0].posts
            [<Post id=3>, <Post id=9>]
        """
        self._with.extend(self._check_relations(relations))
        return self

    @_chain
    def with_count(self, *relations: str) -> QueryBuilder[T]:
        """Add ``<relation>_count`` to each result."""
        self._with_count.extend(self._check_relations(relations))
        return self

    @_chain
    def with_exists(self, *relations: str) -> QueryBuilder[T]:
        """Keep only rows that have at least one related row."""
        self._with_exists.extend(self._check_relations(relations))
        return self

    def _check_relations(self, names: Iterable[str]) -> list[str]:
        if self._metadata is None:
            raise QueryError("relations need a model-bound query")
        names = list(names)
        for name in names:
            if name not in self._metadata.relations:
                raise QueryError(f"unknown relation {name!r} on {self._metadata.model.__name__}")
        return names

    # ========== Caching ==========

    @_chain
    def cache(self, ttl: float = 60.0) -> QueryBuilder[T]:
        """Serve ``find`` from the ORM's query cache for ``ttl`` seconds."""
        self._cache_ttl = ttl
        return self

    @_chain
    def without_cache(self) -> QueryBuilder[T]:
        self._cache_ttl = None
        return self

    # ========== Compilation ==========

    def get_sql(self) -> str:
        return self._build()[0]

    def get_args(self) -> list[Any]:
        return self._build()[1]

    def clone(self) -> QueryBuilder[T]:
        """Independent copy of the accumulated state."""
        clone = copy.copy(self)
        for name in (
            "_fields",
            "_joins",
            "_conditions",
            "_group_by",
            "_having",
            "_orders",
            "_sub_queries",
            "_unions",
            "_with",
            "_with_count",
            "_with_exists",
        ):
            setattr(clone, name, list(getattr(self, name)))
        return clone

    def _raise_error(self) -> None:
        if self._error is not None:
            raise self._error

    def _build(self) -> tuple[str, list[Any]]:
        self._raise_error()
        if self._raw is not None:
            return self._raw[0], list(self._raw[1])
        binder = _Binder(self.dialect)
        return self._compile(binder), binder.args

    def _compile(self, binder: _Binder) -> str:
        if self._raw is not None:
            binder.args.extend(self._raw[1])
            return self._raw[0]
        if not self._table:
            raise QueryError("no table to select from")

        projection = [binder.bind(f) for f in self._fields]
        for alias, sub in self._sub_queries:
            projection.append(f"({sub._compile(binder)}) AS {alias}")
        for name in self._with_count:
            projection.append(f"({self._relation_subquery(name, 'COUNT(*)')}) AS {name}_count")

        parts = ["SELECT DISTINCT" if self._distinct else "SELECT", ", ".join(projection)]
        parts += ["FROM", self._table]
        for join in self._joins:
            parts.append(f"{join.kind} JOIN {join.table} ON {binder.bind(join.condition, join.args)}")

        where = self._compile_where(binder)
        if where:
            parts += ["WHERE", where]
        if self._group_by:
            parts += ["GROUP BY", ", ".join(self._group_by)]
        if self._having:
            parts += ["HAVING", " AND ".join(binder.bind(h.sql, h.args) for h in self._having)]
        if self._orders:
            parts += ["ORDER BY", ", ".join(f"{o.field} {o.direction}" for o in self._orders)]
        if self._limit > 0:
            parts.append(f"LIMIT {self._limit}")
        if self._offset > 0:
            parts.append(f"OFFSET {self._offset}")
        if self._lock_clause:
            parts.append(self._lock_clause)

        sql = " ".join(parts)
        if self._unions and (self._orders or self._limit > 0 or self._offset > 0 or self._lock_clause):
            # ORDER BY, LIMIT and locks may only trail the last part of a union
            sql = f"({sql})"
        for union_all, other in self._unions:
            keyword = "UNION ALL" if union_all else "UNION"
            sql += f" {keyword} ({other._compile(binder)})"
        return sql

    def _compile_where(self, binder: _Binder) -> str:
        predicates = [binder.bind(c.sql, c.args) for c in self._conditions]
        for name in self._with_exists:
            predicates.append(f"EXISTS ({self._relation_subquery(name, '1')})")
        return " AND ".join(predicates)

    # ========== Execution ==========

    def find(self) -> list[T]:
        """Execute and return model instances (plain rows when unbound)."""
        rows = self._fetch()
        return self._materialize(rows)

    def find_rows(self) -> list[Row]:
        """Execute and return the rows as dictionaries."""
        return self._fetch()

    def find_one(self) -> T | None:
        """First matching row, or None when there is none."""
        scoped = self.clone()
        if scoped._raw is None:
            scoped._limit = 1
        results = scoped.find()
        return results[0] if results else None

    def count(self) -> int:
        self._raise_error()
        if self._raw is not None:
            raise UnsupportedOperationError("count is not supported on raw queries")

        scoped = self.clone()
        scoped._orders = []
        scoped._limit = 0
        scoped._offset = 0
        scoped._lock_clause = None
        scoped._with = []
        scoped._with_count = []
        scoped._sub_queries = []
        if scoped._group_by or scoped._distinct or scoped._unions:
            inner, args = scoped._build()
            sql = f"SELECT COUNT(*) AS count FROM ({inner}) AS counted"
        else:
            scoped._fields = ["COUNT(*) AS count"]
            sql, args = scoped._build()

        row = self._require_executor().query_row(sql, *args)
        if not row:
            return 0
        return int(next(iter(row.values())) or 0)

    def exists(self) -> bool:
        self._raise_error()
        if self._raw is not None:
            return bool(self._require_executor().query(self._raw[0], *self._raw[1]))

        scoped = self.clone()
        scoped._fields = ["1"]
        scoped._limit = 1
        scoped._with = []
        scoped._with_count = []
        scoped._sub_queries = []
        sql, args = scoped._build()
        return bool(self._require_executor().query(sql, *args))

    def paginate(self, page: int = 1, per_page: int = 15) -> PaginationResult[T]:
        """Run a COUNT and one page of ``find``.

        Example:
            >>> page = orm.query(Post).order_by("id").paginate(page=2, per_page=20)
            >>> page.total, page.last_page, page.has_more
            (45, 3, True)
        """
        if page < 1 or per_page < 1:
            raise QueryError("page and per_page must be positive")
        total = self.count()
        scoped = self.clone().offset_paginate(page, per_page)
        data = scoped.find()
        offset = (page - 1) * per_page
        last_page = max(1, math.ceil(total / per_page))
        return PaginationResult(
            data=data,
            total=total,
            per_page=per_page,
            current_page=page,
            last_page=last_page,
            from_=offset + 1 if data else 0,
            to=offset + len(data),
            has_more=page < last_page,
        )

    def update(self, values: Mapping[str, Any]) -> int:
        """UPDATE every matching row; returns the number of rows affected."""
        self._raise_error()
        if self._raw is not None:
            raise UnsupportedOperationError("update is not supported on raw queries")
        if not values:
            raise QueryError("update needs at least one column")
        binder = _Binder(self.dialect)
        assignments = ", ".join(binder.bind(f"{col} = ?", (val,)) for col, val in values.items())
        sql = f"UPDATE {self._table} SET {assignments}"
        where = self._compile_where(binder)
        if where:
            sql += f" WHERE {where}"
        return self._require_executor().exec(sql, *binder.args).rows_affected

    def delete(self) -> int:
        """DELETE every matching row; returns the number of rows affected."""
        self._raise_error()
        if self._raw is not None:
            raise UnsupportedOperationError("delete is not supported on raw queries")
        binder = _Binder(self.dialect)
        sql = f"DELETE FROM {self._table}"
        where = self._compile_where(binder)
        if where:
            sql += f" WHERE {where}"
        return self._require_executor().exec(sql, *binder.args).rows_affected

    def _require_executor(self) -> Executor:
        self._raise_error()
        if self._executor is None:
            raise ConfigurationError("dialect is not set")
        return self._executor

    def _fetch(self) -> list[Row]:
        sql, args = self._build()
        executor = self._require_executor()
        cache = self._cache_backend()
        if cache is None:
            return executor.query(sql, *args)

        key = f"{sql}|{args!r}"
        cached = cache.get(key)
        if cached is not None:
            logger.debug("Query cache hit", extra={"sql": sql})
            return [dict(row) for row in cached]
        rows = executor.query(sql, *args)
        cache.set(key, [dict(row) for row in rows], self._cache_ttl)
        return rows

    def _cache_backend(self) -> Any:
        if self._cache_ttl is None or self._orm is None or self._orm.in_transaction:
            return None
        return self._orm.cache

    def _materialize(self, rows: list[Row]) -> list[Any]:
        if self._metadata is None or self._raw is not None:
            return rows
        instances = [hydrate(self._metadata, row) for row in rows]
        for name in self._with_count:
            key = f"{name}_count"
            for instance, row in zip(instances, rows, strict=True):
                setattr(instance, key, int(row.get(key) or 0))
        for name in self._with:
            self._load_relation(instances, self._metadata.relations[name])
        return instances

    # ========== Relation Loading ==========

    def _model_metadata(self) -> ModelMetadata:
        if self._metadata is None:
            raise QueryError("relations need a query bound to a model")
        return self._metadata

    def _target_metadata(self, relation: Relation) -> ModelMetadata | None:
        if self._orm is None or relation.target is None:
            return None
        target = relation.target
        if isinstance(target, str):
            target = self._orm.resolve_model(target)
            if target is None:
                return None
        return self._orm.get_metadata(target)

    def _relation_keys(self, relation: Relation, target: ModelMetadata) -> tuple[str, str]:
        """``(foreign_key, referenced_key)`` with conventional defaults."""
        meta = self._model_metadata()
        if relation.kind in _OWNING_KINDS:
            fk = relation.foreign_key or f"{target.model.__name__.lower()}_id"
            ref = relation.referenced_key or target.primary_key
        elif relation.kind in _PIVOT_KINDS:
            fk = relation.foreign_key or f"{meta.model.__name__.lower()}_id"
            ref = relation.referenced_key or f"{target.model.__name__.lower()}_id"
        else:
            fk = relation.foreign_key or f"{meta.model.__name__.lower()}_id"
            ref = relation.referenced_key or meta.primary_key
        if ref is None:
            raise QueryError(f"relation {relation.attribute!r} needs a referenced key")
        return fk, ref

    def _relation_subquery(self, name: str, projection: str) -> str:
        meta = self._model_metadata()
        relation = meta.relations[name]
        if relation.kind in _MORPH_KINDS:
            raise QueryError(f"polymorphic relation {name!r} cannot be counted")
        target = self._target_metadata(relation)
        if target is None:
            raise QueryError(f"cannot resolve the target of relation {name!r}")
        fk, ref = self._relation_keys(relation, target)
        table = self._table
        if relation.kind in _OWNING_KINDS:
            return f"SELECT {projection} FROM {target.table_name} WHERE {target.table_name}.{ref} = {table}.{fk}"
        if relation.kind in _PIVOT_KINDS:
            if not relation.join_table:
                raise QueryError(f"relation {name!r} needs a join table")
            pk = meta.primary_key_column().name
            return f"SELECT {projection} FROM {relation.join_table} WHERE {relation.join_table}.{fk} = {table}.{pk}"
        return f"SELECT {projection} FROM {target.table_name} WHERE {target.table_name}.{fk} = {table}.{ref}"

    def _load_relation(self, instances: list[Any], relation: Relation) -> None:
        """Fill ``relation`` on every instance using SELECT ... IN queries."""
        meta = self._model_metadata()
        if not instances:
            return
        if relation.kind in _MORPH_KINDS:
            logger.debug("Skipping polymorphic relation", extra={"relation": relation.attribute})
            return
        target = self._target_metadata(relation)
        if target is None:
            logger.debug("Skipping unresolved relation", extra={"relation": relation.attribute})
            return

        fk, ref = self._relation_keys(relation, target)
        related: QueryBuilder[Any] = QueryBuilder(self._executor, target, orm=self._orm)

        if relation.kind in _OWNING_KINDS:
            local_attr = meta.attribute_for(fk)
            remote_attr = target.attribute_for(ref)
            if local_attr is None or remote_attr is None:
                raise QueryError(f"relation {relation.attribute!r} keys do not map to fields")
            keys = _unique(read_attribute(i, local_attr) for i in instances)
            by_key = {read_attribute(r, remote_attr): r for r in related.where_in(ref, keys).find()} if keys else {}
            for instance in instances:
                setattr(instance, relation.attribute, by_key.get(read_attribute(instance, local_attr)))
            return

        pk_column = meta.primary_key_column()
        if relation.kind in _PIVOT_KINDS:
            if not relation.join_table or target.primary_key is None:
                raise QueryError(f"relation {relation.attribute!r} needs a join table")
            ids = _unique(read_attribute(i, pk_column.attribute) for i in instances)
            links: list[Row] = []
            if ids:
                pivot: QueryBuilder[Any] = QueryBuilder(self._executor, orm=self._orm)
                links = pivot.from_(relation.join_table).select(fk, ref).where_in(fk, ids).find_rows()
            target_ids = _unique(link[ref] for link in links)
            target_attr = target.primary_key_column().attribute
            targets = related.where_in(target.primary_key, target_ids).find() if target_ids else []
            by_id = {read_attribute(t, target_attr): t for t in targets}
            grouped: dict[Any, list[Any]] = {}
            for link in links:
                if link[ref] in by_id:
                    grouped.setdefault(link[fk], []).append(by_id[link[ref]])
            for instance in instances:
                setattr(instance, relation.attribute, grouped.get(read_attribute(instance, pk_column.attribute), []))
            return

        local_attr = meta.attribute_for(ref)
        remote_attr = target.attribute_for(fk)
        if local_attr is None or remote_attr is None:
            raise QueryError(f"relation {relation.attribute!r} keys do not map to fields")
        keys = _unique(read_attribute(i, local_attr) for i in instances)
        children = related.where_in(fk, keys).find() if keys else []
        by_parent: dict[Any, list[Any]] = {}
        for child in children:
            by_parent.setdefault(read_attribute(child, remote_attr), []).append(child)
        for instance in instances:
            matches = by_parent.get(read_attribute(instance, local_attr), [])
            if relation.kind.is_collection:
                setattr(instance, relation.attribute, matches)
            else:
                setattr(instance, relation.attribute, matches[0] if matches else None)


def _comparison(field: str, operator: str, value: Any) -> WhereCondition:
    op = " ".join(str(operator).upper().split())
    if op not in _OPERATORS:
        raise QueryError(f"unsupported operator: {operator!r}")
    if value is None:
        if op == "=":
            return WhereCondition(f"{field} IS NULL")
        if op in ("!=", "<>"):
            return WhereCondition(f"{field} IS NOT NULL")
        raise QueryError(f"cannot compare {field} {op} NULL")
    return WhereCondition(f"{field} {op} ?", (value,))


def _unique(values: Iterable[Any]) -> list[Any]:
    seen: list[Any] = []
    for value in values:
        if value is not None and value not in seen:
            seen.append(value)
    return seen


__all__ = ["Join", "OrderBy", "PaginationResult", "QueryBuilder", "WhereCondition"]
