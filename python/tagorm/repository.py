"""CRUD operations over one model type."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tagorm.errors import ExecutionError, QueryError, SchemaError, UnsupportedOperationError
from tagorm.mapping import is_zero, primary_key_value, read_attribute, set_attribute
from tagorm.query import QueryBuilder

if TYPE_CHECKING:
    from tagorm.dialects.base import Dialect, ExecResult, Executor
    from tagorm.metadata import ModelMetadata
    from tagorm.session import ORM

logger = logging.getLogger(__name__)


class Repository[T]:
    """Finders and writes for a single model, driven by its metadata.

    Statements go to whatever executor the owning ORM holds, so the same
    repository code runs against the pool or inside a transaction.

    Example:
        >>> users = orm.repository(User)
        >>> alice = users.save(User(name="Alice", age=30))
        >>> alice.id
        1
        >>> users.find_by({"age": 30})
        [<User id=1>]
    """

    def __init__(
        self,
        orm: ORM,
        metadata: ModelMetadata,
        scopes: Iterable[tuple[str, tuple[Any, ...]]] = (),
    ) -> None:
        self._orm = orm
        self.metadata = metadata
        self._scopes = list(scopes)

    def __repr__(self) -> str:
        return f"<Repository {self.metadata.model.__name__}>"

    @property
    def model(self) -> type[T]:
        return self.metadata.model

    @property
    def _executor(self) -> Executor:
        return self._orm.executor

    @property
    def _dialect(self) -> Dialect:
        return self._executor.dialect

    # ========== Query Construction ==========

    def query(self) -> QueryBuilder[T]:
        """Builder over this model with scopes and the soft-delete filter."""
        builder = self.with_trashed()
        if self.metadata.soft_delete_column:
            builder.where_null(self.metadata.soft_delete_column)
        return builder

    def with_trashed(self) -> QueryBuilder[T]:
        """Builder over this model that includes soft-deleted rows."""
        builder: QueryBuilder[T] = self._orm.query(self.metadata.model)
        for name, args in self._scopes:
            fn = self._scope_function(name)
            result = fn(builder, *args)
            if isinstance(result, QueryBuilder):
                builder = result
        return builder

    def scope(self, name: str, *args: Any) -> Repository[T]:
        """Repository whose queries apply the model's named scope.

        Example:
            >>> class User(Model):
            ...     __scopes__ = {"adults": lambda q: q.where("age", ">=", 18)}
            >>> orm.repository(User).scope("adults").find_all()
        """
        self._scope_function(name)
        return Repository(self._orm, self.metadata, [*self._scopes, (name, args)])

    def _scope_function(self, name: str) -> Callable[..., Any]:
        scopes = getattr(self.metadata.model, "__scopes__", None) or {}
        fn = scopes.get(name)
        if fn is None:
            raise QueryError(f"unknown scope {name!r} on {self.metadata.model.__name__}")
        return fn

    # ========== Finders ==========

    def find(self, id: Any) -> T | None:
        pk = self.metadata.primary_key_column().name
        return self.query().where(pk, "=", id).find_one()

    def find_with_relations(self, id: Any, *relations: str) -> T | None:
        pk = self.metadata.primary_key_column().name
        return self.query().with_(*relations).where(pk, "=", id).find_one()

    def find_all(self) -> list[T]:
        return self.query().find()

    def find_by(self, criteria: Mapping[str, Any]) -> list[T]:
        return self._filtered(criteria).find()

    def find_one_by(self, criteria: Mapping[str, Any]) -> T | None:
        return self._filtered(criteria).find_one()

    def find_trashed(self) -> list[T]:
        column = self._require_soft_deletes()
        return self.with_trashed().where_not_null(column).find()

    def count(self) -> int:
        return self.query().count()

    def exists(self, id: Any) -> bool:
        pk = self.metadata.primary_key_column().name
        return self.query().where(pk, "=", id).exists()

    def pluck(self, field: str) -> list[Any]:
        """Values of one column across all rows."""
        rows = self.query().select(field).find_rows()
        return [next(iter(row.values()), None) for row in rows]

    def value(self, field: str) -> Any:
        """Value of one column from the first row, or None."""
        rows = self.query().select(field).limit(1).find_rows()
        return next(iter(rows[0].values()), None) if rows else None

    def chunk(self, size: int, fn: Callable[[list[T]], Any]) -> None:
        """Call ``fn`` with successive pages of ``size`` rows.

        Pages are ordered by primary key. Returning ``False`` from ``fn``
        stops the iteration.
        """
        if size < 1:
            raise QueryError("chunk size must be positive")
        pk = self.metadata.primary_key
        page = 0
        while True:
            builder = self.query()
            if pk:
                builder.order_by(pk)
            items = builder.limit(size).offset(page * size).find()
            if not items:
                return
            if fn(items) is False:
                return
            if len(items) < size:
                return
            page += 1

    def each(self, fn: Callable[[T], Any]) -> None:
        self.chunk(1, lambda items: fn(items[0]))

    def _filtered(self, criteria: Mapping[str, Any]) -> QueryBuilder[T]:
        builder = self.query()
        for field, value in criteria.items():
            builder.where(field, "=", value)
        return builder

    # ========== Writes ==========

    def save(self, entity: T) -> T:
        """Insert when the primary key is zero, otherwise update."""
        self._check_entity(entity)
        if is_zero(primary_key_value(self.metadata, entity)):
            return self.create(entity)
        return self.update(entity)

    def create(self, entity: T) -> T:
        self._check_entity(entity)
        _call_hook(entity, "before_save")
        _call_hook(entity, "before_create")
        now = _now()
        for column_name in (self.metadata.created_at_column, self.metadata.updated_at_column):
            if column_name:
                set_attribute(self.metadata, entity, column_name, now)

        self._insert(entity)

        _call_hook(entity, "after_create")
        _call_hook(entity, "after_save")
        return entity

    def update(self, entity: T) -> T:
        self._check_entity(entity)
        _call_hook(entity, "before_save")
        _call_hook(entity, "before_update")
        if self.metadata.updated_at_column:
            set_attribute(self.metadata, entity, self.metadata.updated_at_column, _now())

        self._update(entity)

        _call_hook(entity, "after_update")
        _call_hook(entity, "after_save")
        return entity

    def delete(self, entity: T) -> int:
        """Physically delete the row; see :meth:`soft_delete` for the soft path."""
        self._check_entity(entity)
        _call_hook(entity, "before_delete")
        pk = self.metadata.primary_key_column()
        sql = f"DELETE FROM {self.metadata.table_name} WHERE {pk.name} = {self._dialect.get_placeholder(0)}"
        result = self._write("delete from", sql, [primary_key_value(self.metadata, entity)])
        _call_hook(entity, "after_delete")
        return result.rows_affected

    def force_delete(self, entity: T) -> int:
        return self.delete(entity)

    def delete_by(self, criteria: Mapping[str, Any]) -> int:
        """Physically delete every row matching the equality criteria."""
        if not criteria:
            raise QueryError("delete_by requires at least one criterion")
        placeholder = self._dialect.get_placeholder
        conditions = [f"{field} = {placeholder(i)}" for i, field in enumerate(criteria)]
        sql = f"DELETE FROM {self.metadata.table_name} WHERE {' AND '.join(conditions)}"
        return self._write("delete from", sql, list(criteria.values())).rows_affected

    def increment(self, field: str, amount: int | float = 1) -> int:
        """Add ``amount`` to ``field`` on every row of the table."""
        return self._adjust(field, "+", amount)

    def decrement(self, field: str, amount: int | float = 1) -> int:
        """Subtract ``amount`` from ``field`` on every row of the table."""
        return self._adjust(field, "-", amount)

    def _adjust(self, field: str, sign: str, amount: int | float) -> int:
        table = self.metadata.table_name
        sql = f"UPDATE {table} SET {field} = {field} {sign} {self._dialect.get_placeholder(0)}"
        return self._write("update", sql, [amount]).rows_affected

    # ========== Batches ==========

    def batch_create(self, entities: Iterable[T]) -> list[T]:
        """Insert each entity in order; stops at the first failure."""
        return [self.create(entity) for entity in entities]

    def batch_update(self, entities: Iterable[T]) -> list[T]:
        return [self.update(entity) for entity in entities]

    def batch_delete(self, entities: Iterable[T]) -> int:
        return sum(self.delete(entity) for entity in entities)

    # ========== Soft Deletes ==========

    def soft_delete(self, entity: T) -> T:
        column = self._require_soft_deletes()
        set_attribute(self.metadata, entity, column, _now())
        return self.update(entity)

    def restore(self, entity: T) -> T:
        column = self._require_soft_deletes()
        set_attribute(self.metadata, entity, column, None)
        return self.update(entity)

    def soft_delete_by(self, criteria: Mapping[str, Any]) -> int:
        self._require_soft_deletes()
        entities = self._filtered(criteria).find()
        for entity in entities:
            self.soft_delete(entity)
        return len(entities)

    def restore_by(self, criteria: Mapping[str, Any]) -> int:
        column = self._require_soft_deletes()
        builder = self.with_trashed().where_not_null(column)
        for field, value in criteria.items():
            builder.where(field, "=", value)
        entities = builder.find()
        for entity in entities:
            self.restore(entity)
        return len(entities)

    def _require_soft_deletes(self) -> str:
        column = self.metadata.soft_delete_column
        if column is None:
            raise UnsupportedOperationError(f"soft deletes not enabled for {self.metadata.table_name}")
        return column

    # ========== Statement Building ==========

    def _insert(self, entity: T) -> None:
        metadata = self.metadata
        dialect = self._dialect
        columns: list[str] = []
        values: list[Any] = []
        for column in metadata.columns:
            if column.auto_increment:
                continue
            value = read_attribute(entity, column.attribute)
            # Let the database apply its default
            if value is None and column.default is not None:
                continue
            columns.append(column.name)
            values.append(value)

        table = metadata.table_name
        if columns:
            placeholders = ", ".join(dialect.get_placeholder(i) for i in range(len(values)))
            sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        elif dialect.supports_returning:
            sql = f"INSERT INTO {table} DEFAULT VALUES"
        else:
            sql = f"INSERT INTO {table} () VALUES ()"

        auto = metadata.auto_increment
        if auto and dialect.supports_returning:
            sql += f" RETURNING {auto}"
            try:
                row = self._executor.query_row(sql, *values)
            except ExecutionError as e:
                raise ExecutionError(f"failed to insert into {table}: {e}", sql) from e
            if row:
                set_attribute(metadata, entity, auto, row.get(auto, next(iter(row.values()))))
        else:
            result = self._write("insert into", sql, values)
            if auto and result.last_insert_id is not None:
                set_attribute(metadata, entity, auto, result.last_insert_id)
        logger.debug("Inserted row", extra={"table": table})

    def _update(self, entity: T) -> None:
        metadata = self.metadata
        placeholder = self._dialect.get_placeholder
        assignments: list[str] = []
        values: list[Any] = []
        for column in metadata.columns:
            if column.primary_key:
                continue
            value = read_attribute(entity, column.attribute)
            # The soft-delete marker may be cleared back to NULL
            if value is None and not column.soft_delete:
                continue
            assignments.append(f"{column.name} = {placeholder(len(values))}")
            values.append(value)
        if not assignments:
            logger.debug("Nothing to update", extra={"table": metadata.table_name})
            return

        pk = metadata.primary_key_column()
        sql = (
            f"UPDATE {metadata.table_name} SET {', '.join(assignments)} "
            f"WHERE {pk.name} = {placeholder(len(values))}"
        )
        values.append(primary_key_value(metadata, entity))
        self._write("update", sql, values)

    def _write(self, action: str, sql: str, args: list[Any]) -> ExecResult:
        try:
            return self._executor.exec(sql, *args)
        except ExecutionError as e:
            raise ExecutionError(f"failed to {action} {self.metadata.table_name}: {e}", sql) from e

    def _check_entity(self, entity: Any) -> None:
        if not isinstance(entity, self.metadata.model):
            raise SchemaError(
                f"expected a {self.metadata.model.__name__} instance, got {type(entity).__name__}"
            )


def _call_hook(entity: Any, name: str) -> None:
    hook = getattr(entity, name, None)
    if callable(hook):
        hook()


def _now() -> datetime:
    return datetime.now(UTC)
