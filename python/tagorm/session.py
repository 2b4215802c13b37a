"""The ORM facade: model registry, dialect lifecycle and transactions."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from tagorm.config import ConnectionConfig
from tagorm.dialects.base import Dialect, Executor, Transaction
from tagorm.errors import (
    ConfigurationError,
    SchemaError,
    TransactionError,
    UnsupportedOperationError,
)
from tagorm.log import QueryLog, QueryLogger
from tagorm.metadata import MetadataManager, ModelMetadata, default_manager
from tagorm.query import QueryBuilder
from tagorm.repository import Repository

logger = logging.getLogger(__name__)


class _RWLock:
    """Many readers or one writer. Not reentrant."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ORM:
    """Entry point: owns the dialect, the model registry and the query cache.

    Query builders and repositories handed out by an ORM run against the
    dialect's pool. Inside :meth:`transaction` the callback receives a
    second ORM bound to the transaction; it shares the registry, cache and
    query log but rejects DDL and nested transactions.

    Example:
        >>> orm = ORM(PostgresDialect())
        >>> orm.connect(ConnectionConfig(username="app", password="pw", database="shop"))
        >>> orm.register_model(User, Post)
        >>> orm.migrate()
        ['users', 'posts']
        >>> orm.transaction(lambda tx: tx.repository(User).save(User(name="Alice")))
        <User id=1>
    """

    def __init__(
        self,
        dialect: Dialect | None = None,
        *,
        metadata: MetadataManager | None = None,
        cache: Any = None,
    ) -> None:
        self._dialect = dialect
        self._metadata = metadata if metadata is not None else default_manager()
        self._models: dict[str, type] = {}
        self._cache = cache
        self._query_logger = QueryLogger()
        self._lock = _RWLock()
        self._tx: Transaction | None = None
        if dialect is not None:
            dialect.query_logger = self._query_logger

    def __repr__(self) -> str:
        dialect = self._dialect.name if self._dialect is not None else "none"
        scope = " transaction" if self._tx is not None else ""
        return f"<ORM {dialect}{scope}>"

    def __enter__(self) -> ORM:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ========== Properties ==========

    @property
    def dialect(self) -> Dialect | None:
        with self._lock.read():
            return self._dialect

    @property
    def executor(self) -> Executor:
        """The transaction when scoped to one, otherwise the dialect."""
        executor = self._current_executor()
        if executor is None:
            raise ConfigurationError("dialect is not set")
        return executor

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    @property
    def cache(self) -> Any:
        return self._cache

    @property
    def is_connected(self) -> bool:
        with self._lock.read():
            return self._dialect is not None and self._dialect.is_connected

    def _current_executor(self) -> Executor | None:
        with self._lock.read():
            if self._tx is not None:
                return self._tx
            return self._dialect

    def _require_dialect(self) -> Dialect:
        dialect = self.dialect
        if dialect is None:
            raise ConfigurationError("dialect is not set")
        return dialect

    def _reject_in_transaction(self, operation: str) -> None:
        if self._tx is not None:
            raise UnsupportedOperationError(f"{operation} not supported in transaction")

    # ========== Connection Lifecycle ==========

    def connect(self, config: ConnectionConfig | None = None) -> None:
        self._reject_in_transaction("connect")
        with self._lock.write():
            if self._dialect is None:
                raise ConfigurationError("dialect is not set")
            self._dialect.connect(config)

    def close(self) -> None:
        self._reject_in_transaction("close")
        with self._lock.write():
            if self._dialect is not None:
                self._dialect.close()

    def ping(self) -> None:
        self._require_dialect().ping()

    # ========== Models ==========

    def register_model(self, *models: Any) -> None:
        """Extract and cache metadata, and make the models resolvable by name.

        String relation targets (``Mapped[list["Post"]]``) are resolved
        against the registered names.
        """
        with self._lock.write():
            for model in models:
                metadata = self._metadata.extract_metadata(model)
                self._models[metadata.model.__name__] = metadata.model
                logger.debug(
                    "Registered model",
                    extra={"model": metadata.model.__name__, "table": metadata.table_name},
                )

    def get_metadata(self, model: Any) -> ModelMetadata:
        with self._lock.read():
            return self._metadata.extract_metadata(model)

    def models(self) -> list[type]:
        with self._lock.read():
            return list(self._models.values())

    def resolve_model(self, name: str) -> type | None:
        with self._lock.read():
            return self._models.get(name)

    def clear_metadata_cache(self) -> None:
        self._metadata.clear_cache()

    # ========== Builders ==========

    def query(self, model: Any) -> QueryBuilder[Any]:
        """Builder bound to ``model``; extraction errors surface at execution."""
        executor = self._current_executor()
        try:
            metadata = self.get_metadata(model)
        except SchemaError as e:
            return QueryBuilder(executor, orm=self, error=e)
        return QueryBuilder(executor, metadata, orm=self)

    def raw(self, sql: str, *args: Any) -> QueryBuilder[Any]:
        """Builder that runs ``sql`` verbatim and returns plain rows."""
        return QueryBuilder(self._current_executor(), orm=self).raw(sql, *args)

    def repository(self, model: Any) -> Repository[Any]:
        return Repository(self, self.get_metadata(model))

    # ========== Transactions ==========

    def transaction(self, fn: Callable[[ORM], Any]) -> Any:
        """Run ``fn`` inside a transaction and return its result.

        Commits when ``fn`` returns; rolls back and re-raises when it raises.
        """
        with self.begin() as tx:
            return fn(tx)

    def transaction_with_context(
        self,
        fn: Callable[[ORM], Any],
        *,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
        isolation_level: str | None = None,
        read_only: bool = False,
    ) -> Any:
        """:meth:`transaction` with begin-time options.

        Args:
            fn: Callback receiving the transaction-scoped ORM.
            deadline: ``time.monotonic()`` value; begin fails once it has passed.
            cancel: Event; begin fails when it is set.
            isolation_level: Isolation level for the transaction.
            read_only: Start a read-only transaction.
        """
        with self.begin(
            deadline=deadline,
            cancel=cancel,
            isolation_level=isolation_level,
            read_only=read_only,
        ) as tx:
            return fn(tx)

    @contextmanager
    def begin(
        self,
        *,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
        isolation_level: str | None = None,
        read_only: bool = False,
    ) -> Iterator[ORM]:
        """Context manager yielding a transaction-scoped ORM.

        Example:
            >>> with orm.begin() as tx:
            ...     tx.repository(Account).decrement("balance", 10)
        """
        if self._tx is not None:
            raise UnsupportedOperationError("nested transactions not supported")
        tx = self._require_dialect().begin_tx(
            isolation_level=isolation_level,
            read_only=read_only,
            deadline=deadline,
            cancel=cancel,
        )
        try:
            yield self._for_transaction(tx)
        except Exception as e:
            logger.warning("Rolling back transaction", extra={"error": str(e)})
            try:
                tx.rollback()
            except Exception as rb:
                raise TransactionError(f"transaction failed: {e}, rollback failed: {rb}") from e
            raise
        except BaseException:
            try:
                tx.rollback()
            except Exception as rb:
                logger.error("Rollback failed", extra={"error": str(rb)})
            raise
        tx.commit()

    def _for_transaction(self, tx: Transaction) -> ORM:
        scoped = copy.copy(self)
        scoped._tx = tx
        return scoped

    # ========== Schema ==========

    def create_table(self, model: Any) -> None:
        self._reject_in_transaction("create table")
        metadata = self.get_metadata(model)
        self._require_dialect().create_table(metadata.table_name, metadata.columns)

    def drop_table(self, model: Any) -> None:
        self._reject_in_transaction("drop table")
        metadata = self.get_metadata(model)
        self._require_dialect().drop_table(metadata.table_name)

    def table_exists(self, model: Any) -> bool:
        self._reject_in_transaction("table exists")
        metadata = self.get_metadata(model)
        return self._require_dialect().table_exists(metadata.table_name)

    def migrate(self) -> list[str]:
        """Create the table of every registered model that lacks one.

        Returns:
            Names of the tables created.
        """
        self._reject_in_transaction("migrate")
        dialect = self._require_dialect()
        created = []
        for model in self.models():
            metadata = self.get_metadata(model)
            if dialect.table_exists(metadata.table_name):
                continue
            dialect.create_table(metadata.table_name, metadata.columns)
            created.append(metadata.table_name)
            logger.info("Created table", extra={"table": metadata.table_name})
        return created

    # ========== Cache and Query Log ==========

    def with_cache(self, cache: Any) -> ORM:
        """Install a query cache (``MemoryCache`` or anything with get/set/delete/clear)."""
        self._cache = cache
        return self

    def enable_query_log(self) -> None:
        self._query_logger.enabled = True

    def disable_query_log(self) -> None:
        self._query_logger.enabled = False

    def query_logs(self) -> list[QueryLog]:
        with self._lock.read():
            return self._query_logger.entries()

    def clear_query_logs(self) -> None:
        self._query_logger.clear()
