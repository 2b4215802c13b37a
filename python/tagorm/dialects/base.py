"""Shared dialect machinery: pooling, statement execution and transactions."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from sqlalchemy.pool import QueuePool

from tagorm.config import ConnectionConfig
from tagorm.errors import (
    ConfigurationError,
    ExecutionError,
    NotConnectedError,
    ORMError,
    TransactionError,
)
from tagorm.fields import sql_type_for

if TYPE_CHECKING:
    from tagorm.log import QueryLogger
    from tagorm.metadata import Column

logger = logging.getLogger(__name__)

Row = dict[str, Any]

# SQL keywords accepted verbatim as column defaults
_DEFAULT_KEYWORDS = frozenset({"CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME", "NULL", "NOW()"})

ISOLATION_LEVELS = frozenset({"READ UNCOMMITTED", "READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE"})


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a statement that returns no rows."""

    rows_affected: int = 0
    last_insert_id: int | None = None


class Executor(Protocol):
    """What repositories and query builders need to run SQL.

    Implemented by a connected :class:`Dialect` (pooled connections) and by
    an active :class:`Transaction`. Only the dialect carries schema
    operations and ``begin``.
    """

    @property
    def dialect(self) -> Dialect: ...

    def exec(self, sql: str, *args: Any) -> ExecResult: ...

    def query(self, sql: str, *args: Any) -> list[Row]: ...

    def query_row(self, sql: str, *args: Any) -> Row | None: ...


class Dialect(ABC):
    """Vendor adapter: connection lifecycle, execution, DDL and SQL hooks.

    Subclasses provide the driver connection and the vendor-specific SQL;
    pooling, placeholder translation and transaction handling live here.

    Example:
        >>> dialect = PostgresDialect()
        >>> dialect.connect(ConnectionConfig(username="app", database="shop"))
        >>> dialect.exec("UPDATE users SET active = $1 WHERE id = $2", True, 7)
        ExecResult(rows_affected=1, last_insert_id=None)
    """

    name: ClassVar[str]
    supports_returning: ClassVar[bool] = False
    # "qmark" for ?, "numeric" for $1, $2, ...
    placeholder_style: ClassVar[str] = "qmark"
    # Backslash escapes a quote inside string literals (MySQL default sql_mode)
    backslash_escapes: ClassVar[bool] = False
    default_schema_clause: ClassVar[str] = ""

    def __init__(self) -> None:
        self._pool: QueuePool | None = None
        self._config: ConnectionConfig | None = None
        self._lock = threading.Lock()
        self.query_logger: QueryLogger | None = None

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "disconnected"
        return f"<{type(self).__name__} {state}>"

    @property
    def dialect(self) -> Dialect:
        return self

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    # ========== Connection Lifecycle ==========

    def connect(self, config: ConnectionConfig | None = None) -> None:
        """Open the connection pool and verify it with a ping."""
        if config is None:
            raise ConfigurationError("connection config is required")
        config.validate()
        with self._lock:
            if self._pool is not None:
                self._pool.dispose()
            pool_size = max(config.max_idle_conns, 1)
            self._pool = QueuePool(
                lambda: self._create_connection(config),
                pool_size=pool_size,
                max_overflow=max(config.max_open_conns - pool_size, 0),
                recycle=int(config.conn_max_lifetime) if config.conn_max_lifetime > 0 else -1,
                timeout=config.connect_timeout,
            )
            self._config = config
        try:
            self.ping()
        except ORMError:
            self.close()
            raise
        logger.info(
            "Connected to database",
            extra={"dialect": self.name, "host": config.host, "database": config.database},
        )

    def close(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.dispose()
            logger.info("Closed database connection", extra={"dialect": self.name})

    def ping(self) -> None:
        self.query_row("SELECT 1")

    @abstractmethod
    def _create_connection(self, config: ConnectionConfig) -> Any:
        """Open one DB-API connection with autocommit disabled."""

    @contextmanager
    def _checkout(self) -> Iterator[Any]:
        pool = self._pool
        if pool is None:
            raise NotConnectedError()
        try:
            connection = pool.connect()
        except Exception as e:
            raise ExecutionError(f"failed to acquire connection: {e}") from e
        try:
            yield connection
        finally:
            connection.close()

    # ========== Execution ==========

    def exec(self, sql: str, *args: Any) -> ExecResult:
        with self._checkout() as connection:
            _, result = self._run(connection, sql, args, fetch=False)
            self._commit(connection)
            return result

    def query(self, sql: str, *args: Any) -> list[Row]:
        with self._checkout() as connection:
            rows, _ = self._run(connection, sql, args, fetch=True)
            self._commit(connection)
            return rows

    def query_row(self, sql: str, *args: Any) -> Row | None:
        rows = self.query(sql, *args)
        return rows[0] if rows else None

    def _commit(self, connection: Any) -> None:
        try:
            connection.commit()
        except Exception as e:
            raise ExecutionError(f"commit failed: {e}") from e

    def _run(
        self, connection: Any, sql: str, args: Sequence[Any], *, fetch: bool
    ) -> tuple[list[Row], ExecResult]:
        """Execute one statement with timing, logging and the query log."""
        started = time.perf_counter()
        try:
            rows, result = self._execute(connection, sql, tuple(args), fetch)
        except ORMError as e:
            duration = time.perf_counter() - started
            logger.error(
                "Statement failed",
                extra={"sql": sql, "params": list(args), "error": str(e)},
            )
            if self.query_logger is not None:
                self.query_logger.record(sql, tuple(args), duration, e)
            raise
        duration = time.perf_counter() - started
        logger.debug(
            "Executed statement",
            extra={"sql": sql, "params": list(args), "duration_ms": round(duration * 1000, 3)},
        )
        if self.query_logger is not None:
            self.query_logger.record(sql, tuple(args), duration)
        return rows, result

    def _execute(
        self, connection: Any, sql: str, args: tuple[Any, ...], fetch: bool
    ) -> tuple[list[Row], ExecResult]:
        """The single point where SQL reaches the driver."""
        statement, params = to_pyformat(sql, args, self.placeholder_style, self.backslash_escapes)
        cursor = connection.cursor()
        try:
            cursor.execute(statement, params if args else None)
            rows: list[Row] = []
            if cursor.description is not None and fetch:
                names = [d[0] for d in cursor.description]
                rows = [dict(zip(names, record, strict=True)) for record in cursor.fetchall()]
            last_id = getattr(cursor, "lastrowid", None)
            result = ExecResult(
                rows_affected=max(cursor.rowcount, 0) if cursor.rowcount is not None else 0,
                last_insert_id=last_id or None,
            )
            return rows, result
        except ORMError:
            raise
        except Exception as e:
            raise ExecutionError(f"statement failed: {e}", sql) from e
        finally:
            cursor.close()

    # ========== Transactions ==========

    def begin(self) -> Transaction:
        return self.begin_tx()

    def begin_tx(
        self,
        *,
        isolation_level: str | None = None,
        read_only: bool = False,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Transaction:
        """Start a transaction on a dedicated pooled connection.

        Args:
            isolation_level: One of READ UNCOMMITTED, READ COMMITTED,
                REPEATABLE READ, SERIALIZABLE.
            read_only: Start a read-only transaction.
            deadline: ``time.monotonic()`` value after which begin fails.
            cancel: Event that, when set, makes begin fail.

        The deadline and cancel signal are checked once, here; a running
        transaction is never interrupted.
        """
        _check_signals(deadline, cancel)
        options = _transaction_options(isolation_level, read_only)

        connection = self._acquire_for_transaction()
        tx = Transaction(self, connection, connection.close)
        if options:
            try:
                tx.exec(f"SET TRANSACTION {options}")
            except ORMError:
                tx.rollback()
                raise
        logger.debug("Transaction started", extra={"dialect": self.name})
        return tx

    def _acquire_for_transaction(self) -> Any:
        pool = self._pool
        if pool is None:
            raise NotConnectedError()
        try:
            return pool.connect()
        except Exception as e:
            raise TransactionError(f"failed to begin transaction: {e}") from e

    def _finish(self, connection: Any, commit: bool) -> None:
        if commit:
            connection.commit()
        else:
            connection.rollback()

    # ========== Schema Operations ==========

    def create_table(self, table: str, columns: Sequence[Column]) -> None:
        self.exec(self.create_table_sql(table, columns))

    def drop_table(self, table: str) -> None:
        self.exec(f"DROP TABLE IF EXISTS {table}")

    def table_exists(self, table: str) -> bool:
        row = self.query_row(self.table_exists_sql(), table)
        if row is None:
            return False
        return bool(next(iter(row.values()), 0))

    def create_table_sql(self, table: str, columns: Sequence[Column]) -> str:
        definitions = [self.column_definition(col) for col in columns]
        definitions.extend(self.table_constraints(columns))
        sql = f"CREATE TABLE IF NOT EXISTS {table} (\n  " + ",\n  ".join(definitions) + "\n)"
        if self.default_schema_clause:
            sql += " " + self.default_schema_clause
        return sql

    @abstractmethod
    def table_exists_sql(self) -> str:
        """Catalog query taking the table name as its only parameter."""

    @abstractmethod
    def column_definition(self, column: Column) -> str:
        """One column fragment of a CREATE TABLE statement."""

    def table_constraints(self, columns: Sequence[Column]) -> list[str]:
        return []

    # ========== SQL Hooks ==========

    @abstractmethod
    def get_placeholder(self, index: int) -> str:
        """Placeholder for the zero-based argument ``index``."""

    def get_sql_type(self, python_type: Any) -> str:
        return self.refine_type(sql_type_for(python_type))

    def refine_type(self, generic: str) -> str:
        """Vendor spelling of a generic SQL type."""
        return generic

    def column_type(self, column: Column) -> str:
        sql_type = self.refine_type(column.type)
        if column.length and sql_type.startswith("VARCHAR"):
            sql_type = f"VARCHAR({column.length})"
        return sql_type

    def format_default(self, value: Any) -> str:
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, datetime):
            value = value.isoformat(sep=" ")
        text = str(value)
        if text.upper() in _DEFAULT_KEYWORDS:
            return text
        return "'" + text.replace("'", "''") + "'"

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    @abstractmethod
    def full_text_search(self, fields: Sequence[str], placeholder: str) -> str:
        """Predicate matching ``fields`` against a search-string parameter."""

    def regexp_operator(self, negate: bool = False) -> str:
        return "NOT REGEXP" if negate else "REGEXP"

    def random_function(self) -> str:
        return "RAND()"

    def now_function(self) -> str:
        return "NOW()"

    @abstractmethod
    def json_extract(self, column: str, path: str) -> str:
        """Expression extracting ``path`` (dot separated) from a JSON column."""


class TransactionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """One open transaction bound to a single pooled connection.

    Runs statements with the same ``exec``/``query``/``query_row`` surface
    as a dialect. Once committed or rolled back it accepts nothing else.
    """

    def __init__(self, dialect: Dialect, connection: Any, release: Callable[[], None]) -> None:
        self._dialect = dialect
        self._connection = connection
        self._release = release
        self._lock = threading.Lock()
        self.state = TransactionState.ACTIVE

    def __repr__(self) -> str:
        return f"<Transaction {self._dialect.name} {self.state.value}>"

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    def exec(self, sql: str, *args: Any) -> ExecResult:
        with self._lock:
            self._ensure_active()
            _, result = self._dialect._run(self._connection, sql, args, fetch=False)
            return result

    def query(self, sql: str, *args: Any) -> list[Row]:
        with self._lock:
            self._ensure_active()
            rows, _ = self._dialect._run(self._connection, sql, args, fetch=True)
            return rows

    def query_row(self, sql: str, *args: Any) -> Row | None:
        rows = self.query(sql, *args)
        return rows[0] if rows else None

    def commit(self) -> None:
        self._finish(commit=True)

    def rollback(self) -> None:
        self._finish(commit=False)

    def _ensure_active(self) -> None:
        if self.state is not TransactionState.ACTIVE:
            raise TransactionError(f"transaction already finalized ({self.state.value})")

    def _finish(self, *, commit: bool) -> None:
        with self._lock:
            self._ensure_active()
            self.state = TransactionState.COMMITTED if commit else TransactionState.ROLLED_BACK
            action = "commit" if commit else "rollback"
            try:
                self._dialect._finish(self._connection, commit)
            except ORMError:
                raise
            except Exception as e:
                raise TransactionError(f"{action} failed: {e}") from e
            finally:
                self._release()
            logger.debug(f"Transaction {action}", extra={"dialect": self._dialect.name})


def _check_signals(deadline: float | None, cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise TransactionError("transaction cancelled before begin")
    if deadline is not None and time.monotonic() >= deadline:
        raise TransactionError("transaction deadline exceeded before begin")


def _transaction_options(isolation_level: str | None, read_only: bool) -> str:
    parts = []
    if isolation_level is not None:
        level = isolation_level.upper().replace("_", " ")
        if level not in ISOLATION_LEVELS:
            raise TransactionError(f"unsupported isolation level: {isolation_level}")
        parts.append(f"ISOLATION LEVEL {level}")
    if read_only:
        parts.append("READ ONLY")
    return ", ".join(parts)


def to_pyformat(
    sql: str, args: Sequence[Any], style: str, backslash_escapes: bool = False
) -> tuple[str, list[Any]]:
    """Rewrite dialect placeholders into the drivers' ``%s`` paramstyle.

    ``?`` (qmark) or ``$n`` (numeric) markers outside quoted literals become
    ``%s``; literal ``%`` is doubled everywhere. For numeric style the
    arguments are reordered to follow the ``$n`` references. With
    ``backslash_escapes`` a backslash inside a quoted literal also escapes
    the character after it.

    Example:
        >>> to_pyformat("SELECT * FROM t WHERE a = $2 AND b = $1", ["x", "y"], "numeric")
        ('SELECT * FROM t WHERE a = %s AND b = %s', ['y', 'x'])
    """
    if not args:
        return sql, []

    out: list[str] = []
    params: list[Any] = []
    quote: str | None = None
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if ch == "%":
            out.append("%%")
        elif quote is not None:
            out.append(ch)
            if ch == "\\" and backslash_escapes and quote != "`" and i + 1 < n:
                i += 1
                out.append("%%" if sql[i] == "%" else sql[i])
            elif ch == quote:
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
            out.append(ch)
        elif style == "qmark" and ch == "?":
            out.append("%s")
            params.append(args[len(params)] if len(params) < len(args) else None)
        elif style == "numeric" and ch == "$" and i + 1 < n and sql[i + 1].isdigit():
            j = i + 1
            while j < n and sql[j].isdigit():
                j += 1
            position = int(sql[i + 1 : j])
            if position < 1 or position > len(args):
                raise ExecutionError(f"placeholder ${position} has no argument", sql)
            out.append("%s")
            params.append(args[position - 1])
            i = j
            continue
        else:
            out.append(ch)
        i += 1

    if style == "qmark" and len(params) != len(args):
        raise ExecutionError(
            f"statement has {len(params)} placeholders but {len(args)} arguments", sql
        )
    return "".join(out), params
