"""In-memory dialects for tests: record SQL, answer with scripted rows."""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from tagorm.config import ConnectionConfig
from tagorm.dialects.base import ExecResult, Row
from tagorm.dialects.mysql import MySQLDialect
from tagorm.dialects.postgres import PostgresDialect
from tagorm.errors import ExecutionError, NotConnectedError, TransactionError

if TYPE_CHECKING:
    from tagorm.metadata import Column

logger = logging.getLogger(__name__)

_RETURNING = re.compile(r"\bRETURNING\s+(\w+)\s*$", re.IGNORECASE)


class _MockConnection:
    """Stands in for a DB-API connection; records commit and rollback."""

    def __init__(self, backend: MockBackend) -> None:
        self._backend = backend

    def commit(self) -> None:
        self._backend.events.append("commit")
        if self._backend.commit_error is not None:
            raise self._backend.commit_error

    def rollback(self) -> None:
        self._backend.events.append("rollback")
        if self._backend.rollback_error is not None:
            raise self._backend.rollback_error

    def close(self) -> None:
        pass


class MockBackend:
    """Replaces the driver and pool of a real dialect class.

    Every statement is appended to ``statements`` as ``(sql, args)``.
    Queries are answered from rows registered with :meth:`on` (matched by
    substring, reusable) or queued with :meth:`add_result` (consumed in
    order). An unanswered ``INSERT ... RETURNING col`` gets a fresh id.

    Set ``exec_error``, ``query_error``, ``begin_error``, ``commit_error``
    or ``rollback_error`` to make the matching operation fail.
    """

    flavor = "mysql"

    def __init__(self) -> None:
        super().__init__()
        self.statements: list[tuple[str, tuple[Any, ...]]] = []
        self.events: list[str] = []
        self.tables: set[str] = set()
        self.exec_error: Exception | None = None
        self.query_error: Exception | None = None
        self.begin_error: Exception | None = None
        self.commit_error: Exception | None = None
        self.rollback_error: Exception | None = None
        self.rows_affected = 1
        self._connected = False
        self._next_id = 1
        self._queued: deque[list[Row]] = deque()
        self._routes: list[tuple[str, list[Row]]] = []
        self._mock_lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ========== Scripting ==========

    def add_result(self, rows: Sequence[Row]) -> None:
        """Queue the rows returned by the next unmatched query."""
        self._queued.append([dict(r) for r in rows])

    def on(self, fragment: str, rows: Sequence[Row]) -> None:
        """Answer every query containing ``fragment`` with ``rows``."""
        self._routes.append((fragment, [dict(r) for r in rows]))

    def reset(self) -> None:
        """Forget recorded statements, events and scripted results."""
        self.statements.clear()
        self.events.clear()
        self._queued.clear()
        self._routes.clear()

    @property
    def last_statement(self) -> tuple[str, tuple[Any, ...]]:
        return self.statements[-1]

    # ========== Dialect Overrides ==========

    def connect(self, config: ConnectionConfig | None = None) -> None:
        self._connected = True
        self._config = config
        logger.info("Connected to mock database", extra={"dialect": self.name})

    def close(self) -> None:
        self._connected = False

    def ping(self) -> None:
        if not self._connected:
            raise NotConnectedError()

    def _create_connection(self, config: ConnectionConfig) -> Any:
        return _MockConnection(self)

    @contextmanager
    def _checkout(self) -> Iterator[Any]:
        if not self._connected:
            raise NotConnectedError()
        yield _MockConnection(self)

    def _commit(self, connection: Any) -> None:
        # Statements outside a transaction have nothing to commit
        pass

    def _acquire_for_transaction(self) -> Any:
        if not self._connected:
            raise NotConnectedError()
        if self.begin_error is not None:
            raise TransactionError(f"failed to begin transaction: {self.begin_error}") from self.begin_error
        self.events.append("begin")
        return _MockConnection(self)

    def _execute(
        self, connection: Any, sql: str, args: tuple[Any, ...], fetch: bool
    ) -> tuple[list[Row], ExecResult]:
        with self._mock_lock:
            self.statements.append((sql, args))
            if fetch:
                if self.query_error is not None:
                    raise ExecutionError(f"query failed: {self.query_error}", sql) from self.query_error
                rows = self._answer(sql)
                return rows, ExecResult(rows_affected=len(rows))
            if self.exec_error is not None:
                raise ExecutionError(f"exec failed: {self.exec_error}", sql) from self.exec_error
            last_id = None
            if sql.lstrip().upper().startswith("INSERT"):
                last_id = self._next_id
                self._next_id += 1
            return [], ExecResult(rows_affected=self.rows_affected, last_insert_id=last_id)

    def _answer(self, sql: str) -> list[Row]:
        for fragment, rows in self._routes:
            if fragment in sql:
                return [dict(r) for r in rows]
        if self._queued:
            return self._queued.popleft()
        match = _RETURNING.search(sql)
        if match and sql.lstrip().upper().startswith("INSERT"):
            generated = self._next_id
            self._next_id += 1
            return [{match.group(1): generated}]
        return []

    def create_table(self, table: str, columns: Sequence[Column]) -> None:
        super().create_table(table, columns)  # type: ignore[misc]
        self.tables.add(table)

    def drop_table(self, table: str) -> None:
        super().drop_table(table)  # type: ignore[misc]
        self.tables.discard(table)

    def table_exists(self, table: str) -> bool:
        if not self._connected:
            raise NotConnectedError()
        return table in self.tables


class MockDialect(MockBackend, MySQLDialect):
    """Mock with MySQL SQL: ``?`` placeholders and last-insert-id keys.

    Example:
        >>> dialect = MockDialect()
        >>> dialect.connect()
        >>> dialect.on("FROM users", [{"id": 1, "name": "Alice"}])
        >>> ORM(dialect).repository(User).find(1).name
        'Alice'
    """

    name = "mock"


class MockPostgresDialect(MockBackend, PostgresDialect):
    """Mock with PostgreSQL SQL: ``$n`` placeholders and RETURNING keys."""

    name = "mock"
    flavor = "postgres"
