"""Tests for vendor dialects, placeholder translation and pool plumbing."""

from __future__ import annotations

import threading
import time
from datetime import datetime

import pytest

from tagorm import (
    ConfigurationError,
    ConnectionConfig,
    ExecResult,
    ExecutionError,
    Mapped,
    MetadataManager,
    MockDialect,
    MockPostgresDialect,
    MySQLDialect,
    NotConnectedError,
    PostgresDialect,
    TransactionError,
    UnsignedInt,
    create_dialect,
    orm,
    register_dialect,
)
from tagorm.dialects import TransactionState, supported_dialects, to_pyformat
from tagorm.log import QueryLogger


class Member:
    __tablename__ = "members"

    id: Mapped[int] = orm("pk,auto")
    name: Mapped[str] = orm("length:100")
    email: Mapped[str] = orm("unique")
    active: Mapped[bool] = orm("default:true")
    team_id: Mapped[int | None] = orm("fk:teams.id,ondelete:SET NULL")
    joined_at: Mapped[datetime] = orm("default:CURRENT_TIMESTAMP")


class Counter:
    __tablename__ = "counters"

    id: Mapped[int] = orm("pk,auto,column:counter_id")
    total: Mapped[int] = orm("")


class FakeCursor:
    """Minimal DB-API cursor."""

    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self.description = None
        self.rowcount = -1
        self.lastrowid = None
        self._rows: list[tuple] = []

    def execute(self, sql: str, params=None) -> None:
        self.connection.executed.append((sql, params))
        if self.connection.fail:
            raise RuntimeError("server went away")
        if sql.startswith("SELECT"):
            self.description = [("value",)]
            self._rows = [(1,)]
            self.rowcount = 1
        else:
            self.rowcount = 2
            self.lastrowid = 9

    def fetchall(self) -> list[tuple]:
        return self._rows

    def close(self) -> None:
        pass


class FakeConnection:
    """Minimal DB-API connection."""

    def __init__(self) -> None:
        self.executed: list[tuple] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.fail = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


class FakePostgres(PostgresDialect):
    """PostgresDialect whose driver connections are fakes."""

    def __init__(self) -> None:
        super().__init__()
        self.connections: list[FakeConnection] = []

    def _create_connection(self, config: ConnectionConfig) -> FakeConnection:
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


@pytest.fixture
def member_columns():
    return MetadataManager().extract_metadata(Member).columns


@pytest.fixture
def fake_pg():
    dialect = FakePostgres()
    dialect.connect(ConnectionConfig(username="app", database="shop", max_open_conns=2, max_idle_conns=1))
    yield dialect
    dialect.close()


class TestPlaceholders:
    """Test placeholder generation."""

    def test_mysql_is_fixed(self) -> None:
        dialect = MySQLDialect()
        assert {dialect.get_placeholder(i) for i in range(10)} == {"?"}

    def test_postgres_is_one_indexed(self) -> None:
        dialect = PostgresDialect()
        assert [dialect.get_placeholder(i) for i in range(3)] == ["$1", "$2", "$3"]

    def test_mocks_follow_their_flavour(self) -> None:
        assert MockDialect().get_placeholder(4) == "?"
        assert MockPostgresDialect().get_placeholder(4) == "$5"


class TestSQLTypes:
    """Test vendor type refinement."""

    def test_mysql_types(self) -> None:
        dialect = MySQLDialect()
        assert dialect.get_sql_type(int) == "INT"
        assert dialect.get_sql_type(bool) == "TINYINT(1)"
        assert dialect.get_sql_type(datetime) == "DATETIME"
        assert dialect.get_sql_type(UnsignedInt) == "INT UNSIGNED"
        assert dialect.get_sql_type(bytes) == "BLOB"

    def test_postgres_types(self) -> None:
        dialect = PostgresDialect()
        assert dialect.get_sql_type(int) == "INTEGER"
        assert dialect.get_sql_type(bool) == "BOOLEAN"
        assert dialect.get_sql_type(float) == "DOUBLE PRECISION"
        assert dialect.get_sql_type(UnsignedInt) == "INTEGER"
        assert dialect.get_sql_type(bytes) == "BYTEA"
        assert dialect.get_sql_type(dict) == "TEXT"


class TestDDL:
    """Test CREATE TABLE generation."""

    def test_mysql_create_table(self, member_columns) -> None:
        sql = MySQLDialect().create_table_sql("members", member_columns)
        assert sql == (
            "CREATE TABLE IF NOT EXISTS members (\n"
            "  id INT NOT NULL AUTO_INCREMENT PRIMARY KEY,\n"
            "  name VARCHAR(100) NOT NULL,\n"
            "  email VARCHAR(255) NOT NULL UNIQUE,\n"
            "  active TINYINT(1) NOT NULL DEFAULT 1,\n"
            "  team_id INT,\n"
            "  joined_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,\n"
            "  FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE SET NULL\n"
            ") ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci"
        )

    def test_postgres_create_table(self, member_columns) -> None:
        sql = PostgresDialect().create_table_sql("members", member_columns)
        assert sql == (
            "CREATE TABLE IF NOT EXISTS members (\n"
            "  id SERIAL NOT NULL PRIMARY KEY,\n"
            "  name VARCHAR(100) NOT NULL,\n"
            "  email VARCHAR(255) NOT NULL UNIQUE,\n"
            "  active BOOLEAN NOT NULL DEFAULT TRUE,\n"
            "  team_id INTEGER REFERENCES teams(id) ON DELETE SET NULL,\n"
            "  joined_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP\n"
            ")"
        )

    def test_string_defaults_are_quoted(self) -> None:
        assert PostgresDialect().format_default("it's") == "'it''s'"
        assert MySQLDialect().format_default("NOW()") == "NOW()"

    def test_table_exists_sql_takes_one_parameter(self) -> None:
        assert MySQLDialect().table_exists_sql().endswith("table_name = ?")
        assert "table_name = $1" in PostgresDialect().table_exists_sql()


class TestVendorHooks:
    """Test the smaller per-vendor SQL hooks."""

    def test_json_extract(self) -> None:
        assert MySQLDialect().json_extract("meta", "a.b") == "JSON_UNQUOTE(JSON_EXTRACT(meta, '$.a.b'))"
        assert PostgresDialect().json_extract("meta", "a.b") == "jsonb_extract_path_text(meta, 'a', 'b')"

    def test_functions_and_quoting(self) -> None:
        assert MySQLDialect().random_function() == "RAND()"
        assert PostgresDialect().random_function() == "RANDOM()"
        assert MySQLDialect().quote_identifier("order") == "`order`"
        assert PostgresDialect().quote_identifier("order") == '"order"'
        assert PostgresDialect().now_function() == "NOW()"


class TestToPyformat:
    """Test placeholder translation to the drivers' %s style."""

    def test_qmark(self) -> None:
        sql, params = to_pyformat("SELECT * FROM t WHERE a = ? AND b = ?", [1, 2], "qmark")
        assert sql == "SELECT * FROM t WHERE a = %s AND b = %s"
        assert params == [1, 2]

    def test_numeric_reorders(self) -> None:
        sql, params = to_pyformat("SELECT * FROM t WHERE a = $2 AND b = $1 OR c = $2", ["x", "y"], "numeric")
        assert sql == "SELECT * FROM t WHERE a = %s AND b = %s OR c = %s"
        assert params == ["y", "x", "y"]

    def test_percent_is_escaped(self) -> None:
        sql, _ = to_pyformat("SELECT * FROM t WHERE name LIKE 'a%' AND id = ?", [1], "qmark")
        assert sql == "SELECT * FROM t WHERE name LIKE 'a%%' AND id = %s"

    def test_quoted_marks_are_literals(self) -> None:
        sql, params = to_pyformat("SELECT '?', '$1', ?", ["v"], "qmark")
        assert sql == "SELECT '?', '$1', %s"
        assert params == ["v"]

    def test_backslash_escapes_quote(self) -> None:
        sql, params = to_pyformat("SELECT * FROM t WHERE a <> 'it\\'s 5%' AND b = ?", [1], "qmark", True)
        assert sql == "SELECT * FROM t WHERE a <> 'it\\'s 5%%' AND b = %s"
        assert params == [1]

    def test_backslash_is_literal_by_default(self) -> None:
        sql, params = to_pyformat("SELECT * FROM t WHERE a <> 'C:\\' AND b = $1", [1], "numeric")
        assert sql == "SELECT * FROM t WHERE a <> 'C:\\' AND b = %s"
        assert params == [1]

    def test_dialect_flags(self) -> None:
        assert MySQLDialect.backslash_escapes
        assert not PostgresDialect.backslash_escapes

    def test_no_args_passes_through(self) -> None:
        assert to_pyformat("SELECT '%'", [], "qmark") == ("SELECT '%'", [])

    def test_count_mismatch(self) -> None:
        with pytest.raises(ExecutionError):
            to_pyformat("SELECT ?", [1, 2], "qmark")
        with pytest.raises(ExecutionError):
            to_pyformat("SELECT $3", [1, 2], "numeric")


class TestFactory:
    """Test the dialect registry."""

    def test_create_known(self) -> None:
        assert isinstance(create_dialect("PostgreSQL"), PostgresDialect)
        assert isinstance(create_dialect("postgres"), PostgresDialect)
        assert isinstance(create_dialect("mysql"), MySQLDialect)
        assert isinstance(create_dialect("mock"), MockDialect)

    def test_unknown(self) -> None:
        with pytest.raises(ConfigurationError, match="unsupported dialect type: oracle"):
            create_dialect("oracle")

    def test_register(self) -> None:
        register_dialect("fakepg", FakePostgres)
        assert isinstance(create_dialect("FAKEPG"), FakePostgres)
        assert "fakepg" in supported_dialects()


class TestConnectionLifecycle:
    """Test pooling and execution through the real dialect plumbing."""

    def test_operations_before_connect(self) -> None:
        dialect = PostgresDialect()
        assert not dialect.is_connected
        with pytest.raises(NotConnectedError, match="not connected"):
            dialect.exec("SELECT 1")
        with pytest.raises(NotConnectedError):
            dialect.begin()

    def test_connect_requires_config(self) -> None:
        with pytest.raises(ConfigurationError):
            PostgresDialect().connect()

    def test_connect_validates_config(self) -> None:
        with pytest.raises(ConfigurationError, match="database name is required"):
            FakePostgres().connect(ConnectionConfig(username="app"))

    def test_connect_pings(self, fake_pg: FakePostgres) -> None:
        assert fake_pg.is_connected
        assert fake_pg.connections[0].executed[0] == ("SELECT 1", None)

    def test_exec_translates_placeholders(self, fake_pg: FakePostgres) -> None:
        result = fake_pg.exec("UPDATE users SET active = $1 WHERE id = $2", True, 7)
        assert result == ExecResult(rows_affected=2, last_insert_id=9)
        assert fake_pg.connections[0].executed[-1] == (
            "UPDATE users SET active = %s WHERE id = %s",
            [True, 7],
        )

    def test_query_returns_dicts(self, fake_pg: FakePostgres) -> None:
        assert fake_pg.query("SELECT value FROM t") == [{"value": 1}]
        assert fake_pg.query_row("SELECT value FROM t") == {"value": 1}

    def test_statements_commit(self, fake_pg: FakePostgres) -> None:
        before = fake_pg.connections[0].commits
        fake_pg.exec("DELETE FROM t")
        assert fake_pg.connections[0].commits == before + 1

    def test_driver_errors_are_wrapped(self, fake_pg: FakePostgres) -> None:
        fake_pg.connections[0].fail = True
        with pytest.raises(ExecutionError) as info:
            fake_pg.exec("DELETE FROM t WHERE id = $1", 1)
        assert isinstance(info.value.__cause__, RuntimeError)
        assert info.value.sql == "DELETE FROM t WHERE id = $1"

    def test_query_log(self, fake_pg: FakePostgres) -> None:
        fake_pg.query_logger = QueryLogger(enabled=True)
        fake_pg.exec("DELETE FROM t WHERE id = $1", 5)
        [entry] = fake_pg.query_logger.entries()
        assert entry.sql == "DELETE FROM t WHERE id = $1"
        assert entry.args == (5,)
        assert entry.error is None

    def test_close_disposes_pool(self, fake_pg: FakePostgres) -> None:
        fake_pg.close()
        assert not fake_pg.is_connected
        assert all(c.closed for c in fake_pg.connections)


class TestTransactions:
    """Test dialect-level transactions."""

    def test_commit_and_finalized(self, fake_pg: FakePostgres) -> None:
        tx = fake_pg.begin()
        assert tx.state is TransactionState.ACTIVE
        tx.exec("INSERT INTO t (a) VALUES ($1)", 1)
        tx.commit()
        assert tx.state is TransactionState.COMMITTED
        with pytest.raises(TransactionError, match="already finalized"):
            tx.rollback()
        with pytest.raises(TransactionError, match="already finalized"):
            tx.exec("SELECT 1")

    def test_rollback_then_commit_fails(self, fake_pg: FakePostgres) -> None:
        tx = fake_pg.begin()
        tx.rollback()
        assert tx.state is TransactionState.ROLLED_BACK
        with pytest.raises(TransactionError, match="already finalized"):
            tx.commit()

    def test_options_are_applied(self, fake_pg: FakePostgres) -> None:
        tx = fake_pg.begin_tx(isolation_level="serializable", read_only=True)
        executed = [sql for c in fake_pg.connections for sql, _ in c.executed]
        assert "SET TRANSACTION ISOLATION LEVEL SERIALIZABLE, READ ONLY" in executed
        tx.rollback()

    def test_invalid_isolation_level(self, fake_pg: FakePostgres) -> None:
        with pytest.raises(TransactionError, match="unsupported isolation level"):
            fake_pg.begin_tx(isolation_level="chaotic")

    def test_deadline_checked_at_begin(self, fake_pg: FakePostgres) -> None:
        with pytest.raises(TransactionError, match="deadline"):
            fake_pg.begin_tx(deadline=time.monotonic() - 1)

    def test_cancel_checked_at_begin(self, fake_pg: FakePostgres) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(TransactionError, match="cancelled"):
            fake_pg.begin_tx(cancel=cancel)


class TestMockDialect:
    """Test the mock dialect's recording and scripting."""

    def test_records_statements(self, mock_dialect: MockDialect) -> None:
        mock_dialect.exec("DELETE FROM t WHERE id = ?", 3)
        assert mock_dialect.statements == [("DELETE FROM t WHERE id = ?", (3,))]

    def test_insert_ids_increase(self, mock_dialect: MockDialect) -> None:
        first = mock_dialect.exec("INSERT INTO t (a) VALUES (?)", 1)
        second = mock_dialect.exec("INSERT INTO t (a) VALUES (?)", 2)
        assert (first.last_insert_id, second.last_insert_id) == (1, 2)
        assert first.rows_affected == 1

    def test_scripted_results(self, mock_dialect: MockDialect) -> None:
        mock_dialect.on("FROM users", [{"id": 1}])
        mock_dialect.add_result([{"n": 2}])
        assert mock_dialect.query("SELECT * FROM users") == [{"id": 1}]
        assert mock_dialect.query("SELECT * FROM users") == [{"id": 1}]
        assert mock_dialect.query("SELECT n FROM other") == [{"n": 2}]
        assert mock_dialect.query("SELECT n FROM other") == []

    def test_injected_errors(self, mock_dialect: MockDialect) -> None:
        mock_dialect.exec_error = RuntimeError("disk full")
        with pytest.raises(ExecutionError, match="disk full"):
            mock_dialect.exec("DELETE FROM t")

    def test_schema_operations(self, mock_dialect: MockDialect) -> None:
        columns = MetadataManager().extract_metadata(Counter).columns
        assert not mock_dialect.table_exists("counters")
        mock_dialect.create_table("counters", columns)
        assert mock_dialect.table_exists("counters")
        assert mock_dialect.last_statement[0].startswith("CREATE TABLE IF NOT EXISTS counters")
        mock_dialect.drop_table("counters")
        assert not mock_dialect.table_exists("counters")
        assert mock_dialect.last_statement[0] == "DROP TABLE IF EXISTS counters"

    def test_not_connected(self) -> None:
        with pytest.raises(NotConnectedError):
            MockDialect().query("SELECT 1")

    def test_returning_generates_keys(self, pg_dialect: MockPostgresDialect) -> None:
        row = pg_dialect.query_row("INSERT INTO t (a) VALUES ($1) RETURNING id", 1)
        assert row == {"id": 1}

    def test_transaction_events(self, mock_dialect: MockDialect) -> None:
        tx = mock_dialect.begin()
        tx.exec("UPDATE t SET a = ?", 1)
        tx.commit()
        assert mock_dialect.events == ["begin", "commit"]
