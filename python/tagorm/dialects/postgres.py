"""PostgreSQL dialect backed by psycopg 3."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from tagorm.config import ConnectionConfig
from tagorm.dialects.base import Dialect

if TYPE_CHECKING:
    from tagorm.metadata import Column

_TYPE_MAP = {
    "INT": "INTEGER",
    "INT UNSIGNED": "INTEGER",
    "BIGINT UNSIGNED": "BIGINT",
    "FLOAT": "REAL",
    "DOUBLE": "DOUBLE PRECISION",
    "BLOB": "BYTEA",
}


class PostgresDialect(Dialect):
    """PostgreSQL.

    Placeholders are numbered (``$1``, ``$2``, ...). Auto-increment columns
    become SERIAL/BIGSERIAL and inserts read generated keys via RETURNING.
    """

    name = "postgres"
    supports_returning = True
    placeholder_style = "numeric"

    def _create_connection(self, config: ConnectionConfig) -> Any:
        import psycopg

        kwargs: dict[str, Any] = {
            "host": config.host,
            "port": config.port_for(self.name),
            "user": config.username,
            "password": config.password,
            "dbname": config.database,
            "connect_timeout": int(config.connect_timeout),
            "autocommit": False,
        }
        if config.ssl_mode:
            kwargs["sslmode"] = config.ssl_mode
        if config.query_timeout:
            kwargs["options"] = f"-c statement_timeout={int(config.query_timeout * 1000)}"
        return psycopg.connect(**kwargs)

    def table_exists_sql(self) -> str:
        return (
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = $1)"
        )

    def get_placeholder(self, index: int) -> str:
        return f"${index + 1}"

    def refine_type(self, generic: str) -> str:
        return _TYPE_MAP.get(generic, generic)

    def column_type(self, column: Column) -> str:
        if column.auto_increment:
            return "BIGSERIAL" if column.type.startswith("BIGINT") else "SERIAL"
        return super().column_type(column)

    def column_definition(self, column: Column) -> str:
        parts = [f"{column.name} {self.column_type(column)}"]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.default is not None:
            parts.append(f"DEFAULT {self.format_default(column.default)}")
        if column.primary_key:
            parts.append("PRIMARY KEY")
        if column.unique:
            parts.append("UNIQUE")
        fk = column.foreign_key
        if fk is not None:
            clause = f"REFERENCES {fk.table}({fk.column})"
            if fk.ondelete:
                clause += f" ON DELETE {fk.ondelete}"
            if fk.onupdate:
                clause += f" ON UPDATE {fk.onupdate}"
            parts.append(clause)
        return " ".join(parts)

    def full_text_search(self, fields: Sequence[str], placeholder: str) -> str:
        document = " || ' ' || ".join(f"coalesce({f}, '')" for f in fields)
        return f"to_tsvector('english', {document}) @@ plainto_tsquery('english', {placeholder})"

    def regexp_operator(self, negate: bool = False) -> str:
        return "!~" if negate else "~"

    def random_function(self) -> str:
        return "RANDOM()"

    def json_extract(self, column: str, path: str) -> str:
        keys = ", ".join("'" + key.replace("'", "''") + "'" for key in path.split("."))
        return f"jsonb_extract_path_text({column}, {keys})"
