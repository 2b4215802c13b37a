"""MySQL dialect backed by PyMySQL."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from tagorm.config import ConnectionConfig
from tagorm.dialects.base import Dialect

if TYPE_CHECKING:
    from tagorm.metadata import Column

_TYPE_MAP = {
    "BOOLEAN": "TINYINT(1)",
    "TIMESTAMP": "DATETIME",
}


class MySQLDialect(Dialect):
    """MySQL / MariaDB.

    Placeholders are always ``?``; generated keys come back through the
    cursor's last insert id.
    """

    name = "mysql"
    supports_returning = False
    placeholder_style = "qmark"
    backslash_escapes = True
    default_schema_clause = "ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci"

    def _create_connection(self, config: ConnectionConfig) -> Any:
        import pymysql

        kwargs: dict[str, Any] = {
            "host": config.host,
            "port": config.port_for(self.name),
            "user": config.username,
            "password": config.password,
            "database": config.database,
            "charset": config.charset,
            "autocommit": False,
            "connect_timeout": config.connect_timeout,
        }
        if config.query_timeout:
            kwargs["read_timeout"] = config.query_timeout
            kwargs["write_timeout"] = config.query_timeout
        if config.ssl_mode:
            mode = config.ssl_mode.lower()
            if mode in ("disable", "disabled", "false"):
                kwargs["ssl_disabled"] = True
            else:
                kwargs["ssl"] = {"check_hostname": mode in ("verify-full", "verify_identity")}
        return pymysql.connect(**kwargs)

    def table_exists_sql(self) -> str:
        return (
            "SELECT COUNT(*) FROM information_schema.tables "
            "WHERE table_schema = DATABASE() AND table_name = ?"
        )

    def get_placeholder(self, index: int) -> str:
        return "?"

    def refine_type(self, generic: str) -> str:
        return _TYPE_MAP.get(generic, generic)

    def format_default(self, value: Any) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        return super().format_default(value)

    def column_definition(self, column: Column) -> str:
        parts = [f"{column.name} {self.column_type(column)}"]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.auto_increment:
            parts.append("AUTO_INCREMENT")
        if column.default is not None:
            parts.append(f"DEFAULT {self.format_default(column.default)}")
        if column.primary_key:
            parts.append("PRIMARY KEY")
        if column.unique:
            parts.append("UNIQUE")
        return " ".join(parts)

    def table_constraints(self, columns: Sequence[Column]) -> list[str]:
        # InnoDB ignores inline REFERENCES, so foreign keys go last
        constraints = []
        for column in columns:
            fk = column.foreign_key
            if fk is None:
                continue
            clause = f"FOREIGN KEY ({column.name}) REFERENCES {fk.table}({fk.column})"
            if fk.ondelete:
                clause += f" ON DELETE {fk.ondelete}"
            if fk.onupdate:
                clause += f" ON UPDATE {fk.onupdate}"
            constraints.append(clause)
        return constraints

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def full_text_search(self, fields: Sequence[str], placeholder: str) -> str:
        return f"MATCH({', '.join(fields)}) AGAINST({placeholder} IN BOOLEAN MODE)"

    def json_extract(self, column: str, path: str) -> str:
        return f"JSON_UNQUOTE(JSON_EXTRACT({column}, '$.{path}'))"
