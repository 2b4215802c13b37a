"""Vendor dialects and the name -> dialect registry."""

from __future__ import annotations

from tagorm.dialects.base import (
    Dialect,
    ExecResult,
    Executor,
    Row,
    Transaction,
    TransactionState,
    to_pyformat,
)
from tagorm.dialects.mock import MockBackend, MockDialect, MockPostgresDialect
from tagorm.dialects.mysql import MySQLDialect
from tagorm.dialects.postgres import PostgresDialect
from tagorm.errors import ConfigurationError

_REGISTRY: dict[str, type[Dialect]] = {
    "mysql": MySQLDialect,
    "postgres": PostgresDialect,
    "postgresql": PostgresDialect,
    "mock": MockDialect,
}


def register_dialect(name: str, dialect_cls: type[Dialect]) -> None:
    """Make ``create_dialect(name)`` return instances of ``dialect_cls``."""
    _REGISTRY[name.lower()] = dialect_cls


def create_dialect(name: str) -> Dialect:
    """Instantiate a dialect by name (case-insensitive).

    Example:
        >>> create_dialect("PostgreSQL")
        <PostgresDialect disconnected>
    """
    dialect_cls = _REGISTRY.get(name.strip().lower())
    if dialect_cls is None:
        raise ConfigurationError(f"unsupported dialect type: {name}")
    return dialect_cls()


def supported_dialects() -> list[str]:
    return sorted(_REGISTRY)


__all__ = [
    "Dialect",
    "ExecResult",
    "Executor",
    "MockBackend",
    "MockDialect",
    "MockPostgresDialect",
    "MySQLDialect",
    "PostgresDialect",
    "Row",
    "Transaction",
    "TransactionState",
    "create_dialect",
    "register_dialect",
    "supported_dialects",
    "to_pyformat",
]
