"""Exception hierarchy for tagorm.

Every exception also derives from the builtin that plain Python code would
raise in the same situation, so ``except ValueError`` and friends keep working.
"""

from __future__ import annotations


class ORMError(Exception):
    """Base class for all tagorm errors."""


class ConfigurationError(ORMError, ValueError):
    """Invalid or incomplete setup: missing dialect, database name, credentials."""


class SchemaError(ORMError, TypeError):
    """A model type or entity cannot be mapped to a table."""


class NotConnectedError(ORMError, RuntimeError):
    """An operation was attempted before ``connect()``."""

    def __init__(self, message: str = "not connected") -> None:
        super().__init__(message)


class ExecutionError(ORMError):
    """A statement failed inside the driver.

    The driver exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, sql: str | None = None) -> None:
        super().__init__(message)
        self.sql = sql


class TransactionError(ORMError):
    """Transaction lifecycle misuse or a failed rollback."""


class UnsupportedOperationError(ORMError, NotImplementedError):
    """The operation is not available in the current context."""


class QueryError(ORMError, ValueError):
    """Invalid input to the query builder or repository."""
