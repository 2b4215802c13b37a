"""Pytest configuration and fixtures."""

import os

import pytest

from tagorm import ORM, MockDialect, MockPostgresDialect


@pytest.fixture
def mock_dialect():
    """A connected mock dialect generating MySQL-style SQL."""
    dialect = MockDialect()
    dialect.connect()
    yield dialect
    dialect.close()


@pytest.fixture
def pg_dialect():
    """A connected mock dialect generating PostgreSQL-style SQL."""
    dialect = MockPostgresDialect()
    dialect.connect()
    yield dialect
    dialect.close()


@pytest.fixture
def mock_orm(mock_dialect):
    """ORM over the MySQL-flavoured mock."""
    return ORM(mock_dialect)


@pytest.fixture
def pg_orm(pg_dialect):
    """ORM over the PostgreSQL-flavoured mock."""
    return ORM(pg_dialect)


@pytest.fixture
def postgres_orm():
    """ORM connected to a real PostgreSQL server.

    Set POSTGRES_URL to run the integration tests; otherwise they are skipped.
    """
    import tagorm

    url = os.environ.get("POSTGRES_URL")
    if not url:
        pytest.skip("POSTGRES_URL not set")

    orm = tagorm.connect(url)
    yield orm
    orm.close()


@pytest.fixture
def mysql_orm():
    """ORM connected to a real MySQL server.

    Set MYSQL_URL to run the integration tests; otherwise they are skipped.
    """
    import tagorm

    url = os.environ.get("MYSQL_URL")
    if not url:
        pytest.skip("MYSQL_URL not set")

    orm = tagorm.connect(url)
    yield orm
    orm.close()
