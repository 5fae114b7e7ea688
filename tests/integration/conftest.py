"""
Shared pytest fixtures for integration tests.

This module provides a PostgreSQL database through testcontainers and a
file-backed SQLite database. If testcontainers or Docker is not
available, the PostgreSQL tests are skipped.
"""

from __future__ import annotations

import subprocess
from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import pytest
import pytest_asyncio

from objmigrate.schema import get_schema, get_statements

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (may require docker)"
    )
    config.addinivalue_line("markers", "postgres: marks tests that require PostgreSQL")
    config.addinivalue_line("markers", "e2e: marks tests as end-to-end integration tests")


# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    try:
        result = subprocess.run(["docker", "info"], capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()

MIGRATION_TABLES = ("migration_runs", "migration_checkpoints", "migration_locks")


# ============================================================================
# PostgreSQL Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Provide a PostgreSQL container shared by the whole session.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("PostgreSQL testcontainer not available")

    container = PostgresContainer("postgres:15")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def postgres_connection_url(postgres_container: Any) -> str:
    """Get PostgreSQL connection URL from container."""
    # testcontainers returns psycopg2 URL, convert to asyncpg
    url = postgres_container.get_connection_url()
    return url.replace("postgresql://", "postgresql+asyncpg://").replace("psycopg2", "asyncpg")


@pytest_asyncio.fixture
async def postgres_engine(postgres_connection_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """
    SQLAlchemy async engine with the objmigrate schema applied and the
    migration tables emptied before each test.
    """
    from sqlalchemy import text
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(postgres_connection_url, echo=False, pool_size=5)

    # asyncpg rejects multi-statement strings
    async with engine.begin() as conn:
        for statement in get_statements("postgresql"):
            await conn.execute(text(statement))
        await conn.execute(text(f"TRUNCATE TABLE {', '.join(MIGRATION_TABLES)}"))

    yield engine

    await engine.dispose()


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_file_connection(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """aiosqlite connection to a database file with the schema applied."""
    conn = await aiosqlite.connect(tmp_path / "objmigrate.db")
    conn.row_factory = aiosqlite.Row
    await conn.executescript(get_schema("sqlite"))

    yield conn

    await conn.close()
