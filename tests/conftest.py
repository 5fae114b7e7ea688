"""
Shared pytest fixtures for the objmigrate tests.

This module provides:
- Configuration fixtures (fast_config)
- Storage fixtures (source, target, metadata_factory)
- Store and service fixtures (run_state, checkpoints, lock_manager, ...)
- Runner fixtures (runner, create_run)
- SQLite fixtures (sqlite_connection)

Every component is built with tracing disabled unless a test passes a
MockTracer explicitly.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from objmigrate.changelog import InMemoryChangeLogSink
from objmigrate.checkpoints import CheckpointManager
from objmigrate.config import EngineConfig
from objmigrate.locks import LockManager
from objmigrate.models import MigrationRun
from objmigrate.repositories import (
    InMemoryCheckpointStore,
    InMemoryLockStore,
    InMemoryRunStateRepository,
)
from objmigrate.runner import BatchRunner
from objmigrate.runs import RunStateService
from objmigrate.schema import get_schema
from objmigrate.storage import InMemoryStorageProvider, ObjectMetadata

SOURCE_OBJECT_COUNT = 250

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that use an SQLite database")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def fast_config() -> EngineConfig:
    """
    Engine configuration tuned for tests.

    No retry delay and short lock timeouts, so failure paths finish in
    milliseconds.
    """
    return EngineConfig(
        retry_delay_ms=0,
        lock_acquire_timeout_seconds=0.1,
        lock_retry_interval_seconds=0.02,
        lock_refresh_interval_seconds=60.0,
        poll_interval_seconds=0.01,
    )


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def metadata_factory() -> Callable[..., ObjectMetadata]:
    """
    Factory for ObjectMetadata values.

    Example:
        def test_something(metadata_factory):
            obj = metadata_factory("photos/a.jpg", size=2048)
    """

    def _create(path: str, size: int = 0, **kwargs: Any) -> ObjectMetadata:
        kwargs.setdefault("last_modified", datetime(2024, 1, 1, tzinfo=UTC))
        return ObjectMetadata(path=path, size=size, **kwargs)

    return _create


@pytest_asyncio.fixture
async def source() -> InMemoryStorageProvider:
    """
    Source provider holding 250 objects under ``photos/``.

    Keys are ``photos/0000.jpg`` to ``photos/0249.jpg``; the in-memory
    provider's optimal batch size is 100.
    """
    provider = InMemoryStorageProvider("source", enable_tracing=False)
    for index in range(SOURCE_OBJECT_COUNT):
        await provider.write(f"photos/{index:04d}.jpg", f"object-{index}".encode())
    provider.writes = 0
    return provider


@pytest.fixture
def target() -> InMemoryStorageProvider:
    """Empty target provider."""
    return InMemoryStorageProvider("target", enable_tracing=False)


# ============================================================================
# Store and Service Fixtures
# ============================================================================


@pytest.fixture
def run_repository() -> InMemoryRunStateRepository:
    return InMemoryRunStateRepository(enable_tracing=False)


@pytest.fixture
def run_state(run_repository: InMemoryRunStateRepository) -> RunStateService:
    """Run state service without a liveness probe."""
    return RunStateService(run_repository, enable_tracing=False)


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore(enable_tracing=False)


@pytest.fixture
def checkpoints(checkpoint_store: InMemoryCheckpointStore) -> CheckpointManager:
    return CheckpointManager(checkpoint_store, enable_tracing=False)


@pytest.fixture
def lock_store() -> InMemoryLockStore:
    return InMemoryLockStore(enable_tracing=False)


@pytest.fixture
def lock_manager(lock_store: InMemoryLockStore) -> LockManager:
    """Lock manager with a fixed holder identity."""
    return LockManager(lock_store, holder_id="test-host:1000", enable_tracing=False)


@pytest.fixture
def changelog_sink() -> InMemoryChangeLogSink:
    return InMemoryChangeLogSink()


# ============================================================================
# Runner Fixtures
# ============================================================================


@pytest.fixture
def runner(
    source: InMemoryStorageProvider,
    target: InMemoryStorageProvider,
    run_state: RunStateService,
    checkpoints: CheckpointManager,
    lock_manager: LockManager,
    changelog_sink: InMemoryChangeLogSink,
    fast_config: EngineConfig,
) -> BatchRunner:
    """BatchRunner wired to the in-memory fixtures."""
    return BatchRunner(
        source,
        target,
        run_state,
        checkpoints,
        lock_manager,
        config=fast_config,
        changelog=changelog_sink,
        enable_tracing=False,
    )


@pytest.fixture
def create_run(run_state: RunStateService) -> Callable[..., Awaitable[MigrationRun]]:
    """
    Factory creating pending run records with unique ids.

    Example:
        async def test_something(create_run):
            run = await create_run(dry_run=True)
    """
    counter = itertools.count(1)

    async def _create(run_id: str | None = None, **kwargs: Any) -> MigrationRun:
        return await run_state.create(
            run_id or f"migration-test-{next(counter)}",
            "migration/run",
            **kwargs,
        )

    return _create


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Provide an aiosqlite connection to an in-memory database with the
    objmigrate schema applied.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await conn.executescript(get_schema("sqlite"))

    yield conn

    await conn.close()
