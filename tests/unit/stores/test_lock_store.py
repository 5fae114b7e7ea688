"""
Unit tests for the lock lease stores (in-memory and SQLite).
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import aiosqlite
import pytest
import pytest_asyncio

from objmigrate.repositories import (
    InMemoryLockStore,
    LockLease,
    LockStore,
    SQLiteLockStore,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
LEASE = timedelta(minutes=10)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(
    request: pytest.FixtureRequest, sqlite_connection: aiosqlite.Connection
) -> LockStore:
    if request.param == "memory":
        return InMemoryLockStore(enable_tracing=False)
    return SQLiteLockStore(sqlite_connection, enable_tracing=False)


def lease(run_id: str, *, at: datetime = T0, holder: str = "host-a:1") -> LockLease:
    return LockLease(
        lock_name="full-migration",
        run_id=run_id,
        holder_id=holder,
        acquired_at=at,
        expires_at=at + LEASE,
    )


class TestLockLease:
    def test_validation(self) -> None:
        with pytest.raises(ValueError):
            LockLease("", "r", "h", T0, T0 + LEASE)
        with pytest.raises(ValueError):
            LockLease("n", "r", "h", T0, T0)

    def test_expiry_and_age(self) -> None:
        held = lease("run-1")

        assert not held.is_expired(T0 + timedelta(minutes=5))
        assert held.is_expired(T0 + LEASE)
        assert held.age_seconds(T0 + timedelta(seconds=90)) == 90.0


class TestTryAcquire:
    @pytest.mark.asyncio
    async def test_free_lock(self, store: LockStore) -> None:
        assert await store.try_acquire(lease("run-1"))

        current = await store.current("full-migration")
        assert current is not None
        assert current.run_id == "run-1"

    @pytest.mark.asyncio
    async def test_held_lock_is_exclusive(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))

        acquired = await store.try_acquire(
            lease("run-2", at=T0 + timedelta(minutes=1), holder="host-b:2")
        )

        assert acquired is False
        current = await store.current("full-migration")
        assert current is not None
        assert current.run_id == "run-1"

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))

        acquired = await store.try_acquire(lease("run-2", at=T0 + LEASE, holder="host-b:2"))

        assert acquired is True
        current = await store.current("full-migration")
        assert current is not None
        assert current.holder_id == "host-b:2"

    @pytest.mark.asyncio
    async def test_same_run_reacquires_and_extends(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))
        later = T0 + timedelta(minutes=3)

        assert await store.try_acquire(lease("run-1", at=later, holder="host-c:3"))

        current = await store.current("full-migration")
        assert current is not None
        assert current.expires_at == later + LEASE


class TestExtendAndRelease:
    @pytest.mark.asyncio
    async def test_extend_by_holder(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))
        new_expiry = T0 + timedelta(hours=1)

        assert await store.extend("full-migration", "run-1", new_expiry)

        current = await store.current("full-migration")
        assert current is not None
        assert current.expires_at == new_expiry
        assert current.acquired_at == T0

    @pytest.mark.asyncio
    async def test_extend_by_other_run(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))

        assert not await store.extend("full-migration", "run-2", T0 + timedelta(hours=1))
        assert not await store.extend("other-lock", "run-1", T0 + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_release(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))

        assert not await store.release("full-migration", "run-2")
        assert await store.release("full-migration", "run-1")
        assert await store.current("full-migration") is None
        assert not await store.release("full-migration", "run-1")

    @pytest.mark.asyncio
    async def test_purge_expired(self, store: LockStore) -> None:
        await store.try_acquire(lease("run-1"))
        other = LockLease("nightly", "run-9", "h", T0 + LEASE, T0 + 3 * LEASE)
        await store.try_acquire(other)

        assert await store.purge_expired(T0 + 2 * LEASE) == 1
        assert await store.current("full-migration") is None
        assert await store.current("nightly") == other
