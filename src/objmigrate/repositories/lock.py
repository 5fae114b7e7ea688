"""
Lease-based migration lock storage.

A lock is one row in ``migration_locks`` keyed by lock name. Acquisition is
a single conditional upsert: it succeeds when the row is absent, its lease
has expired, or it is already held by the same run (re-acquisition on
resume extends the lease).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from objmigrate.models import format_timestamp, parse_timestamp, utcnow
from objmigrate.observability import (
    ATTR_LOCK_HOLDER,
    ATTR_LOCK_NAME,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from objmigrate.repositories._connection import execute_with_connection

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockLease:
    """
    A held (or observed) migration lock.

    Attributes:
        lock_name: Lock identifier (one lock per name).
        run_id: Run that holds the lock.
        holder_id: Worker identity (hostname:pid).
        acquired_at: When the lease was first taken.
        expires_at: When the lease lapses unless refreshed.
    """

    lock_name: str
    run_id: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if not self.lock_name:
            raise ValueError("lock_name must not be empty")
        if self.expires_at <= self.acquired_at:
            raise ValueError("expires_at must be after acquired_at")

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def age_seconds(self, now: datetime | None = None) -> float:
        return max(0.0, ((now or utcnow()) - self.acquired_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "lock_name": self.lock_name,
            "run_id": self.run_id,
            "holder_id": self.holder_id,
            "acquired_at": format_timestamp(self.acquired_at),
            "expires_at": format_timestamp(self.expires_at),
        }


def _row_to_lease(row: Any) -> LockLease:
    return LockLease(
        lock_name=row[0],
        run_id=row[1],
        holder_id=row[2],
        acquired_at=parse_timestamp(row[3]),  # type: ignore[arg-type]
        expires_at=parse_timestamp(row[4]),  # type: ignore[arg-type]
    )


@runtime_checkable
class LockStore(Protocol):
    """Protocol for lock lease persistence."""

    async def try_acquire(self, lease: LockLease) -> bool:
        """Atomically take the lock if free, expired or held by the same run."""
        ...

    async def current(self, lock_name: str) -> LockLease | None:
        """The stored lease for ``lock_name``, expired or not."""
        ...

    async def extend(self, lock_name: str, run_id: str, expires_at: datetime) -> bool:
        """Push the expiry of a lease held by ``run_id``; False if not held."""
        ...

    async def release(self, lock_name: str, run_id: str) -> bool:
        """Delete the lease if held by ``run_id``; False if it was not."""
        ...

    async def purge_expired(self, now: datetime) -> int:
        """Delete every lease that expired at or before ``now``."""
        ...


class InMemoryLockStore:
    """In-memory lock store; acquisition is serialized by an asyncio.Lock."""

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._leases: dict[str, LockLease] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, lease: LockLease) -> bool:
        with self._tracer.span(
            "objmigrate.lock_store.try_acquire",
            {
                ATTR_LOCK_NAME: lease.lock_name,
                ATTR_RUN_ID: lease.run_id,
                ATTR_LOCK_HOLDER: lease.holder_id,
            },
        ):
            async with self._lock:
                existing = self._leases.get(lease.lock_name)
                if (
                    existing is None
                    or existing.is_expired(lease.acquired_at)
                    or existing.run_id == lease.run_id
                ):
                    self._leases[lease.lock_name] = lease
                    return True
                return False

    async def current(self, lock_name: str) -> LockLease | None:
        async with self._lock:
            return self._leases.get(lock_name)

    async def extend(self, lock_name: str, run_id: str, expires_at: datetime) -> bool:
        async with self._lock:
            existing = self._leases.get(lock_name)
            if existing is None or existing.run_id != run_id:
                return False
            self._leases[lock_name] = LockLease(
                lock_name=lock_name,
                run_id=run_id,
                holder_id=existing.holder_id,
                acquired_at=existing.acquired_at,
                expires_at=expires_at,
            )
            return True

    async def release(self, lock_name: str, run_id: str) -> bool:
        async with self._lock:
            existing = self._leases.get(lock_name)
            if existing is None or existing.run_id != run_id:
                return False
            del self._leases[lock_name]
            return True

    async def purge_expired(self, now: datetime) -> int:
        async with self._lock:
            doomed = [name for name, lease in self._leases.items() if lease.is_expired(now)]
            for name in doomed:
                del self._leases[name]
        return len(doomed)


class SQLiteLockStore:
    """
    SQLite lock store.

    The conditional upsert relies on SQLite's single-writer model for
    atomicity; timestamps are fixed-width UTC text so the expiry comparison
    is a string comparison.
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    async def try_acquire(self, lease: LockLease) -> bool:
        with self._tracer.span(
            "objmigrate.lock_store.try_acquire",
            {
                ATTR_LOCK_NAME: lease.lock_name,
                ATTR_RUN_ID: lease.run_id,
                ATTR_LOCK_HOLDER: lease.holder_id,
            },
        ):
            await self._connection.execute(
                """
                INSERT INTO migration_locks
                    (lock_name, run_id, holder_id, acquired_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(lock_name) DO UPDATE SET
                    run_id = excluded.run_id,
                    holder_id = excluded.holder_id,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                WHERE migration_locks.expires_at <= excluded.acquired_at
                   OR migration_locks.run_id = excluded.run_id
                """,
                (
                    lease.lock_name,
                    lease.run_id,
                    lease.holder_id,
                    format_timestamp(lease.acquired_at),
                    format_timestamp(lease.expires_at),
                ),
            )
            await self._connection.commit()
            stored = await self.current(lease.lock_name)
            return (
                stored is not None
                and stored.run_id == lease.run_id
                and stored.holder_id == lease.holder_id
            )

    async def current(self, lock_name: str) -> LockLease | None:
        cursor = await self._connection.execute(
            """
            SELECT lock_name, run_id, holder_id, acquired_at, expires_at
            FROM migration_locks
            WHERE lock_name = ?
            """,
            (lock_name,),
        )
        row = await cursor.fetchone()
        return _row_to_lease(row) if row else None

    async def extend(self, lock_name: str, run_id: str, expires_at: datetime) -> bool:
        cursor = await self._connection.execute(
            "UPDATE migration_locks SET expires_at = ? WHERE lock_name = ? AND run_id = ?",
            (format_timestamp(expires_at), lock_name, run_id),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def release(self, lock_name: str, run_id: str) -> bool:
        cursor = await self._connection.execute(
            "DELETE FROM migration_locks WHERE lock_name = ? AND run_id = ?",
            (lock_name, run_id),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def purge_expired(self, now: datetime) -> int:
        cursor = await self._connection.execute(
            "DELETE FROM migration_locks WHERE expires_at <= ?",
            (format_timestamp(now),),
        )
        await self._connection.commit()
        return cursor.rowcount


class PostgreSQLLockStore:
    """PostgreSQL lock store (SQLAlchemy async, conditional upsert with RETURNING)."""

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def try_acquire(self, lease: LockLease) -> bool:
        with self._tracer.span(
            "objmigrate.lock_store.try_acquire",
            {
                ATTR_LOCK_NAME: lease.lock_name,
                ATTR_RUN_ID: lease.run_id,
                ATTR_LOCK_HOLDER: lease.holder_id,
            },
        ):
            query = text("""
                INSERT INTO migration_locks
                    (lock_name, run_id, holder_id, acquired_at, expires_at)
                VALUES (:lock_name, :run_id, :holder_id, :acquired_at, :expires_at)
                ON CONFLICT (lock_name) DO UPDATE SET
                    run_id = EXCLUDED.run_id,
                    holder_id = EXCLUDED.holder_id,
                    acquired_at = EXCLUDED.acquired_at,
                    expires_at = EXCLUDED.expires_at
                WHERE migration_locks.expires_at <= EXCLUDED.acquired_at
                   OR migration_locks.run_id = EXCLUDED.run_id
                RETURNING run_id
            """)
            params = {
                "lock_name": lease.lock_name,
                "run_id": lease.run_id,
                "holder_id": lease.holder_id,
                "acquired_at": lease.acquired_at,
                "expires_at": lease.expires_at,
            }
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, params)
                return result.fetchone() is not None

    async def current(self, lock_name: str) -> LockLease | None:
        query = text("""
            SELECT lock_name, run_id, holder_id, acquired_at, expires_at
            FROM migration_locks
            WHERE lock_name = :lock_name
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"lock_name": lock_name})
            row = result.fetchone()
            return _row_to_lease(row) if row else None

    async def extend(self, lock_name: str, run_id: str, expires_at: datetime) -> bool:
        query = text("""
            UPDATE migration_locks SET expires_at = :expires_at
            WHERE lock_name = :lock_name AND run_id = :run_id
        """)
        params = {"expires_at": expires_at, "lock_name": lock_name, "run_id": run_id}
        async with execute_with_connection(self.conn) as conn:
            result = await conn.execute(query, params)
            return result.rowcount > 0

    async def release(self, lock_name: str, run_id: str) -> bool:
        query = text("""
            DELETE FROM migration_locks
            WHERE lock_name = :lock_name AND run_id = :run_id
        """)
        async with execute_with_connection(self.conn) as conn:
            result = await conn.execute(query, {"lock_name": lock_name, "run_id": run_id})
            return result.rowcount > 0

    async def purge_expired(self, now: datetime) -> int:
        query = text("DELETE FROM migration_locks WHERE expires_at <= :now")
        async with execute_with_connection(self.conn) as conn:
            result = await conn.execute(query, {"now": now})
            return result.rowcount


__all__ = [
    "LockLease",
    "LockStore",
    "InMemoryLockStore",
    "SQLiteLockStore",
    "PostgreSQLLockStore",
]
