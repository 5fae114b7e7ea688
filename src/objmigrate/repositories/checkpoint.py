"""
Checkpoint repository for resumable runs.

Checkpoints are append-only snapshots; the newest checkpoint of a run
(highest insertion sequence) is its resume point.

Implementations:
    - InMemoryCheckpointStore: for tests and single-process use
    - SQLiteCheckpointStore: aiosqlite, table ``migration_checkpoints``
    - PostgreSQLCheckpointStore: SQLAlchemy async, same table
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from objmigrate.models import Checkpoint, RunPhase, format_timestamp, parse_timestamp
from objmigrate.observability import (
    ATTR_CHECKPOINT_ID,
    ATTR_PROCESSED_COUNT,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from objmigrate.repositories._connection import execute_with_connection
from objmigrate.serialization import json_dumps, json_loads

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

_COLUMNS = (
    "checkpoint_id, run_id, phase, cursor, processed_count, total_count, "
    "batch_number, stats, errors, version, created_at"
)


def _row_to_checkpoint(row: Any) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=row[0],
        run_id=row[1],
        phase=RunPhase(row[2]),
        cursor=row[3],
        processed_count=int(row[4]),
        total_count=int(row[5]),
        batch_number=int(row[6]),
        stats=json_loads(row[7]) or {},
        errors=json_loads(row[8]) or [],
        version=row[9],
        created_at=parse_timestamp(row[10]),  # type: ignore[arg-type]
    )


@runtime_checkable
class CheckpointStore(Protocol):
    """Protocol for checkpoint persistence."""

    async def save(self, checkpoint: Checkpoint) -> None:
        """Persist a new checkpoint."""
        ...

    async def load_latest(self, run_id: str) -> Checkpoint | None:
        """Newest checkpoint of a run, or None."""
        ...

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        """A specific checkpoint, or None."""
        ...

    async def list_for_run(self, run_id: str) -> list[Checkpoint]:
        """All checkpoints of a run, newest first."""
        ...

    async def list_runs(self) -> list[str]:
        """Run ids that have at least one checkpoint."""
        ...

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete checkpoints created before ``cutoff``; returns the count."""
        ...

    async def delete_for_run(self, run_id: str) -> int:
        """Delete all checkpoints of a run; returns the count."""
        ...


class InMemoryCheckpointStore:
    """
    In-memory checkpoint store.

    Example:
        >>> store = InMemoryCheckpointStore()
        >>> await store.save(checkpoint)
        >>> latest = await store.load_latest(checkpoint.run_id)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._by_run: dict[str, list[Checkpoint]] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> None:
        with self._tracer.span(
            "objmigrate.checkpoint.save",
            {
                ATTR_RUN_ID: checkpoint.run_id,
                ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id,
                ATTR_PROCESSED_COUNT: checkpoint.processed_count,
            },
        ):
            async with self._lock:
                self._by_run.setdefault(checkpoint.run_id, []).append(checkpoint)

    async def load_latest(self, run_id: str) -> Checkpoint | None:
        async with self._lock:
            checkpoints = self._by_run.get(run_id)
            return checkpoints[-1] if checkpoints else None

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        async with self._lock:
            for checkpoints in self._by_run.values():
                for checkpoint in checkpoints:
                    if checkpoint.checkpoint_id == checkpoint_id:
                        return checkpoint
            return None

    async def list_for_run(self, run_id: str) -> list[Checkpoint]:
        async with self._lock:
            return list(reversed(self._by_run.get(run_id, [])))

    async def list_runs(self) -> list[str]:
        async with self._lock:
            return sorted(run_id for run_id, items in self._by_run.items() if items)

    async def purge_older_than(self, cutoff: datetime) -> int:
        removed = 0
        async with self._lock:
            for run_id in list(self._by_run):
                kept = [c for c in self._by_run[run_id] if c.created_at >= cutoff]
                removed += len(self._by_run[run_id]) - len(kept)
                if kept:
                    self._by_run[run_id] = kept
                else:
                    del self._by_run[run_id]
        return removed

    async def delete_for_run(self, run_id: str) -> int:
        async with self._lock:
            return len(self._by_run.pop(run_id, []))

    async def clear(self) -> None:
        async with self._lock:
            self._by_run.clear()


class SQLiteCheckpointStore:
    """
    SQLite checkpoint store.

    SQLite-specific adaptations:
    - Timestamps stored as fixed-width UTC ISO 8601 TEXT
    - stats/errors stored as JSON TEXT
    - Insertion order from an AUTOINCREMENT ``seq`` column

    Example:
        >>> async with aiosqlite.connect("migration.db") as db:
        ...     store = SQLiteCheckpointStore(db)
        ...     await store.save(checkpoint)
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

    async def save(self, checkpoint: Checkpoint) -> None:
        with self._tracer.span(
            "objmigrate.checkpoint.save",
            {
                ATTR_RUN_ID: checkpoint.run_id,
                ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id,
                ATTR_PROCESSED_COUNT: checkpoint.processed_count,
            },
        ):
            await self._connection.execute(
                f"""
                INSERT INTO migration_checkpoints ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.checkpoint_id,
                    checkpoint.run_id,
                    checkpoint.phase.value,
                    checkpoint.cursor,
                    checkpoint.processed_count,
                    checkpoint.total_count,
                    checkpoint.batch_number,
                    json_dumps(checkpoint.stats),
                    json_dumps(checkpoint.errors),
                    checkpoint.version,
                    format_timestamp(checkpoint.created_at),
                ),
            )
            await self._connection.commit()

    async def load_latest(self, run_id: str) -> Checkpoint | None:
        cursor = await self._connection.execute(
            f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            WHERE run_id = ?
            ORDER BY seq DESC
            LIMIT 1
            """,
            (run_id,),
        )
        row = await cursor.fetchone()
        return _row_to_checkpoint(row) if row else None

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        cursor = await self._connection.execute(
            f"SELECT {_COLUMNS} FROM migration_checkpoints WHERE checkpoint_id = ?",
            (checkpoint_id,),
        )
        row = await cursor.fetchone()
        return _row_to_checkpoint(row) if row else None

    async def list_for_run(self, run_id: str) -> list[Checkpoint]:
        cursor = await self._connection.execute(
            f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            WHERE run_id = ?
            ORDER BY seq DESC
            """,
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_checkpoint(row) for row in rows]

    async def list_runs(self) -> list[str]:
        cursor = await self._connection.execute(
            "SELECT DISTINCT run_id FROM migration_checkpoints ORDER BY run_id"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def purge_older_than(self, cutoff: datetime) -> int:
        cursor = await self._connection.execute(
            "DELETE FROM migration_checkpoints WHERE created_at < ?",
            (format_timestamp(cutoff),),
        )
        await self._connection.commit()
        return cursor.rowcount

    async def delete_for_run(self, run_id: str) -> int:
        cursor = await self._connection.execute(
            "DELETE FROM migration_checkpoints WHERE run_id = ?",
            (run_id,),
        )
        await self._connection.commit()
        return cursor.rowcount


class PostgreSQLCheckpointStore:
    """
    PostgreSQL checkpoint store.

    Example:
        >>> store = PostgreSQLCheckpointStore(engine)
        >>> await store.save(checkpoint)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def save(self, checkpoint: Checkpoint) -> None:
        with self._tracer.span(
            "objmigrate.checkpoint.save",
            {
                ATTR_RUN_ID: checkpoint.run_id,
                ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id,
                ATTR_PROCESSED_COUNT: checkpoint.processed_count,
            },
        ):
            query = text(f"""
                INSERT INTO migration_checkpoints ({_COLUMNS})
                VALUES (:checkpoint_id, :run_id, :phase, :cursor, :processed_count,
                        :total_count, :batch_number, CAST(:stats AS JSONB),
                        CAST(:errors AS JSONB), :version, :created_at)
            """)
            params = {
                "checkpoint_id": checkpoint.checkpoint_id,
                "run_id": checkpoint.run_id,
                "phase": checkpoint.phase.value,
                "cursor": checkpoint.cursor,
                "processed_count": checkpoint.processed_count,
                "total_count": checkpoint.total_count,
                "batch_number": checkpoint.batch_number,
                "stats": json_dumps(checkpoint.stats),
                "errors": json_dumps(checkpoint.errors),
                "version": checkpoint.version,
                "created_at": checkpoint.created_at,
            }
            async with execute_with_connection(self.conn) as conn:
                await conn.execute(query, params)

    async def load_latest(self, run_id: str) -> Checkpoint | None:
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            WHERE run_id = :run_id
            ORDER BY seq DESC
            LIMIT 1
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            row = result.fetchone()
            return _row_to_checkpoint(row) if row else None

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            WHERE checkpoint_id = :checkpoint_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"checkpoint_id": checkpoint_id})
            row = result.fetchone()
            return _row_to_checkpoint(row) if row else None

    async def list_for_run(self, run_id: str) -> list[Checkpoint]:
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            WHERE run_id = :run_id
            ORDER BY seq DESC
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            return [_row_to_checkpoint(row) for row in result.fetchall()]

    async def list_runs(self) -> list[str]:
        query = text("SELECT DISTINCT run_id FROM migration_checkpoints ORDER BY run_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            return [row[0] for row in result.fetchall()]

    async def purge_older_than(self, cutoff: datetime) -> int:
        query = text("DELETE FROM migration_checkpoints WHERE created_at < :cutoff")
        async with execute_with_connection(self.conn) as conn:
            result = await conn.execute(query, {"cutoff": cutoff})
            return result.rowcount

    async def delete_for_run(self, run_id: str) -> int:
        query = text("DELETE FROM migration_checkpoints WHERE run_id = :run_id")
        async with execute_with_connection(self.conn) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            return result.rowcount


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SQLiteCheckpointStore",
    "PostgreSQLCheckpointStore",
]
