"""
Run state repository.

One row per run in ``migration_runs``. Writes are whole-record upserts,
except ``cancel_requested``, which only ``set_cancel_requested`` writes.
The RunStateService above this layer owns transition validation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from objmigrate.models import (
    MigrationRun,
    RunPhase,
    RunStats,
    RunStatus,
    format_timestamp,
    parse_timestamp,
)
from objmigrate.observability import (
    ATTR_RUN_ID,
    ATTR_RUN_STATUS,
    Tracer,
    create_tracer,
)
from objmigrate.repositories._connection import execute_with_connection
from objmigrate.serialization import json_dumps, json_loads

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

_COLUMNS = (
    "run_id, command, phase, status, job_id, pid, worker_id, processed_count, "
    "total_count, cursor, current_batch, stats, error_message, checkpoint_id, "
    "output, cancel_requested, dry_run, created_at, started_at, "
    "last_updated_at, completed_at"
)

_UPDATE_SET = ", ".join(
    f"{column} = excluded.{column}"
    for column in (
        "command",
        "phase",
        "status",
        "job_id",
        "pid",
        "worker_id",
        "processed_count",
        "total_count",
        "cursor",
        "current_batch",
        "stats",
        "error_message",
        "checkpoint_id",
        "output",
        "dry_run",
        "started_at",
        "last_updated_at",
        "completed_at",
    )
)

_TERMINAL_VALUES = tuple(status.value for status in RunStatus if status.is_terminal)


def _row_to_run(row: Any) -> MigrationRun:
    return MigrationRun(
        run_id=row[0],
        command=row[1],
        phase=RunPhase(row[2]),
        status=RunStatus(row[3]),
        job_id=row[4],
        pid=row[5],
        worker_id=row[6],
        processed_count=int(row[7]),
        total_count=int(row[8]),
        cursor=row[9],
        current_batch=int(row[10]),
        stats=RunStats.from_dict(json_loads(row[11])),
        error_message=row[12],
        checkpoint_id=row[13],
        output=list(json_loads(row[14]) or []),
        cancel_requested=bool(row[15]),
        dry_run=bool(row[16]),
        created_at=parse_timestamp(row[17]),  # type: ignore[arg-type]
        started_at=parse_timestamp(row[18]),
        last_updated_at=parse_timestamp(row[19]),  # type: ignore[arg-type]
        completed_at=parse_timestamp(row[20]),
    )


@runtime_checkable
class RunStateRepository(Protocol):
    """Protocol for run record persistence."""

    async def create(self, run: MigrationRun) -> None:
        """Insert a new run. Raises ValueError if the id exists."""
        ...

    async def get(self, run_id: str) -> MigrationRun | None:
        """Load a run by id, or None."""
        ...

    async def save(self, run: MigrationRun) -> None:
        """Upsert the record; an existing row keeps its ``cancel_requested``."""
        ...

    async def set_cancel_requested(self, run_id: str, requested: bool) -> bool:
        """Write only the cancellation flag; False if the run does not exist."""
        ...

    async def list_runs(
        self,
        statuses: Iterable[RunStatus] | None = None,
        limit: int | None = None,
    ) -> list[MigrationRun]:
        """Runs ordered by last update, newest first."""
        ...

    async def delete_finished_before(self, cutoff: datetime) -> int:
        """Delete terminal runs completed before ``cutoff``; returns the count."""
        ...


class InMemoryRunStateRepository:
    """
    In-memory run repository.

    Stores snapshots so callers cannot mutate stored records in place.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._runs: dict[str, MigrationRun] = {}
        self._lock = asyncio.Lock()

    async def create(self, run: MigrationRun) -> None:
        with self._tracer.span("objmigrate.run_state.create", {ATTR_RUN_ID: run.run_id}):
            async with self._lock:
                if run.run_id in self._runs:
                    raise ValueError(f"Run {run.run_id} already exists")
                self._runs[run.run_id] = run.snapshot()

    async def get(self, run_id: str) -> MigrationRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return run.snapshot() if run else None

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "objmigrate.run_state.save",
            {ATTR_RUN_ID: run.run_id, ATTR_RUN_STATUS: run.status.value},
        ):
            async with self._lock:
                stored = run.snapshot()
                existing = self._runs.get(run.run_id)
                if existing is not None:
                    stored.cancel_requested = existing.cancel_requested
                self._runs[run.run_id] = stored

    async def set_cancel_requested(self, run_id: str, requested: bool) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return False
            run.cancel_requested = requested
            return True

    async def list_runs(
        self,
        statuses: Iterable[RunStatus] | None = None,
        limit: int | None = None,
    ) -> list[MigrationRun]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            runs = [
                run.snapshot()
                for run in self._runs.values()
                if wanted is None or run.status in wanted
            ]
        runs.sort(key=lambda r: r.last_updated_at, reverse=True)
        return runs[:limit] if limit is not None else runs

    async def delete_finished_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                run_id
                for run_id, run in self._runs.items()
                if run.status.is_terminal
                and run.completed_at is not None
                and run.completed_at < cutoff
            ]
            for run_id in doomed:
                del self._runs[run_id]
        return len(doomed)

    async def clear(self) -> None:
        async with self._lock:
            self._runs.clear()


class SQLiteRunStateRepository:
    """
    SQLite run repository.

    SQLite-specific adaptations:
    - Timestamps as fixed-width UTC ISO 8601 TEXT
    - stats/output as JSON TEXT
    - Booleans as INTEGER 0/1
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

    def _params(self, run: MigrationRun) -> tuple[Any, ...]:
        return (
            run.run_id,
            run.command,
            run.phase.value,
            run.status.value,
            run.job_id,
            run.pid,
            run.worker_id,
            run.processed_count,
            run.total_count,
            run.cursor,
            run.current_batch,
            json_dumps(run.stats.to_dict()),
            run.error_message,
            run.checkpoint_id,
            json_dumps(run.output),
            1 if run.cancel_requested else 0,
            1 if run.dry_run else 0,
            format_timestamp(run.created_at),
            format_timestamp(run.started_at),
            format_timestamp(run.last_updated_at),
            format_timestamp(run.completed_at),
        )

    async def create(self, run: MigrationRun) -> None:
        with self._tracer.span("objmigrate.run_state.create", {ATTR_RUN_ID: run.run_id}):
            cursor = await self._connection.execute(
                "SELECT 1 FROM migration_runs WHERE run_id = ?",
                (run.run_id,),
            )
            if await cursor.fetchone():
                raise ValueError(f"Run {run.run_id} already exists")
            await self._connection.execute(
                f"INSERT INTO migration_runs ({_COLUMNS}) VALUES ({', '.join('?' * 21)})",
                self._params(run),
            )
            await self._connection.commit()

    async def get(self, run_id: str) -> MigrationRun | None:
        cursor = await self._connection.execute(
            f"SELECT {_COLUMNS} FROM migration_runs WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "objmigrate.run_state.save",
            {ATTR_RUN_ID: run.run_id, ATTR_RUN_STATUS: run.status.value},
        ):
            await self._connection.execute(
                f"""
                INSERT INTO migration_runs ({_COLUMNS})
                VALUES ({", ".join("?" * 21)})
                ON CONFLICT(run_id) DO UPDATE SET {_UPDATE_SET}
                """,
                self._params(run),
            )
            await self._connection.commit()

    async def set_cancel_requested(self, run_id: str, requested: bool) -> bool:
        with self._tracer.span("objmigrate.run_state.set_cancel_requested", {ATTR_RUN_ID: run_id}):
            cursor = await self._connection.execute(
                "UPDATE migration_runs SET cancel_requested = ? WHERE run_id = ?",
                (1 if requested else 0, run_id),
            )
            await self._connection.commit()
            return cursor.rowcount > 0

    async def list_runs(
        self,
        statuses: Iterable[RunStatus] | None = None,
        limit: int | None = None,
    ) -> list[MigrationRun]:
        query = f"SELECT {_COLUMNS} FROM migration_runs"
        params: list[Any] = []
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" WHERE status IN ({', '.join('?' * len(values))})"
            params.extend(values)
        query += " ORDER BY last_updated_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await self._connection.execute(query, tuple(params))
        rows = await cursor.fetchall()
        return [_row_to_run(row) for row in rows]

    async def delete_finished_before(self, cutoff: datetime) -> int:
        cursor = await self._connection.execute(
            f"""
            DELETE FROM migration_runs
            WHERE status IN ({", ".join("?" * len(_TERMINAL_VALUES))})
              AND completed_at IS NOT NULL
              AND completed_at < ?
            """,
            (*_TERMINAL_VALUES, format_timestamp(cutoff)),
        )
        await self._connection.commit()
        return cursor.rowcount


class PostgreSQLRunStateRepository:
    """PostgreSQL run repository (SQLAlchemy async)."""

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    _VALUES = """
        :run_id, :command, :phase, :status, :job_id, :pid, :worker_id,
        :processed_count, :total_count, :cursor, :current_batch,
        CAST(:stats AS JSONB), :error_message, :checkpoint_id,
        CAST(:output AS JSONB), :cancel_requested, :dry_run, :created_at,
        :started_at, :last_updated_at, :completed_at
    """

    @staticmethod
    def _params(run: MigrationRun) -> dict[str, Any]:
        return {
            "run_id": run.run_id,
            "command": run.command,
            "phase": run.phase.value,
            "status": run.status.value,
            "job_id": run.job_id,
            "pid": run.pid,
            "worker_id": run.worker_id,
            "processed_count": run.processed_count,
            "total_count": run.total_count,
            "cursor": run.cursor,
            "current_batch": run.current_batch,
            "stats": json_dumps(run.stats.to_dict()),
            "error_message": run.error_message,
            "checkpoint_id": run.checkpoint_id,
            "output": json_dumps(run.output),
            "cancel_requested": run.cancel_requested,
            "dry_run": run.dry_run,
            "created_at": run.created_at,
            "started_at": run.started_at,
            "last_updated_at": run.last_updated_at,
            "completed_at": run.completed_at,
        }

    async def create(self, run: MigrationRun) -> None:
        with self._tracer.span("objmigrate.run_state.create", {ATTR_RUN_ID: run.run_id}):
            query = text(f"""
                INSERT INTO migration_runs ({_COLUMNS})
                VALUES ({self._VALUES})
                ON CONFLICT (run_id) DO NOTHING
            """)
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, self._params(run))
                if result.rowcount == 0:
                    raise ValueError(f"Run {run.run_id} already exists")

    async def get(self, run_id: str) -> MigrationRun | None:
        query = text(f"SELECT {_COLUMNS} FROM migration_runs WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            row = result.fetchone()
            return _row_to_run(row) if row else None

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "objmigrate.run_state.save",
            {ATTR_RUN_ID: run.run_id, ATTR_RUN_STATUS: run.status.value},
        ):
            query = text(f"""
                INSERT INTO migration_runs ({_COLUMNS})
                VALUES ({self._VALUES})
                ON CONFLICT (run_id) DO UPDATE SET {_UPDATE_SET.replace("excluded.", "EXCLUDED.")}
            """)
            async with execute_with_connection(self.conn) as conn:
                await conn.execute(query, self._params(run))

    async def set_cancel_requested(self, run_id: str, requested: bool) -> bool:
        with self._tracer.span("objmigrate.run_state.set_cancel_requested", {ATTR_RUN_ID: run_id}):
            query = text("""
                UPDATE migration_runs
                SET cancel_requested = :requested
                WHERE run_id = :run_id
            """)
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, {"run_id": run_id, "requested": requested})
                return result.rowcount > 0

    async def list_runs(
        self,
        statuses: Iterable[RunStatus] | None = None,
        limit: int | None = None,
    ) -> list[MigrationRun]:
        clauses = []
        params: dict[str, Any] = {}
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            placeholders = []
            for index, value in enumerate(values):
                params[f"status_{index}"] = value
                placeholders.append(f":status_{index}")
            clauses.append(f"WHERE status IN ({', '.join(placeholders)})")
        clauses.append("ORDER BY last_updated_at DESC")
        if limit is not None:
            clauses.append("LIMIT :limit")
            params["limit"] = limit
        query = text(f"SELECT {_COLUMNS} FROM migration_runs {' '.join(clauses)}")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            return [_row_to_run(row) for row in result.fetchall()]

    async def delete_finished_before(self, cutoff: datetime) -> int:
        query = text("""
            DELETE FROM migration_runs
            WHERE status IN (:completed, :failed)
              AND completed_at IS NOT NULL
              AND completed_at < :cutoff
        """)
        params = {
            "completed": RunStatus.COMPLETED.value,
            "failed": RunStatus.FAILED.value,
            "cutoff": cutoff,
        }
        async with execute_with_connection(self.conn) as conn:
            result = await conn.execute(query, params)
            return result.rowcount


__all__ = [
    "RunStateRepository",
    "InMemoryRunStateRepository",
    "SQLiteRunStateRepository",
    "PostgreSQLRunStateRepository",
]
