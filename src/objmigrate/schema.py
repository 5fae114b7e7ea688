"""
Database schema for the durable stores.

Tables:
    - migration_runs: Run state records (one row per run)
    - migration_checkpoints: Checkpoint snapshots (many per run)
    - migration_locks: Migration lock leases (one row per lock name)

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    >>> from objmigrate.schema import get_schema
    >>> async with engine.begin() as conn:
    ...     for statement in get_statements("postgresql"):
    ...         await conn.execute(text(statement))
    >>>
    >>> await sqlite_conn.executescript(get_schema("sqlite"))
"""

from __future__ import annotations

from typing import Literal

BackendName = Literal["postgresql", "sqlite"]

_POSTGRESQL_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS migration_runs (
        run_id TEXT PRIMARY KEY,
        command TEXT NOT NULL,
        phase TEXT NOT NULL,
        status TEXT NOT NULL,
        job_id TEXT,
        pid INTEGER,
        worker_id TEXT,
        processed_count INTEGER NOT NULL DEFAULT 0,
        total_count INTEGER NOT NULL DEFAULT 0,
        cursor TEXT,
        current_batch INTEGER NOT NULL DEFAULT 0,
        stats JSONB NOT NULL DEFAULT '{}'::jsonb,
        error_message TEXT,
        checkpoint_id TEXT,
        output JSONB NOT NULL DEFAULT '[]'::jsonb,
        cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
        dry_run BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        started_at TIMESTAMPTZ,
        last_updated_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_migration_runs_status
        ON migration_runs (status, last_updated_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_checkpoints (
        seq BIGSERIAL PRIMARY KEY,
        checkpoint_id TEXT NOT NULL UNIQUE,
        run_id TEXT NOT NULL,
        phase TEXT NOT NULL,
        cursor TEXT,
        processed_count INTEGER NOT NULL,
        total_count INTEGER NOT NULL DEFAULT 0,
        batch_number INTEGER NOT NULL DEFAULT 0,
        stats JSONB NOT NULL DEFAULT '{}'::jsonb,
        errors JSONB NOT NULL DEFAULT '[]'::jsonb,
        version TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_migration_checkpoints_run
        ON migration_checkpoints (run_id, seq DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_locks (
        lock_name TEXT PRIMARY KEY,
        run_id TEXT NOT NULL,
        holder_id TEXT NOT NULL,
        acquired_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)

_SQLITE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS migration_runs (
        run_id TEXT PRIMARY KEY,
        command TEXT NOT NULL,
        phase TEXT NOT NULL,
        status TEXT NOT NULL,
        job_id TEXT,
        pid INTEGER,
        worker_id TEXT,
        processed_count INTEGER NOT NULL DEFAULT 0,
        total_count INTEGER NOT NULL DEFAULT 0,
        cursor TEXT,
        current_batch INTEGER NOT NULL DEFAULT 0,
        stats TEXT NOT NULL DEFAULT '{}',
        error_message TEXT,
        checkpoint_id TEXT,
        output TEXT NOT NULL DEFAULT '[]',
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        dry_run INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        started_at TEXT,
        last_updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_migration_runs_status
        ON migration_runs (status, last_updated_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_checkpoints (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        checkpoint_id TEXT NOT NULL UNIQUE,
        run_id TEXT NOT NULL,
        phase TEXT NOT NULL,
        cursor TEXT,
        processed_count INTEGER NOT NULL,
        total_count INTEGER NOT NULL DEFAULT 0,
        batch_number INTEGER NOT NULL DEFAULT 0,
        stats TEXT NOT NULL DEFAULT '{}',
        errors TEXT NOT NULL DEFAULT '[]',
        version TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_migration_checkpoints_run
        ON migration_checkpoints (run_id, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_locks (
        lock_name TEXT PRIMARY KEY,
        run_id TEXT NOT NULL,
        holder_id TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
)


def get_statements(backend: BackendName = "postgresql") -> tuple[str, ...]:
    """
    Get the DDL statements for a backend, one statement per item.

    asyncpg cannot execute several statements in one call, so PostgreSQL
    callers execute these individually.

    Raises:
        ValueError: If the backend is unknown.
    """
    if backend == "postgresql":
        return _POSTGRESQL_STATEMENTS
    if backend == "sqlite":
        return _SQLITE_STATEMENTS
    raise ValueError(f"Unknown backend '{backend}'. Available: postgresql, sqlite")


def get_schema(backend: BackendName = "postgresql") -> str:
    """Get the complete DDL script for a backend."""
    return ";\n".join(statement.strip() for statement in get_statements(backend)) + ";\n"


__all__ = ["BackendName", "get_schema", "get_statements"]
