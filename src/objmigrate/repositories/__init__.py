"""
Durable stores for run state, checkpoints and migration locks.

Each store is a Protocol with in-memory, SQLite (aiosqlite) and PostgreSQL
(SQLAlchemy async) implementations sharing the tables from
``objmigrate.schema``.
"""

from objmigrate.repositories.checkpoint import (
    CheckpointStore,
    InMemoryCheckpointStore,
    PostgreSQLCheckpointStore,
    SQLiteCheckpointStore,
)
from objmigrate.repositories.lock import (
    InMemoryLockStore,
    LockLease,
    LockStore,
    PostgreSQLLockStore,
    SQLiteLockStore,
)
from objmigrate.repositories.run_state import (
    InMemoryRunStateRepository,
    PostgreSQLRunStateRepository,
    RunStateRepository,
    SQLiteRunStateRepository,
)

__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SQLiteCheckpointStore",
    "PostgreSQLCheckpointStore",
    "LockLease",
    "LockStore",
    "InMemoryLockStore",
    "SQLiteLockStore",
    "PostgreSQLLockStore",
    "RunStateRepository",
    "InMemoryRunStateRepository",
    "SQLiteRunStateRepository",
    "PostgreSQLRunStateRepository",
]
