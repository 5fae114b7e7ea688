"""
objmigrate - Resumable migration of stored objects between storage providers.

This library provides:
- Lazy, paged object listing over pluggable storage providers
- Deterministic duplicate resolution with reference merging
- A lease-based migration lock with background refresh
- Checkpointed, resumable batch runs with an error budget
- Changelog-driven rollback of copied objects
- A background job dispatcher and progress polling
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("objmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from objmigrate.changelog import (
    ChangeAction,
    ChangeEntry,
    ChangeLog,
    ChangeLogSink,
    InMemoryChangeLogSink,
    JsonlChangeLogSink,
)
from objmigrate.checkpoints import CheckpointManager
from objmigrate.config import EngineConfig
from objmigrate.dispatcher import (
    DispatchReceipt,
    DispatchRequest,
    JobContext,
    JobDispatcher,
    build_command_line,
    migration_job,
)
from objmigrate.duplicates import (
    DuplicateAction,
    DuplicateDecision,
    DuplicateResolver,
    InMemoryReferenceIndex,
    MergeOutcome,
    ObjectRecord,
    ReferenceIndex,
    ResolutionSummary,
)
from objmigrate.error_policy import ErrorPolicy, RetryPolicy
from objmigrate.exceptions import (
    ChangeLogNotFoundError,
    CheckpointRegressionError,
    CircuitBreakerTripped,
    DispatchValidationError,
    ErrorThresholdExceeded,
    InvalidCheckpointError,
    InvalidStatusTransitionError,
    LockHeldError,
    LockLostError,
    MigrationEngineError,
    MigrationError,
    ObjectListingError,
    ProviderIOError,
    ProviderNotAvailableError,
    ResumeInconsistencyError,
    RunNotFoundError,
    UnknownCommandError,
)
from objmigrate.locks import LeaseKeeper, LockLease, LockManager
from objmigrate.models import Checkpoint, MigrationRun, RunPhase, RunStats, RunStatus
from objmigrate.progress import ProgressChannel, ProgressFrame, poll_run, wait_for_terminal
from objmigrate.repositories import (
    CheckpointStore,
    InMemoryCheckpointStore,
    InMemoryLockStore,
    InMemoryRunStateRepository,
    LockStore,
    PostgreSQLCheckpointStore,
    PostgreSQLLockStore,
    PostgreSQLRunStateRepository,
    RunStateRepository,
    SQLiteCheckpointStore,
    SQLiteLockStore,
    SQLiteRunStateRepository,
)
from objmigrate.rollback import RollbackEngine, RollbackReport
from objmigrate.runner import BatchProgress, BatchRunner, RunRequest, RunResult
from objmigrate.runs import LocalProcessProbe, ProcessHandle, RunStateService
from objmigrate.schema import get_schema, get_statements
from objmigrate.storage import (
    InMemoryStorageProvider,
    LocalFilesystemProvider,
    ObjectIterator,
    ObjectMetadata,
    ProviderCapabilities,
    ProviderRegistry,
    ProviderSettings,
    ProviderType,
    StorageProvider,
    WriteOptions,
    create_provider,
)

__all__ = [
    "__version__",
    # Configuration
    "EngineConfig",
    # Storage
    "ObjectMetadata",
    "ObjectIterator",
    "ProviderCapabilities",
    "ProviderType",
    "StorageProvider",
    "InMemoryStorageProvider",
    "LocalFilesystemProvider",
    "WriteOptions",
    "ProviderSettings",
    "ProviderRegistry",
    "create_provider",
    # Models
    "RunStatus",
    "RunPhase",
    "RunStats",
    "MigrationRun",
    "Checkpoint",
    # Stores
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SQLiteCheckpointStore",
    "PostgreSQLCheckpointStore",
    "LockStore",
    "InMemoryLockStore",
    "SQLiteLockStore",
    "PostgreSQLLockStore",
    "RunStateRepository",
    "InMemoryRunStateRepository",
    "SQLiteRunStateRepository",
    "PostgreSQLRunStateRepository",
    "get_schema",
    "get_statements",
    # Services
    "CheckpointManager",
    "LockLease",
    "LockManager",
    "LeaseKeeper",
    "RunStateService",
    "ProcessHandle",
    "LocalProcessProbe",
    # Duplicates
    "ObjectRecord",
    "ReferenceIndex",
    "InMemoryReferenceIndex",
    "DuplicateAction",
    "DuplicateDecision",
    "DuplicateResolver",
    "MergeOutcome",
    "ResolutionSummary",
    # Changelog
    "ChangeAction",
    "ChangeEntry",
    "ChangeLog",
    "ChangeLogSink",
    "InMemoryChangeLogSink",
    "JsonlChangeLogSink",
    # Runner
    "ErrorPolicy",
    "RetryPolicy",
    "BatchRunner",
    "RunRequest",
    "BatchProgress",
    "RunResult",
    "RollbackEngine",
    "RollbackReport",
    # Dispatch
    "DispatchRequest",
    "DispatchReceipt",
    "JobContext",
    "JobDispatcher",
    "build_command_line",
    "migration_job",
    "ProgressChannel",
    "ProgressFrame",
    "poll_run",
    "wait_for_terminal",
    # Exceptions
    "MigrationError",
    "RunNotFoundError",
    "InvalidStatusTransitionError",
    "LockHeldError",
    "LockLostError",
    "ProviderIOError",
    "ObjectListingError",
    "ProviderNotAvailableError",
    "DispatchValidationError",
    "UnknownCommandError",
    "CircuitBreakerTripped",
    "ErrorThresholdExceeded",
    "ResumeInconsistencyError",
    "CheckpointRegressionError",
    "InvalidCheckpointError",
    "ChangeLogNotFoundError",
    "MigrationEngineError",
]
