"""
Data models for migration runs.

Enums:
    - RunStatus: Run lifecycle status
    - RunPhase: Which part of the migration a run performs

Core Models:
    - RunStats: Per-run outcome counters
    - MigrationRun: Durable record of one run (owned by RunStateService)
    - Checkpoint: Snapshot of a run's cursor and counters for resume
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

CHECKPOINT_VERSION = "1"


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    """Parse a stored timestamp (datetime or ISO-8601 text) as an aware datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def format_timestamp(value: datetime | None) -> str | None:
    """
    Format as fixed-width UTC ISO-8601 text.

    Fixed width keeps lexicographic order equal to chronological order,
    which the SQLite stores rely on for range predicates.
    """
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class RunStatus(Enum):
    """
    Run lifecycle status.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                       |
                       +--> PAUSED -> RUNNING (resume)
                       |
        Any non-terminal --> FAILED

    PAUSED covers both operator cancellation and a worker that died without
    finishing; either way the run can be resumed from its last checkpoint.

    Attributes:
        PENDING: Dispatched, not yet picked up by a worker.
        RUNNING: A worker is executing the run.
        PAUSED: Stopped before completion; resumable.
        COMPLETED: Finished successfully (terminal).
        FAILED: Aborted with an error (terminal).
    """

    PENDING = "pending"
    """Dispatched, not yet picked up by a worker."""

    RUNNING = "running"
    """A worker is executing the run."""

    PAUSED = "paused"
    """Stopped before completion; resumable."""

    COMPLETED = "completed"
    """Finished successfully."""

    FAILED = "failed"
    """Aborted with an error."""

    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED and FAILED."""
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)

    @property
    def is_active(self) -> bool:
        """True for PENDING and RUNNING."""
        return self in (RunStatus.PENDING, RunStatus.RUNNING)

    def can_transition_to(self, target: RunStatus) -> bool:
        """
        Check if transition to target status is valid.

        Re-asserting the current non-terminal status is allowed so progress
        updates can carry the status along.

        Args:
            target: The status to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False
        if target == self:
            return True
        return target in _VALID_TRANSITIONS[self]


_VALID_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunPhase(Enum):
    """
    Part of the overall migration a run performs.

    Attributes:
        DISCOVERY: Inventory the source without transferring.
        COPY: Transfer objects from source to target.
        CONSOLIDATION: Resolve duplicates at the target.
        VERIFICATION: Check that transferred objects are present.
    """

    DISCOVERY = "discovery"
    COPY = "copy"
    CONSOLIDATION = "consolidation"
    VERIFICATION = "verification"


@dataclass
class RunStats:
    """
    Outcome counters for a run.

    Attributes:
        moved: Objects written to the target.
        skipped: Objects not written (already present, or merged away).
        merged: Duplicate collisions resolved by merging.
        failed: Objects that failed permanently.
        retried: Individual retry attempts.
        verified: Objects confirmed at the target (verification phase).
        discovered: Objects found still to transfer (discovery phase).
        errors_by_kind: Failure counts keyed by error code.
    """

    moved: int = 0
    skipped: int = 0
    merged: int = 0
    failed: int = 0
    retried: int = 0
    verified: int = 0
    discovered: int = 0
    errors_by_kind: dict[str, int] = field(default_factory=dict)

    def record_error(self, error_code: str) -> None:
        self.failed += 1
        self.errors_by_kind[error_code] = self.errors_by_kind.get(error_code, 0) + 1

    def copy(self) -> RunStats:
        return RunStats.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "moved": self.moved,
            "skipped": self.skipped,
            "merged": self.merged,
            "failed": self.failed,
            "retried": self.retried,
            "verified": self.verified,
            "discovered": self.discovered,
            "errors_by_kind": dict(self.errors_by_kind),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RunStats:
        data = data or {}
        return cls(
            moved=int(data.get("moved", 0)),
            skipped=int(data.get("skipped", 0)),
            merged=int(data.get("merged", 0)),
            failed=int(data.get("failed", 0)),
            retried=int(data.get("retried", 0)),
            verified=int(data.get("verified", 0)),
            discovered=int(data.get("discovered", 0)),
            errors_by_kind=dict(data.get("errors_by_kind", {})),
        )


@dataclass
class MigrationRun:
    """
    Durable record of one migration run.

    Mutable because it is updated on every batch boundary. The batch runner
    for the run is its only writer; pollers only read snapshots.

    Attributes:
        run_id: Globally unique, caller-visible identifier.
        command: Command line that started the run.
        phase: Migration phase being executed.
        status: Lifecycle status.
        job_id: Background job executing the run, if dispatched.
        pid: OS process id of the worker.
        worker_id: Worker identity (hostname:pid[:job]).
        processed_count: Objects processed so far.
        total_count: Objects expected in total (0 if unknown).
        cursor: Opaque listing continuation token.
        current_batch: Last completed batch number.
        stats: Outcome counters.
        error_message: Human-readable failure or pause reason.
        checkpoint_id: Latest checkpoint written for the run.
        output: Trailing log lines (bounded).
        cancel_requested: Cancellation sentinel, observed at batch boundaries.
        dry_run: Whether the run suppresses mutating side effects.
        started_at: When a worker first picked the run up.
        last_updated_at: Last write to the record.
        completed_at: When the run reached a terminal status.
    """

    run_id: str
    command: str
    phase: RunPhase = RunPhase.COPY
    status: RunStatus = RunStatus.PENDING
    job_id: str | None = None
    pid: int | None = None
    worker_id: str | None = None
    processed_count: int = 0
    total_count: int = 0
    cursor: str | None = None
    current_batch: int = 0
    stats: RunStats = field(default_factory=RunStats)
    error_message: str | None = None
    checkpoint_id: str | None = None
    output: list[str] = field(default_factory=list)
    cancel_requested: bool = False
    dry_run: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    last_updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def progress_percent(self) -> float:
        """
        Progress as percentage (0-100).

        Returns:
            Progress percentage, or 0.0 if the total is unknown.
        """
        if self.total_count <= 0:
            return 0.0
        return min(100.0, (self.processed_count / self.total_count) * 100)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary (poll responses)."""
        return {
            "run_id": self.run_id,
            "command": self.command,
            "phase": self.phase.value,
            "status": self.status.value,
            "job_id": self.job_id,
            "pid": self.pid,
            "worker_id": self.worker_id,
            "processed_count": self.processed_count,
            "total_count": self.total_count,
            "progress_percent": round(self.progress_percent, 2),
            "cursor": self.cursor,
            "current_batch": self.current_batch,
            "stats": self.stats.to_dict(),
            "error_message": self.error_message,
            "checkpoint_id": self.checkpoint_id,
            "output": list(self.output),
            "cancel_requested": self.cancel_requested,
            "dry_run": self.dry_run,
            "created_at": format_timestamp(self.created_at),
            "started_at": format_timestamp(self.started_at),
            "last_updated_at": format_timestamp(self.last_updated_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationRun:
        return cls(
            run_id=data["run_id"],
            command=data.get("command", ""),
            phase=RunPhase(data.get("phase", RunPhase.COPY.value)),
            status=RunStatus(data.get("status", RunStatus.PENDING.value)),
            job_id=data.get("job_id"),
            pid=data.get("pid"),
            worker_id=data.get("worker_id"),
            processed_count=int(data.get("processed_count", 0)),
            total_count=int(data.get("total_count", 0)),
            cursor=data.get("cursor"),
            current_batch=int(data.get("current_batch", 0)),
            stats=RunStats.from_dict(data.get("stats")),
            error_message=data.get("error_message"),
            checkpoint_id=data.get("checkpoint_id"),
            output=list(data.get("output") or []),
            cancel_requested=bool(data.get("cancel_requested", False)),
            dry_run=bool(data.get("dry_run", False)),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            started_at=parse_timestamp(data.get("started_at")),
            last_updated_at=parse_timestamp(data.get("last_updated_at")) or utcnow(),
            completed_at=parse_timestamp(data.get("completed_at")),
        )

    def snapshot(self) -> MigrationRun:
        """Independent copy safe to hand to readers."""
        return MigrationRun.from_dict(self.to_dict())


@dataclass(frozen=True)
class Checkpoint:
    """
    Snapshot of a run's progress.

    Immutable: each save writes a new checkpoint; the newest one for a run
    is its resume point.

    Attributes:
        checkpoint_id: Unique identifier.
        run_id: Run the checkpoint belongs to.
        phase: Phase being executed.
        cursor: Listing continuation token (last processed key).
        processed_count: Objects processed up to the cursor.
        total_count: Objects expected in total.
        batch_number: Batches completed up to the cursor.
        stats: RunStats as a dictionary.
        errors: Recent error history (bounded).
        version: Checkpoint format version.
        created_at: When the checkpoint was written.
    """

    checkpoint_id: str
    run_id: str
    phase: RunPhase
    cursor: str | None
    processed_count: int
    total_count: int = 0
    batch_number: int = 0
    stats: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    version: str = CHECKPOINT_VERSION
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "run_id": self.run_id,
            "phase": self.phase.value,
            "cursor": self.cursor,
            "processed_count": self.processed_count,
            "total_count": self.total_count,
            "batch_number": self.batch_number,
            "stats": dict(self.stats),
            "errors": list(self.errors),
            "version": self.version,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            run_id=data["run_id"],
            phase=RunPhase(data.get("phase", RunPhase.COPY.value)),
            cursor=data.get("cursor"),
            processed_count=int(data.get("processed_count", 0)),
            total_count=int(data.get("total_count", 0)),
            batch_number=int(data.get("batch_number", 0)),
            stats=dict(data.get("stats") or {}),
            errors=list(data.get("errors") or []),
            version=str(data.get("version", CHECKPOINT_VERSION)),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
        )


__all__ = [
    "CHECKPOINT_VERSION",
    "RunStatus",
    "RunPhase",
    "RunStats",
    "MigrationRun",
    "Checkpoint",
    "utcnow",
    "parse_timestamp",
    "format_timestamp",
]
