"""
Checkpoint management for resumable runs.

CheckpointManager sits on top of a CheckpointStore and adds run id
validation, monotonic progress per run, resume-point lookup and the
retention sweep.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from objmigrate.exceptions import (
    CheckpointRegressionError,
    InvalidCheckpointError,
    ResumeInconsistencyError,
)
from objmigrate.models import Checkpoint, MigrationRun, RunPhase, RunStatus, utcnow
from objmigrate.observability import (
    ATTR_CHECKPOINT_ID,
    ATTR_PROCESSED_COUNT,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from objmigrate.repositories.checkpoint import CheckpointStore

logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_run_id(run_id: str) -> str:
    """
    Validate a run id used as a checkpoint key.

    Raises:
        InvalidCheckpointError: If the id is empty or has other characters
            than letters, digits, '-' and '_'.
    """
    if not run_id or not RUN_ID_PATTERN.match(run_id):
        raise InvalidCheckpointError(f"Invalid run id for checkpoint: {run_id!r}", run_id=None)
    return run_id


class CheckpointManager:
    """
    Writes and reads checkpoints for migration runs.

    Example:
        >>> manager = CheckpointManager(SQLiteCheckpointStore(db), retention_hours=72)
        >>> checkpoint = await manager.save(
        ...     run_id, phase=RunPhase.COPY, cursor="photos/0100.jpg",
        ...     processed_count=100, total_count=250, batch_number=1,
        ... )
        >>> latest = await manager.load_latest(run_id)
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        retention_hours: float = 72,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if retention_hours <= 0:
            raise ValueError(f"retention_hours must be positive, got {retention_hours}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._retention = timedelta(hours=retention_hours)

    @property
    def store(self) -> CheckpointStore:
        return self._store

    async def save(
        self,
        run_id: str,
        *,
        phase: RunPhase,
        cursor: str | None,
        processed_count: int,
        total_count: int = 0,
        batch_number: int = 0,
        stats: dict[str, Any] | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> Checkpoint:
        """
        Persist a new checkpoint for ``run_id``.

        Raises:
            InvalidCheckpointError: For a malformed run id.
            CheckpointRegressionError: If ``processed_count`` is lower than
                the run's latest checkpoint.
        """
        validate_run_id(run_id)
        if processed_count < 0:
            raise InvalidCheckpointError(
                f"processed_count must be >= 0, got {processed_count}", run_id=run_id
            )

        previous = await self._store.load_latest(run_id)
        if previous is not None and processed_count < previous.processed_count:
            raise CheckpointRegressionError(run_id, previous.processed_count, processed_count)

        checkpoint = Checkpoint(
            checkpoint_id=f"{run_id}-{uuid4().hex[:12]}",
            run_id=run_id,
            phase=phase,
            cursor=cursor,
            processed_count=processed_count,
            total_count=total_count,
            batch_number=batch_number,
            stats=dict(stats or {}),
            errors=list(errors or []),
        )
        with self._tracer.span(
            "objmigrate.checkpoints.save",
            {
                ATTR_RUN_ID: run_id,
                ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id,
                ATTR_PROCESSED_COUNT: processed_count,
            },
        ):
            await self._store.save(checkpoint)
        logger.info(
            "Saved checkpoint %s for run %s at %d/%d (cursor=%s)",
            checkpoint.checkpoint_id,
            run_id,
            processed_count,
            total_count,
            cursor,
        )
        return checkpoint

    async def load_latest(
        self,
        run_id: str,
        checkpoint_id: str | None = None,
    ) -> Checkpoint | None:
        """
        Load the newest checkpoint of a run, or a specific one.

        A ``checkpoint_id`` that belongs to another run yields None.
        """
        validate_run_id(run_id)
        if checkpoint_id is not None:
            checkpoint = await self._store.load(checkpoint_id)
            if checkpoint is None or checkpoint.run_id != run_id:
                return None
            return checkpoint
        return await self._store.load_latest(run_id)

    async def load_resume_point(self, run: MigrationRun) -> Checkpoint | None:
        """
        Checkpoint to resume ``run`` from, or None for a clean start.

        Raises:
            ResumeInconsistencyError: If the run already completed; its
                checkpoints are superseded and are deleted.
        """
        with self._tracer.span("objmigrate.checkpoints.load_resume_point", {ATTR_RUN_ID: run.run_id}):
            if run.status == RunStatus.COMPLETED:
                removed = await self._store.delete_for_run(run.run_id)
                logger.warning(
                    "Run %s already completed; discarded %d superseded checkpoint(s)",
                    run.run_id,
                    removed,
                )
                raise ResumeInconsistencyError(run.run_id, run.status.value)

            checkpoint = await self.load_latest(run.run_id)
            if checkpoint is None:
                logger.info("No checkpoint for run %s; starting from the beginning", run.run_id)
            else:
                logger.info(
                    "Resuming run %s from checkpoint %s (processed=%d, cursor=%s)",
                    run.run_id,
                    checkpoint.checkpoint_id,
                    checkpoint.processed_count,
                    checkpoint.cursor,
                )
            return checkpoint

    async def list_for_run(self, run_id: str) -> list[Checkpoint]:
        validate_run_id(run_id)
        return await self._store.list_for_run(run_id)

    async def delete_for_run(self, run_id: str) -> int:
        validate_run_id(run_id)
        return await self._store.delete_for_run(run_id)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete checkpoints older than the retention window."""
        cutoff = (now or utcnow()) - self._retention
        removed = await self._store.purge_older_than(cutoff)
        if removed:
            logger.info("Purged %d checkpoint(s) older than %s", removed, cutoff.isoformat())
        return removed


__all__ = ["RUN_ID_PATTERN", "CheckpointManager", "validate_run_id"]
