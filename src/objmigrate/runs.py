"""
Run state service.

Owns every MigrationRun record: creation, validated status transitions,
progress updates, the bounded output ring, cancellation requests and the
liveness check that turns a run whose worker died into a resumable
``paused`` run.
"""

from __future__ import annotations

import logging
import os
import socket
from datetime import timedelta
from typing import Any, Protocol, runtime_checkable

from objmigrate.exceptions import InvalidStatusTransitionError, RunNotFoundError
from objmigrate.models import MigrationRun, RunPhase, RunStats, RunStatus, utcnow
from objmigrate.observability import (
    ATTR_JOB_ID,
    ATTR_RUN_ID,
    ATTR_RUN_STATUS,
    Tracer,
    create_tracer,
)
from objmigrate.repositories.run_state import RunStateRepository

logger = logging.getLogger(__name__)

WORKER_GONE_MESSAGE = "Migration paused: process no longer running"

_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "phase",
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
    }
)


@runtime_checkable
class ProcessHandle(Protocol):
    """Answers whether the worker executing a run is still alive."""

    def is_alive(self, run: MigrationRun) -> bool: ...


class LocalProcessProbe:
    """
    Probe workers on this host with signal 0.

    Runs owned by another host (by the ``worker_id`` host part) or without a
    recorded pid cannot be probed and are reported alive.
    """

    def __init__(self, hostname: str | None = None) -> None:
        self._hostname = hostname or socket.gethostname()

    def is_alive(self, run: MigrationRun) -> bool:
        if run.pid is None:
            return True
        if run.worker_id and run.worker_id.split(":", 1)[0] != self._hostname:
            return True
        try:
            os.kill(run.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user.
            return True
        return True


class RunStateService:
    """
    Create, update and query migration runs.

    Args:
        repository: Run record storage.
        process_handle: Liveness check for running runs (None disables it).
        output_max_lines: Size of the per-run output ring.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        repository: RunStateRepository,
        *,
        process_handle: ProcessHandle | None = None,
        output_max_lines: int = 200,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if output_max_lines < 1:
            raise ValueError(f"output_max_lines must be >= 1, got {output_max_lines}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._repository = repository
        self._process_handle = process_handle
        self._output_max_lines = output_max_lines

    @property
    def repository(self) -> RunStateRepository:
        return self._repository

    @property
    def process_handle(self) -> ProcessHandle | None:
        return self._process_handle

    @process_handle.setter
    def process_handle(self, handle: ProcessHandle | None) -> None:
        self._process_handle = handle

    async def create(
        self,
        run_id: str,
        command: str,
        *,
        phase: RunPhase = RunPhase.COPY,
        total_count: int = 0,
        job_id: str | None = None,
        dry_run: bool = False,
    ) -> MigrationRun:
        """Create a ``pending`` run record."""
        with self._tracer.span(
            "objmigrate.runs.create",
            {ATTR_RUN_ID: run_id, ATTR_JOB_ID: job_id or ""},
        ):
            now = utcnow()
            run = MigrationRun(
                run_id=run_id,
                command=command,
                phase=phase,
                status=RunStatus.PENDING,
                job_id=job_id,
                total_count=total_count,
                dry_run=dry_run,
                created_at=now,
                last_updated_at=now,
            )
            await self._repository.create(run)
            logger.info("Created run %s (%s)", run_id, command)
            return run

    async def _require(self, run_id: str) -> MigrationRun:
        run = await self._repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _apply(self, run: MigrationRun, changes: dict[str, Any]) -> None:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown run fields: {', '.join(sorted(unknown))}")

        status = changes.pop("status", None)
        if status is not None:
            status = RunStatus(status)
            if not run.status.can_transition_to(status):
                raise InvalidStatusTransitionError(run.run_id, run.status.value, status.value)
            if status == RunStatus.RUNNING and run.started_at is None:
                run.started_at = utcnow()
            if status.is_terminal:
                run.completed_at = utcnow()
            run.status = status

        if "phase" in changes:
            changes["phase"] = RunPhase(changes["phase"])
        if "stats" in changes and not isinstance(changes["stats"], RunStats):
            changes["stats"] = RunStats.from_dict(changes["stats"])
        if "output" in changes:
            changes["output"] = list(changes["output"])[-self._output_max_lines :]

        for name, value in changes.items():
            setattr(run, name, value)
        run.last_updated_at = utcnow()

    async def update(self, run_id: str, **changes: Any) -> MigrationRun:
        """
        Apply field changes to a run.

        Accepted fields: status, phase, job_id, pid, worker_id,
        processed_count, total_count, cursor, current_batch, stats,
        error_message, checkpoint_id, output. The cancellation flag is
        written through ``request_cancel`` and ``clear_cancel`` only.

        Raises:
            RunNotFoundError: If the run does not exist.
            InvalidStatusTransitionError: If ``status`` is not reachable.
            TypeError: For unknown field names.
        """
        with self._tracer.span("objmigrate.runs.update", {ATTR_RUN_ID: run_id}):
            run = await self._require(run_id)
            previous = run.status
            self._apply(run, dict(changes))
            await self._repository.save(run)
            if run.status != previous:
                logger.info(
                    "Run %s: %s -> %s", run_id, previous.value, run.status.value
                )
            return run

    async def append_output(self, run_id: str, *lines: str) -> MigrationRun:
        """Append lines to the run's output ring."""
        run = await self._require(run_id)
        self._apply(run, {"output": [*run.output, *lines]})
        await self._repository.save(run)
        return run

    async def get(self, run_id: str) -> MigrationRun | None:
        """
        Load a run, reconciling it with its worker's liveness.

        A ``running`` run whose worker is gone is moved to ``paused``.
        """
        run = await self._repository.get(run_id)
        if run is None:
            return None
        return await self._check_liveness(run)

    async def _check_liveness(self, run: MigrationRun) -> MigrationRun:
        if run.status != RunStatus.RUNNING or self._process_handle is None:
            return run
        if self._process_handle.is_alive(run):
            return run
        with self._tracer.span(
            "objmigrate.runs.worker_gone",
            {ATTR_RUN_ID: run.run_id, ATTR_RUN_STATUS: run.status.value},
        ):
            logger.warning(
                "Worker for run %s (pid %s) is no longer running; pausing run",
                run.run_id,
                run.pid,
            )
            self._apply(
                run,
                {
                    "status": RunStatus.PAUSED,
                    "error_message": WORKER_GONE_MESSAGE,
                    "output": [*run.output, WORKER_GONE_MESSAGE],
                },
            )
            await self._repository.save(run)
            return run

    async def get_latest(self) -> MigrationRun | None:
        """The running run if there is one, else the most recently updated run."""
        running = await self.list_running()
        if running:
            return running[0]
        runs = await self._repository.list_runs(limit=1)
        return runs[0] if runs else None

    async def get_latest_incomplete(
        self,
        *,
        exclude: str | None = None,
        include_pending: bool = True,
    ) -> MigrationRun | None:
        """
        The most recently updated run that is not terminal.

        Args:
            exclude: Run id to ignore (typically the caller's own run).
            include_pending: Whether queued runs that never started count.
        """
        statuses = (RunStatus.RUNNING, RunStatus.PAUSED)
        if include_pending:
            statuses = (RunStatus.PENDING, *statuses)
        runs = await self._repository.list_runs(statuses=statuses)
        for run in runs:
            if run.run_id == exclude:
                continue
            run = await self._check_liveness(run)
            if not run.is_terminal:
                return run
        return None

    async def list_running(self) -> list[MigrationRun]:
        """Runs still ``running`` after a liveness check, newest first."""
        runs = await self._repository.list_runs(statuses=(RunStatus.RUNNING,))
        checked = [await self._check_liveness(run) for run in runs]
        return [run for run in checked if run.status == RunStatus.RUNNING]

    async def list_runs(
        self,
        statuses: tuple[RunStatus, ...] | None = None,
        limit: int | None = None,
    ) -> list[MigrationRun]:
        return await self._repository.list_runs(statuses=statuses, limit=limit)

    async def request_cancel(self, run_id: str) -> MigrationRun:
        """
        Ask the run's worker to stop at its next batch boundary.

        A terminal run is returned unchanged.
        """
        run = await self._require(run_id)
        if run.is_terminal:
            logger.info("Cancel ignored for run %s: already %s", run_id, run.status.value)
            return run
        if not await self._repository.set_cancel_requested(run_id, True):
            raise RunNotFoundError(run_id)
        logger.info("Cancellation requested for run %s", run_id)
        return await self.append_output(run_id, "Cancellation requested")

    async def clear_cancel(self, run_id: str) -> None:
        """Reset the cancellation flag before a run (re)starts."""
        if not await self._repository.set_cancel_requested(run_id, False):
            raise RunNotFoundError(run_id)

    async def is_cancel_requested(self, run_id: str) -> bool:
        run = await self._repository.get(run_id)
        return bool(run and run.cancel_requested)

    async def purge_finished(self, older_than_days: float = 7) -> int:
        """Delete terminal runs that completed more than ``older_than_days`` ago."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        removed = await self._repository.delete_finished_before(cutoff)
        if removed:
            logger.info("Purged %d finished run(s) completed before %s", removed, cutoff.isoformat())
        return removed


__all__ = [
    "WORKER_GONE_MESSAGE",
    "LocalProcessProbe",
    "ProcessHandle",
    "RunStateService",
]
