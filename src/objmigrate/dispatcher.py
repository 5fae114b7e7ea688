"""
Job dispatcher and background workers.

``dispatch()`` validates a command, creates a ``pending`` run record,
queues the job and returns the run id immediately. A pool of worker
tasks executes queued jobs; the run record is the only channel between
the caller and the job.

Example:
    >>> dispatcher = JobDispatcher(run_state, pool_size=2)
    >>> dispatcher.register("migration/run", migration_job(build_runner))
    >>> async with dispatcher:
    ...     receipt = await dispatcher.dispatch("migration/run", {"prefix": "photos/"})
    ...     final = await wait_for_terminal(run_state, receipt.run_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import secrets
import shlex
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from objmigrate.checkpoints import CheckpointManager
from objmigrate.config import EngineConfig
from objmigrate.exceptions import DispatchValidationError, UnknownCommandError
from objmigrate.models import MigrationRun, RunPhase, RunStatus
from objmigrate.observability import (
    ATTR_COMMAND,
    ATTR_JOB_ID,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from objmigrate.runner import INTERRUPTED_MESSAGE, BatchRunner, RunRequest, RunResult
from objmigrate.runs import LocalProcessProbe, ProcessHandle, RunStateService

logger = logging.getLogger(__name__)

COMMAND_PATTERN = r"^[a-z0-9][a-z0-9_-]*/[a-z0-9][a-z0-9_-]*$"
MAX_ARGS = 50
MAX_KEY_LENGTH = 64
MAX_VALUE_LENGTH = 1024

Scalar = str | int | float | bool | None
ArgValue = Scalar | list[str | int | float | bool]

_COMMAND_RE = re.compile(COMMAND_PATTERN)


class DispatchRequest(BaseModel):
    """
    A validated command and its arguments.

    Use ``DispatchRequest.parse`` to get ``DispatchValidationError`` instead
    of pydantic's ValidationError.
    """

    model_config = ConfigDict(frozen=True)

    command: str = Field(pattern=COMMAND_PATTERN)
    args: dict[str, ArgValue] = Field(default_factory=dict)

    @field_validator("args")
    @classmethod
    def _check_args(cls, value: dict[str, ArgValue]) -> dict[str, ArgValue]:
        if len(value) > MAX_ARGS:
            raise ValueError(f"at most {MAX_ARGS} arguments allowed, got {len(value)}")
        for key, item in value.items():
            if not key or len(key) > MAX_KEY_LENGTH:
                raise ValueError(f"argument name {key!r} must be 1-{MAX_KEY_LENGTH} characters")
            items = item if isinstance(item, list) else [item]
            for element in items:
                if isinstance(element, str) and len(element) > MAX_VALUE_LENGTH:
                    raise ValueError(
                        f"value of {key!r} exceeds {MAX_VALUE_LENGTH} characters"
                    )
        return value

    @classmethod
    def parse(cls, command: str, args: dict[str, Any] | None = None) -> DispatchRequest:
        """
        Raises:
            DispatchValidationError: With one entry per problem.
        """
        try:
            return cls(command=command, args=args or {})
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise DispatchValidationError(
                f"Invalid dispatch request for {command!r}", errors=errors
            ) from e


def build_command_line(command: str, args: dict[str, Any] | None = None) -> str:
    """
    Render a command and its arguments as a console command line.

    False, None, "", "0", 0 and empty lists are omitted; True becomes a bare
    ``--flag``; lists are comma-joined.

    Example:
        >>> build_command_line("migration/run", {"dry_run": True, "prefix": "a/", "resume": 0})
        'migration/run --dry_run --prefix=a/'
    """
    parts = [command]
    for key, value in (args or {}).items():
        if isinstance(value, bool):
            if value:
                parts.append(f"--{key}")
            continue
        if value is None or value == "" or value == "0" or value == 0 or value == []:
            continue
        if isinstance(value, list):
            value = ",".join(str(item) for item in value)
        parts.append(f"--{key}={shlex.quote(str(value))}")
    return " ".join(parts)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _new_id(kind: str) -> str:
    return f"{kind}-{int(time.time())}-{secrets.token_hex(6)}"


@dataclass(frozen=True)
class DispatchReceipt:
    """Returned by ``dispatch()`` before the job runs."""

    run_id: str
    job_id: str
    command: str
    command_line: str


class JobContext:
    """
    What a job handler sees of its run.

    Attributes:
        run_id: Run record of the job.
        job_id: Job identifier.
        command: Dispatched command.
        args: Validated arguments.
        run_state: Run state service.
    """

    def __init__(
        self,
        run_id: str,
        job_id: str,
        command: str,
        args: dict[str, Any],
        run_state: RunStateService,
    ) -> None:
        self.run_id = run_id
        self.job_id = job_id
        self.command = command
        self.args = args
        self.run_state = run_state

    async def report(self, **changes: Any) -> MigrationRun:
        """Update the run record (progress, status, ...)."""
        return await self.run_state.update(self.run_id, **changes)

    async def log(self, *lines: str) -> MigrationRun:
        return await self.run_state.append_output(self.run_id, *lines)

    async def cancel_requested(self) -> bool:
        return await self.run_state.is_cancel_requested(self.run_id)


JobHandler = Callable[[JobContext], Awaitable[Any]]


@dataclass
class _Job:
    context: JobContext
    handler: JobHandler
    started: asyncio.Event = field(default_factory=asyncio.Event)


class JobDispatcher:
    """
    Queue-backed pool of background workers.

    The dispatcher also answers liveness for the runs it executes: a run it
    dispatched is alive while queued or executing. Runs it does not know
    are delegated to ``fallback_probe``.

    Args:
        run_state: Run state service shared with pollers.
        pool_size: Number of concurrent jobs.
        checkpoints: Checkpoint manager for ``run_maintenance``.
        config: Engine configuration (retention settings).
        fallback_probe: Liveness for runs of other processes.
        install_probe: Register this dispatcher as the run state's
            process handle.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        run_state: RunStateService,
        *,
        pool_size: int = 2,
        checkpoints: CheckpointManager | None = None,
        config: EngineConfig | None = None,
        fallback_probe: ProcessHandle | None = None,
        install_probe: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {pool_size}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._run_state = run_state
        self._pool_size = pool_size
        self._checkpoints = checkpoints
        self._config = config or EngineConfig()
        self._fallback_probe = fallback_probe or LocalProcessProbe()
        self._handlers: dict[str, JobHandler] = {}
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._jobs: dict[str, _Job] = {}
        self._live_jobs: set[str] = set()
        self._hostname = socket.gethostname()
        if install_probe:
            run_state.process_handle = self

    @property
    def run_state(self) -> RunStateService:
        return self._run_state

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, command: str, handler: JobHandler) -> None:
        if not _COMMAND_RE.match(command):
            raise ValueError(f"Invalid command name {command!r}; expected <namespace>/<action>")
        self._handlers[command] = handler
        logger.debug("Registered job handler for %s", command)

    async def dispatch(self, command: str, args: dict[str, Any] | None = None) -> DispatchReceipt:
        """
        Validate, record and queue a job.

        Raises:
            DispatchValidationError: Malformed command or arguments.
            UnknownCommandError: No handler registered for ``command``.
        """
        request = DispatchRequest.parse(command, args)
        handler = self._handlers.get(request.command)
        if handler is None:
            raise UnknownCommandError(request.command)
        phase = RunPhase.COPY
        if "phase" in request.args:
            try:
                phase = RunPhase(request.args["phase"])
            except ValueError as e:
                raise DispatchValidationError(
                    f"Invalid dispatch request for {command!r}",
                    errors=[f"args.phase: unknown phase {request.args['phase']!r}"],
                ) from e

        run_id = _new_id("migration")
        job_id = _new_id("job")
        command_line = build_command_line(request.command, request.args)

        with self._tracer.span(
            "objmigrate.dispatcher.dispatch",
            {ATTR_COMMAND: request.command, ATTR_RUN_ID: run_id, ATTR_JOB_ID: job_id},
        ):
            await self._run_state.create(
                run_id,
                command_line,
                phase=phase,
                job_id=job_id,
                dry_run=_as_bool(request.args.get("dry_run", False)),
            )
            context = JobContext(run_id, job_id, request.command, dict(request.args), self._run_state)
            job = _Job(context=context, handler=handler)
            self._jobs[job_id] = job
            self._live_jobs.add(job_id)
            if not self._workers:
                self.start()
            await self._queue.put(job)
            logger.info("Dispatched %s as run %s (job %s)", command_line, run_id, job_id)
            return DispatchReceipt(run_id, job_id, request.command, command_line)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"objmigrate-worker-{index}")
            for index in range(self._pool_size)
        ]
        logger.info("Started %d migration worker(s)", self._pool_size)

    async def stop(self) -> None:
        """Cancel the workers; jobs in flight are interrupted."""
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if workers:
            logger.info("Stopped %d migration worker(s)", len(workers))

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def wait_started(self, job_id: str, timeout: float) -> bool:
        """True once a worker picked the job up, False on timeout."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        try:
            await asyncio.wait_for(job.started.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def is_alive(self, run: MigrationRun) -> bool:
        if run.job_id is not None and run.job_id in self._jobs:
            return run.job_id in self._live_jobs
        return self._fallback_probe.is_alive(run)

    async def run_maintenance(self) -> dict[str, int]:
        """Purge expired checkpoints and finished runs."""
        checkpoints = 0
        if self._checkpoints is not None:
            checkpoints = await self._checkpoints.purge_expired()
        runs = await self._run_state.purge_finished(self._config.run_retention_days)
        return {"checkpoints_purged": checkpoints, "runs_purged": runs}

    async def __aenter__(self) -> JobDispatcher:
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: _Job) -> None:
        ctx = job.context
        with self._tracer.span(
            "objmigrate.dispatcher.execute",
            {ATTR_COMMAND: ctx.command, ATTR_RUN_ID: ctx.run_id, ATTR_JOB_ID: ctx.job_id},
        ):
            try:
                await self._run_state.update(
                    ctx.run_id,
                    status=RunStatus.RUNNING,
                    pid=os.getpid(),
                    worker_id=f"{self._hostname}:{os.getpid()}:{ctx.job_id}",
                )
                job.started.set()
                await job.handler(ctx)
            except asyncio.CancelledError:
                await self._settle(ctx, RunStatus.PAUSED, INTERRUPTED_MESSAGE)
                raise
            except Exception as e:
                logger.exception("Job %s for run %s failed", ctx.job_id, ctx.run_id)
                await self._settle(ctx, RunStatus.FAILED, str(e))
            else:
                await self._settle(ctx, RunStatus.COMPLETED, None)
            finally:
                job.started.set()
                self._live_jobs.discard(ctx.job_id)

    async def _settle(self, ctx: JobContext, status: RunStatus, message: str | None) -> None:
        run = await self._run_state.repository.get(ctx.run_id)
        if run is None or run.is_terminal:
            return
        if status == RunStatus.COMPLETED and not run.status.is_active:
            return
        try:
            await self._run_state.update(ctx.run_id, status=status, error_message=message)
        except Exception:
            logger.exception("Could not record %s for run %s", status.value, ctx.run_id)


def migration_job(
    runner_factory: Callable[[JobContext], BatchRunner] | BatchRunner,
) -> JobHandler:
    """
    Adapt a BatchRunner to a job handler.

    Recognized arguments: ``phase``, ``prefix``, ``target_prefix``,
    ``resume``, ``resume_from``, ``dry_run``, ``skip_lock``, ``lock_name``.
    """

    async def handler(ctx: JobContext) -> RunResult:
        runner = (
            runner_factory if isinstance(runner_factory, BatchRunner) else runner_factory(ctx)
        )
        args = ctx.args
        target_prefix = args.get("target_prefix")
        request = RunRequest(
            run_id=ctx.run_id,
            phase=RunPhase(args.get("phase", RunPhase.COPY.value)),
            prefix=str(args.get("prefix") or ""),
            target_prefix=str(target_prefix) if target_prefix is not None else None,
            resume=_as_bool(args.get("resume", False)),
            resume_from=args.get("resume_from") or None,
            dry_run=_as_bool(args.get("dry_run", False)),
            skip_lock=_as_bool(args.get("skip_lock", False)),
            lock_name=args.get("lock_name") or None,
        )
        return await runner.execute(request)

    return handler


__all__ = [
    "COMMAND_PATTERN",
    "DispatchReceipt",
    "DispatchRequest",
    "JobContext",
    "JobDispatcher",
    "JobHandler",
    "build_command_line",
    "migration_job",
]
