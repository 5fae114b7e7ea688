"""
BatchRunner - moves objects from a source provider to a target provider.

The runner drives one migration run through its lifecycle:

    Locking -> Resuming -> Iterating/Transferring -> Checkpointing
            -> ErrorPolicyCheck -> (next batch | Finalizing)

Progress is written to the run state after every batch and checkpoints
are saved at batch boundaries, so an interrupted run resumes from its
last completed batch. Cancellation and lock loss are observed at batch
boundaries only.

What happens to each listed object depends on the run's phase:

    discovery       compare against the target, write nothing
    copy            resolve duplicates, then transfer missing objects
    consolidation   resolve duplicates only
    verification    check every object is present at the target

Usage:
    >>> runner = BatchRunner(source, target, run_state, checkpoints, locks,
    ...                      config=EngineConfig())
    >>> async for progress in runner.run(RunRequest(run_id=run.run_id)):
    ...     print(f"{progress.progress_percent:.1f}%")
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from objmigrate.changelog import ChangeAction, ChangeLog, ChangeLogSink
from objmigrate.checkpoints import CheckpointManager
from objmigrate.config import EngineConfig
from objmigrate.duplicates import (
    DuplicateAction,
    DuplicateResolver,
    ReferenceIndex,
)
from objmigrate.error_policy import ErrorPolicy, RetryPolicy
from objmigrate.exceptions import (
    LockHeldError,
    MigrationEngineError,
    MigrationError,
    RunNotFoundError,
    classify_exception,
)
from objmigrate.locks import LeaseKeeper, LockManager, default_holder_id
from objmigrate.models import Checkpoint, MigrationRun, RunPhase, RunStats, RunStatus
from objmigrate.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_DRY_RUN,
    ATTR_OBJECT_PATH,
    ATTR_PREFIX,
    ATTR_PROCESSED_COUNT,
    ATTR_RUN_ID,
    ATTR_RUN_PHASE,
    Tracer,
    create_tracer,
)
from objmigrate.runs import RunStateService
from objmigrate.storage import ObjectMetadata, StorageProvider, WriteOptions

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Migration cancelled by user; resume to continue"
INTERRUPTED_MESSAGE = "Migration interrupted; resume to continue"
MISSING_AT_TARGET = "MISSING_AT_TARGET"


@dataclass(frozen=True)
class RunRequest:
    """
    Parameters of one runner invocation.

    Attributes:
        run_id: Run record to execute (must exist).
        phase: Phase being executed.
        prefix: Source key prefix to migrate.
        target_prefix: Replaces ``prefix`` in target keys (None keeps keys).
        resume: Continue from the latest checkpoint of this run, or else of
            the most recently paused run.
        resume_from: Run whose checkpoint to continue from.
        dry_run: Count and resolve without mutating anything.
        skip_lock: Run without the migration lock.
        lock_name: Lock to take (default: the configured lock name).
    """

    run_id: str
    phase: RunPhase = RunPhase.COPY
    prefix: str = ""
    target_prefix: str | None = None
    resume: bool = False
    resume_from: str | None = None
    dry_run: bool = False
    skip_lock: bool = False
    lock_name: str | None = None

    def __post_init__(self) -> None:
        if not self.run_id:
            raise ValueError("run_id must not be empty")

    def target_key(self, path: str) -> str:
        if self.target_prefix is None or not path.startswith(self.prefix):
            return path
        return self.target_prefix + path[len(self.prefix) :]


@dataclass(frozen=True)
class BatchProgress:
    """
    Progress after one batch.

    Attributes:
        run_id: Run being executed.
        batch_number: Batches completed so far (including resumed ones).
        batch_size: Objects in this batch.
        processed_count: Objects processed so far.
        total_count: Objects expected in total.
        cursor: Key of the last processed object.
        stats: RunStats as a dictionary.
        checkpoint_id: Latest checkpoint, if one was written.
        objects_per_second: Processing rate of this invocation.
        eta_seconds: Estimated time to finish at that rate (None until
            a rate is known).
        dry_run: Whether the run mutates nothing.
    """

    run_id: str
    batch_number: int
    batch_size: int
    processed_count: int
    total_count: int
    cursor: str | None
    stats: dict[str, Any]
    checkpoint_id: str | None
    objects_per_second: float
    eta_seconds: float | None = None
    dry_run: bool = False

    @property
    def progress_percent(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return min(100.0, (self.processed_count / self.total_count) * 100)


@dataclass
class RunResult:
    """Outcome of ``BatchRunner.execute``."""

    run_id: str
    status: RunStatus
    processed_count: int
    total_count: int
    batches: int
    stats: RunStats = field(default_factory=RunStats)
    checkpoint_id: str | None = None
    error_message: str | None = None
    duration_seconds: float = 0.0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "processed_count": self.processed_count,
            "total_count": self.total_count,
            "batches": self.batches,
            "stats": self.stats.to_dict(),
            "checkpoint_id": self.checkpoint_id,
            "error_message": self.error_message,
            "duration_seconds": self.duration_seconds,
            "dry_run": self.dry_run,
        }


@dataclass
class _RunContext:
    request: RunRequest
    policy: ErrorPolicy
    retry: RetryPolicy
    changelog: ChangeLog | None
    stats: RunStats = field(default_factory=RunStats)
    processed: int = 0
    total: int = 0
    cursor: str | None = None
    batch_number: int = 0
    checkpoint_id: str | None = None
    checkpointed_batch: int = 0
    resumed_from: str | None = None
    paused: bool = False

    @property
    def run_id(self) -> str:
        return self.request.run_id

    @property
    def dry_run(self) -> bool:
        return self.request.dry_run

    def log(self, action: ChangeAction, path: str, /, **details: Any) -> None:
        if self.changelog is not None:
            self.changelog.record(action, path, **details)


class BatchRunner:
    """
    Executes migration runs batch by batch.

    Args:
        source: Provider objects are read from.
        target: Provider objects are written to.
        run_state: Run record service (progress and status).
        checkpoints: Checkpoint manager for resume points.
        locks: Lock manager (may be None only for ``skip_lock`` runs).
        config: Engine configuration.
        resolver: Duplicate resolver; with ``references`` enables
            collision handling.
        references: Catalogue used to find colliding records.
        changelog: Sink for the per-run changelog (None disables it).
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        source: StorageProvider,
        target: StorageProvider,
        run_state: RunStateService,
        checkpoints: CheckpointManager,
        locks: LockManager | None,
        *,
        config: EngineConfig | None = None,
        resolver: DuplicateResolver | None = None,
        references: ReferenceIndex | None = None,
        changelog: ChangeLogSink | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._run_state = run_state
        self._checkpoints = checkpoints
        self._locks = locks
        self._config = config or EngineConfig()
        self._resolver = resolver
        self._references = references if references is not None else (
            resolver.index if resolver is not None else None
        )
        self._changelog_sink = changelog
        self._handlers = {
            RunPhase.DISCOVERY: self._discover,
            RunPhase.COPY: self._transfer,
            RunPhase.CONSOLIDATION: self._consolidate,
            RunPhase.VERIFICATION: self._verify,
        }

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def batch_size(self) -> int:
        return self._config.effective_batch_size(self._source.capabilities().optimal_batch_size)

    async def execute(self, request: RunRequest) -> RunResult:
        """Run to the end and return the outcome; errors propagate."""
        start = time.monotonic()
        batches = 0
        async for _ in self.run(request):
            batches += 1
        run = await self._run_state.get(request.run_id)
        if run is None:
            raise RunNotFoundError(request.run_id)
        return RunResult(
            run_id=run.run_id,
            status=run.status,
            processed_count=run.processed_count,
            total_count=run.total_count,
            batches=batches,
            stats=run.stats,
            checkpoint_id=run.checkpoint_id,
            error_message=run.error_message,
            duration_seconds=time.monotonic() - start,
            dry_run=request.dry_run,
        )

    async def run(self, request: RunRequest) -> AsyncIterator[BatchProgress]:
        """
        Execute a run, yielding progress after every batch.

        A consumer that stops iterating early leaves the run ``paused``
        with a checkpoint, the same as a cancelled task.

        Raises:
            RunNotFoundError: If the run record does not exist.
            ValueError: For a consolidation run without a resolver.
            LockHeldError: If another migration holds the lock.
            MigrationError: For run-level failures (the run is marked failed).
            MigrationEngineError: For unexpected failures, chained to the cause.
        """
        with self._tracer.span(
            "objmigrate.runner.run",
            {
                ATTR_RUN_ID: request.run_id,
                ATTR_RUN_PHASE: request.phase.value,
                ATTR_PREFIX: request.prefix,
                ATTR_DRY_RUN: request.dry_run,
            },
        ):
            run = await self._run_state.get(request.run_id)
            if run is None:
                raise RunNotFoundError(request.run_id)
            if request.phase == RunPhase.CONSOLIDATION and (
                self._resolver is None or self._references is None
            ):
                raise ValueError("The consolidation phase requires a DuplicateResolver")

            if request.skip_lock:
                logger.warning(
                    "Running %s without the migration lock; concurrent runs are not prevented",
                    request.run_id,
                )
                lock_cm: Any = contextlib.nullcontext(None)
            elif self._locks is None:
                raise ValueError("A LockManager is required unless skip_lock is set")
            else:
                lock_cm = self._locks.hold(
                    request.lock_name or self._config.lock_name,
                    request.run_id,
                    timeout=self._config.lock_acquire_timeout_seconds,
                    retry_interval=self._config.lock_retry_interval_seconds,
                    refresh_interval=self._config.lock_refresh_interval_seconds,
                )

            try:
                async with lock_cm as keeper:
                    async with contextlib.aclosing(
                        self._run_locked(run, request, keeper)
                    ) as steps:
                        async for progress in steps:
                            yield progress
            except LockHeldError as e:
                logger.error("Run %s not started: %s", request.run_id, e)
                await self._mark_failed(request.run_id, str(e))
                raise

    async def _run_locked(
        self,
        run: MigrationRun,
        request: RunRequest,
        keeper: LeaseKeeper | None,
    ) -> AsyncIterator[BatchProgress]:
        ctx = _RunContext(
            request=request,
            policy=ErrorPolicy(
                self._config.error_threshold,
                self._config.critical_error_threshold,
                self._config.max_repeated_errors,
                run_id=request.run_id,
            ),
            retry=RetryPolicy(self._config.max_retries, self._config.retry_delay_ms),
            changelog=(
                ChangeLog(request.run_id, self._changelog_sink, phase=request.phase)
                if self._changelog_sink is not None
                else None
            ),
            total=run.total_count,
        )
        try:
            if request.resume:
                await self._resume(ctx, run)
            await self._start(ctx, run)

            async with contextlib.aclosing(self._iterate(ctx, keeper)) as batches:
                async for progress in batches:
                    yield progress

            if not ctx.paused:
                await self._finalize(ctx)
        except asyncio.CancelledError:
            logger.warning("Run %s interrupted at %d objects", ctx.run_id, ctx.processed)
            await self._mark_paused(ctx, INTERRUPTED_MESSAGE)
            raise
        except GeneratorExit:
            logger.warning("Run %s abandoned by its consumer at %d objects", ctx.run_id, ctx.processed)
            await self._mark_paused(ctx, INTERRUPTED_MESSAGE)
            raise
        except MigrationError as e:
            logger.error("Run %s failed: %s", ctx.run_id, e)
            await self._flush_changelog(ctx, reraise=False)
            await self._mark_failed(ctx.run_id, str(e), ctx)
            raise
        except Exception as e:
            logger.exception("Run %s failed unexpectedly", ctx.run_id)
            await self._flush_changelog(ctx, reraise=False)
            await self._mark_failed(ctx.run_id, str(e), ctx)
            raise MigrationEngineError(ctx.run_id, str(e)) from e

    async def _resume(self, ctx: _RunContext, run: MigrationRun) -> None:
        origin = await self._resume_origin(ctx, run)
        checkpoint = await self._checkpoints.load_resume_point(origin)
        if checkpoint is None:
            return
        self._seed_from(ctx, checkpoint)
        if origin.run_id != ctx.run_id:
            ctx.resumed_from = origin.run_id
        await self._run_state.append_output(
            ctx.run_id,
            f"Resuming from checkpoint {checkpoint.checkpoint_id} "
            f"({checkpoint.processed_count} objects already processed)",
        )

    async def _resume_origin(self, ctx: _RunContext, run: MigrationRun) -> MigrationRun:
        """
        Run whose checkpoint a resume continues from.

        An explicit ``resume_from`` wins. Otherwise the run's own checkpoints
        are used, and a run without any picks up the most recently updated
        paused run.
        """
        requested = ctx.request.resume_from
        if requested and requested != run.run_id:
            origin = await self._run_state.get(requested)
            if origin is None:
                raise RunNotFoundError(requested)
            return origin
        if requested or await self._checkpoints.load_latest(run.run_id) is not None:
            return run

        latest = await self._run_state.get_latest_incomplete(
            exclude=run.run_id, include_pending=False
        )
        if latest is None or latest.status != RunStatus.PAUSED:
            logger.info("Run %s found nothing to resume; starting clean", run.run_id)
            return run
        logger.info("Run %s resumes paused run %s", run.run_id, latest.run_id)
        return latest

    async def _supersede_origin(self, ctx: _RunContext) -> None:
        """Close the paused run this run resumed, once its progress is carried over."""
        origin_id, ctx.resumed_from = ctx.resumed_from, None
        if origin_id is None or ctx.dry_run:
            return
        origin = await self._run_state.get(origin_id)
        if origin is None or origin.status != RunStatus.PAUSED:
            return
        message = f"Superseded by run {ctx.run_id}"
        await self._run_state.update(origin_id, status=RunStatus.FAILED, error_message=message)
        await self._run_state.append_output(origin_id, message)
        logger.info("Run %s superseded by resumed run %s", origin_id, ctx.run_id)

    @staticmethod
    def _seed_from(ctx: _RunContext, checkpoint: Checkpoint) -> None:
        ctx.cursor = checkpoint.cursor
        ctx.processed = checkpoint.processed_count
        ctx.total = max(ctx.total, checkpoint.total_count)
        ctx.batch_number = checkpoint.batch_number
        ctx.checkpointed_batch = checkpoint.batch_number
        ctx.stats = RunStats.from_dict(checkpoint.stats)
        ctx.policy.restore(
            {**checkpoint.stats.get("error_policy", {}), "errors": checkpoint.errors}
        )
        if checkpoint.run_id == ctx.run_id:
            ctx.checkpoint_id = checkpoint.checkpoint_id

    async def _start(self, ctx: _RunContext, run: MigrationRun) -> None:
        if ctx.total <= 0 or not ctx.request.resume:
            ctx.total = await self._source.list(
                ctx.request.prefix, page_size=self._config.page_size
            ).count()

        worker_id = self._locks.holder_id if self._locks is not None else default_holder_id()
        if ctx.request.resume:
            # A cancel that paused the run must not stop its resumption.
            await self._run_state.clear_cancel(ctx.run_id)
        await self._run_state.update(
            ctx.run_id,
            status=RunStatus.RUNNING,
            phase=ctx.request.phase,
            pid=os.getpid(),
            worker_id=worker_id,
            total_count=ctx.total,
            processed_count=ctx.processed,
            cursor=ctx.cursor,
            current_batch=ctx.batch_number,
            stats=ctx.stats.copy(),
            error_message=None,
        )
        mode = " (dry run)" if ctx.dry_run else ""
        await self._run_state.append_output(
            ctx.run_id,
            f"Starting {ctx.request.phase.value} of {ctx.total} objects "
            f"from '{ctx.request.prefix}'{mode}",
        )
        logger.info(
            "Starting run %s: %d objects under '%s', batch size %d%s",
            ctx.run_id,
            ctx.total,
            ctx.request.prefix,
            self.batch_size,
            mode,
        )

    async def _iterate(
        self,
        ctx: _RunContext,
        keeper: LeaseKeeper | None,
    ) -> AsyncIterator[BatchProgress]:
        iterator = self._source.list(
            ctx.request.prefix,
            page_size=self._config.page_size,
            start_after=ctx.cursor,
        )
        started = time.monotonic()
        processed_here = 0

        async for batch in iterator.batches(self.batch_size):
            if keeper is not None:
                keeper.check()
            if await self._cancelled(ctx):
                await self._pause_for_cancel(ctx)
                return

            with self._tracer.span(
                "objmigrate.runner.batch",
                {
                    ATTR_RUN_ID: ctx.run_id,
                    ATTR_BATCH_NUMBER: ctx.batch_number + 1,
                    ATTR_BATCH_SIZE: len(batch),
                },
            ):
                for obj in batch:
                    await self._process_item(ctx, obj)

                ctx.batch_number += 1
                ctx.processed += len(batch)
                ctx.total = max(ctx.total, ctx.processed)
                ctx.cursor = batch[-1].path
                processed_here += len(batch)

                await self._record_progress(ctx)
                await self._maybe_checkpoint(ctx)
                await self._maybe_flush_changelog(ctx)
                ctx.policy.check_thresholds()

            elapsed = time.monotonic() - started
            rate = processed_here / elapsed if elapsed > 0 else 0.0
            remaining = max(ctx.total - ctx.processed, 0)
            yield BatchProgress(
                run_id=ctx.run_id,
                batch_number=ctx.batch_number,
                batch_size=len(batch),
                processed_count=ctx.processed,
                total_count=ctx.total,
                cursor=ctx.cursor,
                stats=ctx.stats.to_dict(),
                checkpoint_id=ctx.checkpoint_id,
                objects_per_second=rate,
                eta_seconds=remaining / rate if rate > 0 else None,
                dry_run=ctx.dry_run,
            )

        if keeper is not None:
            keeper.check()

    async def _process_item(self, ctx: _RunContext, obj: ObjectMetadata) -> None:
        with self._tracer.span("objmigrate.runner.item", {ATTR_OBJECT_PATH: obj.path}):
            try:
                await self._handlers[ctx.request.phase](ctx, obj)
            except Exception as e:
                code = classify_exception(e).error_code
                ctx.stats.record_error(code)
                ctx.log(ChangeAction.FAILED, obj.path, error=str(e), code=code)
                ctx.policy.record_failure(e, obj.path)
            else:
                ctx.policy.record_success()

    async def _resolve_duplicate(self, ctx: _RunContext, obj: ObjectMetadata) -> bool:
        """Resolve an identity collision; True when the object was merged away."""
        if self._resolver is None or self._references is None:
            return False
        candidate = await self._references.record_for(obj)
        if candidate is None:
            return False
        existing = await self._references.find_by_identity(
            candidate.identity, exclude_id=candidate.record_id
        )
        decision = self._resolver.resolve(candidate, existing)
        if decision.loser is None:
            return False

        ctx.log(
            ChangeAction.DUPLICATE,
            obj.path,
            action=decision.action.value,
            winner=decision.winner.record_id,
            loser=decision.loser.record_id,
            reason=decision.reason,
        )
        await self._resolver.apply(decision, dry_run=ctx.dry_run)
        ctx.stats.merged += 1
        if decision.action != DuplicateAction.MERGE_INTO_EXISTING:
            return False
        ctx.stats.skipped += 1
        ctx.log(ChangeAction.MERGED, obj.path, into=decision.winner.path, dry_run=ctx.dry_run)
        return True

    async def _at_target(
        self, ctx: _RunContext, obj: ObjectMetadata, target_key: str
    ) -> ObjectMetadata | None:
        """Target copy of ``obj`` when one of the same size exists."""
        present = await ctx.retry.run(
            lambda: self._target.metadata(target_key),
            on_retry=lambda attempt, exc: self._count_retry(ctx),
        )
        if present is not None and present.size == obj.size:
            return present
        return None

    async def _discover(self, ctx: _RunContext, obj: ObjectMetadata) -> None:
        if await self._at_target(ctx, obj, ctx.request.target_key(obj.path)) is not None:
            ctx.stats.skipped += 1
            return
        ctx.stats.discovered += 1
        logger.debug("Discovered %s (%d bytes) to transfer", obj.path, obj.size)

    async def _consolidate(self, ctx: _RunContext, obj: ObjectMetadata) -> None:
        await self._resolve_duplicate(ctx, obj)

    async def _verify(self, ctx: _RunContext, obj: ObjectMetadata) -> None:
        target_key = ctx.request.target_key(obj.path)
        if await self._at_target(ctx, obj, target_key) is not None:
            ctx.stats.verified += 1
            return
        # Counted as failed, outside the retry and circuit breaker accounting.
        ctx.stats.record_error(MISSING_AT_TARGET)
        ctx.log(ChangeAction.FAILED, obj.path, target=target_key, code=MISSING_AT_TARGET)
        logger.warning("Verification: %s is missing at target key %s", obj.path, target_key)

    async def _transfer(self, ctx: _RunContext, obj: ObjectMetadata) -> None:
        if await self._resolve_duplicate(ctx, obj):
            return

        target_key = ctx.request.target_key(obj.path)
        if (
            self._config.skip_existing
            and await self._at_target(ctx, obj, target_key) is not None
        ):
            ctx.stats.skipped += 1
            ctx.log(ChangeAction.SKIPPED, obj.path, reason="exists")
            logger.debug("Skipping %s: already at target", obj.path)
            return

        if ctx.dry_run:
            ctx.stats.moved += 1
            ctx.log(ChangeAction.MOVED, obj.path, target=target_key, size=obj.size, dry_run=True)
            return

        data = await ctx.retry.run(
            lambda: self._source.read(obj.path),
            on_retry=lambda attempt, exc: self._count_retry(ctx),
        )
        await ctx.retry.run(
            lambda: self._target.write(target_key, data, WriteOptions.from_metadata(obj)),
            on_retry=lambda attempt, exc: self._count_retry(ctx),
        )
        ctx.stats.moved += 1
        ctx.log(ChangeAction.MOVED, obj.path, target=target_key, size=obj.size)
        logger.debug("Moved %s -> %s (%d bytes)", obj.path, target_key, obj.size)

    @staticmethod
    def _count_retry(ctx: _RunContext) -> None:
        ctx.stats.retried += 1

    async def _record_progress(self, ctx: _RunContext) -> None:
        percent = (ctx.processed / ctx.total * 100) if ctx.total > 0 else 0.0
        await self._run_state.update(
            ctx.run_id,
            processed_count=ctx.processed,
            total_count=ctx.total,
            cursor=ctx.cursor,
            current_batch=ctx.batch_number,
            stats=ctx.stats.copy(),
        )
        await self._run_state.append_output(
            ctx.run_id,
            f"Progress: {ctx.processed}/{ctx.total} ({percent:.1f}%)",
        )

    async def _maybe_checkpoint(self, ctx: _RunContext) -> None:
        if ctx.batch_number % self._config.checkpoint_every_batches == 0:
            await self._save_checkpoint(ctx)

    async def _save_checkpoint(self, ctx: _RunContext) -> None:
        if ctx.dry_run:
            return
        snapshot = ctx.policy.snapshot()
        errors = snapshot.pop("errors")
        checkpoint = await self._checkpoints.save(
            ctx.run_id,
            phase=ctx.request.phase,
            cursor=ctx.cursor,
            processed_count=ctx.processed,
            total_count=ctx.total,
            batch_number=ctx.batch_number,
            stats={**ctx.stats.to_dict(), "error_policy": snapshot},
            errors=errors,
        )
        ctx.checkpoint_id = checkpoint.checkpoint_id
        ctx.checkpointed_batch = ctx.batch_number
        await self._run_state.update(ctx.run_id, checkpoint_id=checkpoint.checkpoint_id)
        await self._supersede_origin(ctx)

    async def _maybe_flush_changelog(self, ctx: _RunContext) -> None:
        if ctx.batch_number % self._config.changelog_flush_every == 0:
            await self._flush_changelog(ctx)

    async def _flush_changelog(self, ctx: _RunContext, *, reraise: bool = True) -> None:
        if ctx.changelog is None:
            return
        if ctx.dry_run:
            ctx.changelog.discard()
            return
        try:
            await ctx.changelog.flush()
        except Exception:
            # On failure paths the original error wins; entries stay buffered.
            logger.exception("Failed to flush changelog for run %s", ctx.run_id)
            if reraise:
                raise

    async def _cancelled(self, ctx: _RunContext) -> bool:
        return await self._run_state.is_cancel_requested(ctx.run_id)

    async def _pause_for_cancel(self, ctx: _RunContext) -> None:
        logger.info("Run %s cancelled at %d/%d objects", ctx.run_id, ctx.processed, ctx.total)
        await self._save_checkpoint(ctx)
        await self._flush_changelog(ctx)
        await self._run_state.update(
            ctx.run_id,
            status=RunStatus.PAUSED,
            error_message=CANCELLED_MESSAGE,
        )
        await self._run_state.append_output(ctx.run_id, CANCELLED_MESSAGE)
        ctx.paused = True

    async def _finalize(self, ctx: _RunContext) -> None:
        with self._tracer.span(
            "objmigrate.runner.finalize",
            {ATTR_RUN_ID: ctx.run_id, ATTR_PROCESSED_COUNT: ctx.processed},
        ):
            await self._flush_changelog(ctx)
            await self._run_state.update(
                ctx.run_id,
                status=RunStatus.COMPLETED,
                processed_count=ctx.processed,
                total_count=ctx.total,
                cursor=ctx.cursor,
                current_batch=ctx.batch_number,
                stats=ctx.stats.copy(),
            )
            await self._run_state.append_output(ctx.run_id, self._summary(ctx))
            await self._supersede_origin(ctx)
            logger.info("Run %s completed: %s", ctx.run_id, ctx.stats.to_dict())

    @staticmethod
    def _summary(ctx: _RunContext) -> str:
        stats = ctx.stats
        if ctx.request.phase == RunPhase.DISCOVERY:
            return (
                f"Discovery completed: {stats.discovered} to transfer, "
                f"{stats.skipped} already at target, {stats.failed} failed"
            )
        if ctx.request.phase == RunPhase.VERIFICATION:
            return (
                f"Verification completed: {stats.verified} verified, "
                f"{stats.errors_by_kind.get(MISSING_AT_TARGET, 0)} missing, {stats.failed} failed"
            )
        return (
            f"Migration completed: {stats.moved} moved, {stats.skipped} skipped, "
            f"{stats.merged} merged, {stats.failed} failed"
        )

    async def _mark_paused(self, ctx: _RunContext, message: str) -> None:
        try:
            await self._save_checkpoint(ctx)
            await self._run_state.update(ctx.run_id, status=RunStatus.PAUSED, error_message=message)
        except Exception:
            logger.exception("Could not record pause of run %s", ctx.run_id)

    async def _mark_failed(
        self,
        run_id: str,
        message: str,
        ctx: _RunContext | None = None,
    ) -> None:
        try:
            run = await self._run_state.get(run_id)
            if run is None or run.is_terminal:
                return
            changes: dict[str, Any] = {"status": RunStatus.FAILED, "error_message": message}
            if ctx is not None:
                changes["stats"] = ctx.stats.copy()
            await self._run_state.update(run_id, **changes)
            await self._run_state.append_output(run_id, f"Migration failed: {message}")
        except Exception:
            logger.exception("Could not record failure of run %s", run_id)


__all__ = [
    "BatchProgress",
    "BatchRunner",
    "CANCELLED_MESSAGE",
    "INTERRUPTED_MESSAGE",
    "MISSING_AT_TARGET",
    "RunRequest",
    "RunResult",
]
