"""
Unit tests for the job dispatcher.

Tests for:
- DispatchRequest validation and command line rendering
- Dispatching, job execution and settling of run status
- Worker pool shutdown and liveness answers
- The BatchRunner job adapter
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio

from objmigrate.checkpoints import CheckpointManager
from objmigrate.dispatcher import (
    DispatchRequest,
    JobContext,
    JobDispatcher,
    build_command_line,
    migration_job,
)
from objmigrate.exceptions import DispatchValidationError, UnknownCommandError
from objmigrate.models import MigrationRun, RunStatus
from objmigrate.observability import MockTracer
from objmigrate.runner import INTERRUPTED_MESSAGE, BatchRunner, RunRequest
from objmigrate.runs import RunStateService
from objmigrate.storage import InMemoryStorageProvider


class FakeProbe:
    def __init__(self, alive: bool) -> None:
        self.alive = alive
        self.checked: list[str] = []

    def is_alive(self, run: MigrationRun) -> bool:
        self.checked.append(run.run_id)
        return self.alive


async def finish(ctx: JobContext) -> None:
    await ctx.report(processed_count=1, total_count=1)


@pytest_asyncio.fixture
async def dispatcher(
    run_state: RunStateService,
    checkpoints: CheckpointManager,
) -> AsyncGenerator[JobDispatcher, None]:
    dispatcher = JobDispatcher(
        run_state,
        pool_size=2,
        checkpoints=checkpoints,
        fallback_probe=FakeProbe(alive=False),
        enable_tracing=False,
    )
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def gate() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture
def blocking(gate: asyncio.Event) -> Callable[[JobContext], Awaitable[None]]:
    """Handler that reports some progress and waits for the gate."""

    async def _handler(ctx: JobContext) -> None:
        await ctx.report(processed_count=10, total_count=100)
        await gate.wait()

    return _handler


class TestDispatchRequest:
    def test_valid(self) -> None:
        request = DispatchRequest.parse("migration/run", {"prefix": "a/", "paths": ["x", "y"]})

        assert request.command == "migration/run"
        assert request.args["paths"] == ["x", "y"]

    @pytest.mark.parametrize(
        "command",
        ["migration", "Migration/Run", "migration/run; rm -rf /", "/run", "migration/"],
    )
    def test_rejects_malformed_commands(self, command: str) -> None:
        with pytest.raises(DispatchValidationError) as exc_info:
            DispatchRequest.parse(command)

        assert exc_info.value.errors[0].startswith("command:")

    def test_rejects_nested_values(self) -> None:
        with pytest.raises(DispatchValidationError):
            DispatchRequest.parse("migration/run", {"options": {"deep": True}})

    def test_rejects_too_many_arguments(self) -> None:
        args = {f"arg{i}": i for i in range(51)}

        with pytest.raises(DispatchValidationError, match="Invalid dispatch request"):
            DispatchRequest.parse("migration/run", args)

    def test_rejects_oversized_values(self) -> None:
        with pytest.raises(DispatchValidationError) as exc_info:
            DispatchRequest.parse("migration/run", {"prefix": "x" * 1025})

        assert any("exceeds" in error for error in exc_info.value.errors)


class TestBuildCommandLine:
    def test_flags_and_values(self) -> None:
        line = build_command_line(
            "migration/run", {"dry_run": True, "prefix": "a/", "resume": 0, "skip_lock": False}
        )

        assert line == "migration/run --dry_run --prefix=a/"

    def test_lists_and_quoting(self) -> None:
        line = build_command_line("migration/run", {"ids": [1, 2, 3], "prefix": "my photos/"})

        assert line == "migration/run --ids=1,2,3 --prefix='my photos/'"

    def test_empty_values_are_omitted(self) -> None:
        assert build_command_line("migration/run", {"a": None, "b": "", "c": "0", "d": []}) == (
            "migration/run"
        )


class TestDispatch:
    def test_rejects_invalid_pool_size(self, run_state: RunStateService) -> None:
        with pytest.raises(ValueError):
            JobDispatcher(run_state, pool_size=0, enable_tracing=False)

    def test_register_validates_name(self, dispatcher: JobDispatcher) -> None:
        with pytest.raises(ValueError):
            dispatcher.register("not a command", finish)

        dispatcher.register("migration/run", finish)
        assert dispatcher.commands == ["migration/run"]

    @pytest.mark.asyncio
    async def test_unknown_command(
        self, dispatcher: JobDispatcher, run_state: RunStateService
    ) -> None:
        with pytest.raises(UnknownCommandError):
            await dispatcher.dispatch("migration/teleport")

        assert await run_state.list_runs() == []

    @pytest.mark.asyncio
    async def test_unknown_phase(self, dispatcher: JobDispatcher) -> None:
        dispatcher.register("migration/run", finish)

        with pytest.raises(DispatchValidationError) as exc_info:
            await dispatcher.dispatch("migration/run", {"phase": "warp"})

        assert exc_info.value.errors == ["args.phase: unknown phase 'warp'"]

    @pytest.mark.asyncio
    async def test_creates_run_record(
        self, dispatcher: JobDispatcher, run_state: RunStateService
    ) -> None:
        dispatcher.register("migration/run", finish)

        receipt = await dispatcher.dispatch("migration/run", {"prefix": "a/", "dry_run": "true"})

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert receipt.run_id.startswith("migration-")
        assert receipt.job_id.startswith("job-")
        assert run.job_id == receipt.job_id
        assert run.command == "migration/run --prefix=a/ --dry_run=true"
        assert run.dry_run is True
        assert dispatcher.is_running

    @pytest.mark.asyncio
    async def test_successful_job_completes_run(
        self, dispatcher: JobDispatcher, run_state: RunStateService
    ) -> None:
        dispatcher.register("migration/run", finish)

        receipt = await dispatcher.dispatch("migration/run")
        await dispatcher.join()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.processed_count == 1
        assert run.worker_id is not None
        assert run.worker_id.endswith(receipt.job_id)

    @pytest.mark.asyncio
    async def test_failing_job_fails_run(
        self, dispatcher: JobDispatcher, run_state: RunStateService
    ) -> None:
        async def explode(ctx: JobContext) -> None:
            raise RuntimeError("bucket vanished")

        dispatcher.register("migration/run", explode)

        receipt = await dispatcher.dispatch("migration/run")
        await dispatcher.join()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.FAILED
        assert run.error_message == "bucket vanished"

    @pytest.mark.asyncio
    async def test_paused_job_stays_paused(
        self, dispatcher: JobDispatcher, run_state: RunStateService
    ) -> None:
        async def pause(ctx: JobContext) -> None:
            await ctx.log("stopping early")
            await ctx.report(status=RunStatus.PAUSED)

        dispatcher.register("migration/run", pause)

        receipt = await dispatcher.dispatch("migration/run")
        await dispatcher.join()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.PAUSED
        assert run.output[-1] == "stopping early"

    @pytest.mark.asyncio
    async def test_emits_spans(self, run_state: RunStateService) -> None:
        tracer = MockTracer()
        dispatcher = JobDispatcher(run_state, tracer=tracer)
        dispatcher.register("migration/run", finish)

        async with dispatcher:
            await dispatcher.dispatch("migration/run")
            await dispatcher.join()

        assert tracer.span_names == [
            "objmigrate.dispatcher.dispatch",
            "objmigrate.dispatcher.execute",
        ]


class TestWorkers:
    @pytest.mark.asyncio
    async def test_stop_interrupts_running_job(
        self,
        dispatcher: JobDispatcher,
        run_state: RunStateService,
        blocking: Callable[[JobContext], Awaitable[None]],
    ) -> None:
        dispatcher.register("migration/run", blocking)
        receipt = await dispatcher.dispatch("migration/run")
        assert await dispatcher.wait_started(receipt.job_id, timeout=1.0)

        await dispatcher.stop()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.PAUSED
        assert run.error_message == INTERRUPTED_MESSAGE
        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_wait_started_times_out_when_pool_is_busy(
        self,
        run_state: RunStateService,
        gate: asyncio.Event,
        blocking: Callable[[JobContext], Awaitable[None]],
    ) -> None:
        dispatcher = JobDispatcher(run_state, pool_size=1, enable_tracing=False)
        dispatcher.register("migration/run", blocking)

        async with dispatcher:
            first = await dispatcher.dispatch("migration/run")
            second = await dispatcher.dispatch("migration/run")

            assert await dispatcher.wait_started(first.job_id, timeout=1.0)
            assert not await dispatcher.wait_started(second.job_id, timeout=0.05)
            assert not await dispatcher.wait_started("job-unknown", timeout=0.05)

            gate.set()
            await dispatcher.join()

        run = await run_state.get(second.run_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_running_job_is_alive(
        self,
        dispatcher: JobDispatcher,
        run_state: RunStateService,
        gate: asyncio.Event,
        blocking: Callable[[JobContext], Awaitable[None]],
    ) -> None:
        dispatcher.register("migration/run", blocking)
        receipt = await dispatcher.dispatch("migration/run")
        await dispatcher.wait_started(receipt.job_id, timeout=1.0)

        running = await run_state.get(receipt.run_id)
        assert running is not None
        assert running.status == RunStatus.RUNNING
        assert dispatcher.is_alive(running)
        assert run_state.process_handle is dispatcher

        gate.set()
        await dispatcher.join()

        assert not dispatcher.is_alive(running)

    @pytest.mark.asyncio
    async def test_foreign_runs_use_fallback_probe(
        self, dispatcher: JobDispatcher, run_state: RunStateService, create_run: Any
    ) -> None:
        run = await create_run(job_id="job-elsewhere")
        await run_state.update(run.run_id, status=RunStatus.RUNNING, pid=4242)

        reloaded = await run_state.get(run.run_id)

        assert reloaded is not None
        assert reloaded.status == RunStatus.PAUSED

    @pytest.mark.asyncio
    async def test_run_maintenance(self, dispatcher: JobDispatcher) -> None:
        assert await dispatcher.run_maintenance() == {"checkpoints_purged": 0, "runs_purged": 0}


class TestMigrationJob:
    @pytest.mark.asyncio
    async def test_runs_batch_runner(
        self,
        dispatcher: JobDispatcher,
        runner: BatchRunner,
        run_state: RunStateService,
        target: InMemoryStorageProvider,
    ) -> None:
        dispatcher.register("migration/run", migration_job(runner))

        receipt = await dispatcher.dispatch(
            "migration/run", {"prefix": "photos/", "target_prefix": "archive/"}
        )
        await dispatcher.join()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.processed_count == 250
        assert target.keys()[0] == "archive/0000.jpg"

    @pytest.mark.asyncio
    async def test_factory_and_dry_run_flag(
        self,
        dispatcher: JobDispatcher,
        runner: BatchRunner,
        run_state: RunStateService,
        target: InMemoryStorageProvider,
    ) -> None:
        contexts: list[JobContext] = []

        def build(ctx: JobContext) -> BatchRunner:
            contexts.append(ctx)
            return runner

        dispatcher.register("migration/run", migration_job(build))

        receipt = await dispatcher.dispatch("migration/run", {"dry_run": "1"})
        await dispatcher.join()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.stats.moved == 250
        assert target.writes == 0
        assert [ctx.run_id for ctx in contexts] == [receipt.run_id]

    @pytest.mark.asyncio
    async def test_resume_continues_latest_paused_run(
        self,
        dispatcher: JobDispatcher,
        runner: BatchRunner,
        run_state: RunStateService,
        target: InMemoryStorageProvider,
    ) -> None:
        paused = await run_state.create("migration-paused", "migration/run")
        async for step in runner.run(RunRequest(run_id=paused.run_id)):
            if step.batch_number == 1:
                await run_state.request_cancel(paused.run_id)
        dispatcher.register("migration/run", migration_job(runner))

        receipt = await dispatcher.dispatch("migration/run", {"resume": "1"})
        await dispatcher.join()

        run = await run_state.get(receipt.run_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.processed_count == 250
        assert target.writes == 250
        superseded = await run_state.get(paused.run_id)
        assert superseded is not None
        assert superseded.status == RunStatus.FAILED
        assert superseded.error_message == f"Superseded by run {receipt.run_id}"
