"""
End-to-end tests on SQLite stores and local filesystem providers.

A migration is dispatched as a background job, interrupted by a cancel,
resumed in a second dispatch, and checked against the files on disk, the
run record, the checkpoints and the JSONL changelog.
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import pytest

from objmigrate.changelog import ChangeAction, JsonlChangeLogSink
from objmigrate.checkpoints import CheckpointManager
from objmigrate.config import EngineConfig
from objmigrate.dispatcher import JobContext, JobDispatcher, migration_job
from objmigrate.locks import LockManager
from objmigrate.models import RunStatus
from objmigrate.progress import ProgressChannel, wait_for_terminal
from objmigrate.repositories import (
    SQLiteCheckpointStore,
    SQLiteLockStore,
    SQLiteRunStateRepository,
)
from objmigrate.runner import BatchRunner, RunRequest
from objmigrate.runs import RunStateService
from objmigrate.storage import LocalFilesystemProvider

pytestmark = [pytest.mark.integration, pytest.mark.e2e]

OBJECT_COUNT = 30


def populate(root: Path) -> None:
    for index in range(OBJECT_COUNT):
        path = root / "uploads" / f"{index % 3}" / f"file-{index:03d}.txt"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"payload {index}".encode())


class Stack:
    """Engine components wired to one SQLite database."""

    def __init__(self, conn: aiosqlite.Connection, tmp_path: Path) -> None:
        self.source_root = tmp_path / "source"
        self.target_root = tmp_path / "target"
        populate(self.source_root)
        self.run_state = RunStateService(
            SQLiteRunStateRepository(conn, enable_tracing=False), enable_tracing=False
        )
        self.checkpoints = CheckpointManager(
            SQLiteCheckpointStore(conn, enable_tracing=False), enable_tracing=False
        )
        self.locks = LockManager(
            SQLiteLockStore(conn, enable_tracing=False),
            holder_id="e2e-host:1",
            enable_tracing=False,
        )
        self.sink = JsonlChangeLogSink(tmp_path / "changelog")
        self.runner = BatchRunner(
            LocalFilesystemProvider(self.source_root, enable_tracing=False),
            LocalFilesystemProvider(self.target_root, enable_tracing=False),
            self.run_state,
            self.checkpoints,
            self.locks,
            config=EngineConfig(batch_size=10, retry_delay_ms=0, changelog_flush_every=1),
            changelog=self.sink,
            enable_tracing=False,
        )


@pytest.fixture
def stack(sqlite_file_connection: aiosqlite.Connection, tmp_path: Path) -> Stack:
    return Stack(sqlite_file_connection, tmp_path)


class TestDirectRun:
    @pytest.mark.asyncio
    async def test_copies_tree_with_new_prefix(self, stack: Stack) -> None:
        run = await stack.run_state.create("migration-e2e-1", "migration/run")

        result = await stack.runner.execute(
            RunRequest(run_id=run.run_id, prefix="uploads/", target_prefix="media/")
        )

        assert result.status == RunStatus.COMPLETED
        assert result.batches == 3
        copied = sorted(p for p in (stack.target_root / "media").rglob("*") if p.is_file())
        assert len(copied) == OBJECT_COUNT
        assert (stack.target_root / "media" / "1" / "file-004.txt").read_bytes() == b"payload 4"
        entries = await stack.sink.load(run.run_id)
        assert len(entries) == OBJECT_COUNT
        assert {e.action for e in entries} == {ChangeAction.MOVED}

    @pytest.mark.asyncio
    async def test_second_run_skips_everything(self, stack: Stack) -> None:
        first = await stack.run_state.create("migration-e2e-1", "migration/run")
        await stack.runner.execute(RunRequest(run_id=first.run_id))
        second = await stack.run_state.create("migration-e2e-2", "migration/run")

        result = await stack.runner.execute(RunRequest(run_id=second.run_id))

        assert result.stats.skipped == OBJECT_COUNT
        assert result.stats.moved == 0


class TestDispatchedRun:
    @pytest.mark.asyncio
    async def test_cancel_and_resume_through_dispatcher(self, stack: Stack) -> None:
        cancelled = False

        def build(ctx: JobContext) -> BatchRunner:
            return stack.runner

        async def job(ctx: JobContext) -> None:
            nonlocal cancelled
            request = RunRequest(
                run_id=ctx.run_id,
                resume=bool(ctx.args.get("resume")),
                resume_from=ctx.args.get("resume_from"),
            )
            async for progress in stack.runner.run(request):
                if not cancelled and progress.batch_number == 1:
                    cancelled = True
                    await stack.run_state.request_cancel(ctx.run_id)

        dispatcher = JobDispatcher(
            stack.run_state, pool_size=1, checkpoints=stack.checkpoints, enable_tracing=False
        )
        dispatcher.register("migration/run", job)
        dispatcher.register("migration/resume", migration_job(build))

        async with dispatcher:
            receipt = await dispatcher.dispatch("migration/run")
            first = await wait_for_terminal(stack.run_state, receipt.run_id, interval=0.01, timeout=10)

            resumed = await dispatcher.dispatch(
                "migration/resume", {"resume": True, "resume_from": receipt.run_id}
            )
            frames = [
                frame
                async for frame in ProgressChannel(
                    stack.run_state, dispatcher, probe_interval=0.01, enable_tracing=False
                ).stream(resumed)
            ]
            final = await wait_for_terminal(stack.run_state, resumed.run_id, interval=0.01, timeout=10)

        assert first.status == RunStatus.PAUSED
        assert first.processed_count == 10
        assert frames[0].status == "starting"
        assert frames[-1].status == "detached"
        assert final.status == RunStatus.COMPLETED
        assert final.processed_count == OBJECT_COUNT
        assert final.command == "migration/resume --resume --resume_from=" + receipt.run_id
        files = [p for p in stack.target_root.rglob("*") if p.is_file()]
        assert len(files) == OBJECT_COUNT
        assert await stack.locks.current("full-migration") is None
        assert len(await stack.checkpoints.list_for_run(resumed.run_id)) == 2
