"""
Progress reporting for dispatched runs.

ProgressChannel produces the short frame sequence a caller sees right
after dispatching (starting, running, first progress, detached); after
that the caller polls the run record with ``poll_run``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal

from objmigrate.dispatcher import DispatchReceipt, JobDispatcher
from objmigrate.exceptions import RunNotFoundError
from objmigrate.models import MigrationRun, RunStatus
from objmigrate.observability import ATTR_RUN_ID, Tracer, create_tracer
from objmigrate.runs import RunStateService
from objmigrate.serialization import json_dumps

logger = logging.getLogger(__name__)

FrameStatus = Literal["starting", "running", "progress", "completed", "failed", "error", "detached"]


@dataclass(frozen=True)
class ProgressFrame:
    """One event of the progress stream."""

    status: FrameStatus
    message: str | None = None
    percent: float | None = None
    pid: int | None = None
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        for name in ("message", "percent", "pid", "run_id"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    def to_json(self) -> str:
        return json_dumps(self.to_dict())

    def to_sse(self) -> str:
        """Server-sent events encoding: ``data: {...}`` and a blank line."""
        return f"data: {self.to_json()}\n\n"


def _terminal_frame(run: MigrationRun) -> ProgressFrame:
    if run.status == RunStatus.COMPLETED:
        return ProgressFrame(
            "completed",
            message="Migration completed",
            percent=100.0,
            pid=run.pid,
            run_id=run.run_id,
        )
    return ProgressFrame(
        "failed",
        message=run.error_message or "Migration failed",
        percent=round(run.progress_percent, 2),
        pid=run.pid,
        run_id=run.run_id,
    )


class ProgressChannel:
    """
    Short-lived progress stream for a freshly dispatched run.

    The last frame is always ``detached``; the run keeps going in the
    background and can be followed with ``poll_run``.

    Args:
        run_state: Run state service.
        dispatcher: Dispatcher that queued the job.
        start_timeout: Seconds to wait for a worker to pick the job up.
        first_progress_timeout: Seconds to wait for the first progress.
        probe_interval: Seconds between run record reads.
    """

    def __init__(
        self,
        run_state: RunStateService,
        dispatcher: JobDispatcher,
        *,
        start_timeout: float = 10.0,
        first_progress_timeout: float = 5.0,
        probe_interval: float = 0.25,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._run_state = run_state
        self._dispatcher = dispatcher
        self._start_timeout = start_timeout
        self._first_progress_timeout = first_progress_timeout
        self._probe_interval = probe_interval

    async def stream(self, receipt: DispatchReceipt) -> AsyncIterator[ProgressFrame]:
        run_id = receipt.run_id
        with self._tracer.span("objmigrate.progress.stream", {ATTR_RUN_ID: run_id}):
            yield ProgressFrame("starting", message=f"Starting {receipt.command_line}", run_id=run_id)

            started = await self._dispatcher.wait_started(receipt.job_id, self._start_timeout)
            run = await self._run_state.get(run_id)
            if not started or run is None or run.status == RunStatus.PENDING:
                logger.warning("Worker for run %s did not start within %.1fs", run_id, self._start_timeout)
                yield ProgressFrame(
                    "error",
                    message=f"Worker did not start within {self._start_timeout:g}s",
                    run_id=run_id,
                )
                yield self._detached(run_id)
                return

            if run.is_terminal:
                yield _terminal_frame(run)
                yield self._detached(run_id)
                return

            yield ProgressFrame(
                "running",
                message="Migration started in background",
                pid=run.pid,
                run_id=run_id,
            )

            frame = await self._first_progress(run_id)
            if frame is not None:
                yield frame
            yield self._detached(run_id)

    async def _first_progress(self, run_id: str) -> ProgressFrame | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._first_progress_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self._probe_interval)
            run = await self._run_state.get(run_id)
            if run is None:
                return None
            if run.is_terminal:
                return _terminal_frame(run)
            if run.processed_count > 0:
                return ProgressFrame(
                    "progress",
                    message=f"Progress: {run.processed_count}/{run.total_count}",
                    percent=round(run.progress_percent, 2),
                    pid=run.pid,
                    run_id=run_id,
                )
            if not run.status.is_active:
                return None
        return None

    @staticmethod
    def _detached(run_id: str) -> ProgressFrame:
        return ProgressFrame(
            "detached",
            message="Migration continues in the background; poll the run for progress",
            run_id=run_id,
        )


async def poll_run(
    run_state: RunStateService,
    run_id: str,
    *,
    interval: float = 2.0,
) -> AsyncIterator[MigrationRun]:
    """
    Yield run snapshots whenever the record changes.

    Stops after yielding a run that is terminal or paused.

    Raises:
        RunNotFoundError: If the run does not exist.
    """
    previous: dict[str, Any] | None = None
    while True:
        run = await run_state.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        current = run.to_dict()
        if current != previous:
            previous = current
            yield run
        if not run.status.is_active:
            return
        await asyncio.sleep(interval)


async def wait_for_terminal(
    run_state: RunStateService,
    run_id: str,
    *,
    interval: float = 2.0,
    timeout: float | None = None,
) -> MigrationRun:
    """
    Poll until the run stops progressing and return its final snapshot.

    Raises:
        RunNotFoundError: If the run does not exist.
        TimeoutError: If ``timeout`` elapses first.
    """

    async def _drain() -> MigrationRun:
        last: MigrationRun | None = None
        async for run in poll_run(run_state, run_id, interval=interval):
            last = run
        if last is None:
            raise RunNotFoundError(run_id)
        return last

    return await asyncio.wait_for(_drain(), timeout=timeout)


__all__ = ["FrameStatus", "ProgressChannel", "ProgressFrame", "poll_run", "wait_for_terminal"]
