"""
Unit tests for the buffered per-run changelog and its sinks.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from objmigrate.changelog import (
    ChangeAction,
    ChangeEntry,
    ChangeLog,
    ChangeLogSink,
    InMemoryChangeLogSink,
    JsonlChangeLogSink,
)
from objmigrate.models import RunPhase


class FlakySink(InMemoryChangeLogSink):
    """Sink whose first write fails."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    async def write(self, run_id: str, entries: Sequence[ChangeEntry]) -> None:
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        await super().write(run_id, entries)


class TestChangeLog:
    def test_record_buffers_with_sequence(self) -> None:
        changelog = ChangeLog("migration-1", InMemoryChangeLogSink())

        first = changelog.record(ChangeAction.MOVED, "a.jpg", size=10)
        second = changelog.record("skipped", "b.jpg")

        assert (first.sequence, second.sequence) == (1, 2)
        assert second.action == ChangeAction.SKIPPED
        assert first.details == {"size": 10}
        assert changelog.pending == 2

    def test_start_sequence_continues_a_resumed_log(self) -> None:
        changelog = ChangeLog("migration-1", InMemoryChangeLogSink(), start_sequence=41)

        assert changelog.record("moved", "a.jpg").sequence == 42
        assert changelog.sequence == 42

    def test_rejects_unknown_action(self) -> None:
        changelog = ChangeLog("migration-1", InMemoryChangeLogSink())

        with pytest.raises(ValueError):
            changelog.record("teleported", "a.jpg")

    @pytest.mark.asyncio
    async def test_flush_writes_once(self) -> None:
        sink = InMemoryChangeLogSink()
        changelog = ChangeLog("migration-1", sink)
        changelog.record("moved", "a.jpg")
        changelog.record("moved", "b.jpg")

        assert await changelog.flush() == 2
        assert await changelog.flush() == 0
        assert sink.flush_count == 1
        assert [e.path for e in await sink.load("migration-1")] == ["a.jpg", "b.jpg"]

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_entries(self) -> None:
        sink = FlakySink()
        changelog = ChangeLog("migration-1", sink)
        changelog.record("moved", "a.jpg")

        with pytest.raises(OSError):
            await changelog.flush()
        changelog.record("moved", "b.jpg")

        assert changelog.pending == 2
        assert await changelog.flush() == 2
        assert [e.path for e in await sink.load("migration-1")] == ["a.jpg", "b.jpg"]

    @pytest.mark.asyncio
    async def test_set_phase_flushes_previous_phase(self) -> None:
        sink = InMemoryChangeLogSink()
        changelog = ChangeLog("migration-1", sink)
        changelog.record("moved", "a.jpg")

        await changelog.set_phase(RunPhase.CONSOLIDATION)
        changelog.record("merged", "b.jpg")
        await changelog.flush()

        entries = await sink.load("migration-1")
        assert [e.phase for e in entries] == [RunPhase.COPY, RunPhase.CONSOLIDATION]
        assert sink.flush_count == 2

    @pytest.mark.asyncio
    async def test_discard(self) -> None:
        sink = InMemoryChangeLogSink()
        changelog = ChangeLog("migration-1", sink)
        changelog.record("moved", "a.jpg")

        assert changelog.discard() == 1
        assert await changelog.flush() == 0
        assert await sink.list_runs() == []


class TestJsonlChangeLogSink:
    @pytest.mark.asyncio
    async def test_appends_and_loads(self, tmp_path: Path) -> None:
        sink = JsonlChangeLogSink(tmp_path / "logs")
        changelog = ChangeLog("migration-1", sink)
        recorded = [changelog.record("moved", "a.jpg", size=3)]
        await changelog.flush()
        recorded.append(changelog.record("failed", "b.jpg", error="timeout"))
        await changelog.flush()

        entries = await sink.load("migration-1")

        assert entries == recorded
        assert [e.action for e in entries] == [ChangeAction.MOVED, ChangeAction.FAILED]
        assert entries[1].details == {"error": "timeout"}
        assert len(sink.path_for("migration-1").read_text().splitlines()) == 2

    @pytest.mark.asyncio
    async def test_list_runs(self, tmp_path: Path) -> None:
        sink = JsonlChangeLogSink(tmp_path)
        for run_id in ("migration-2", "migration-1"):
            log = ChangeLog(run_id, sink)
            log.record("moved", "a.jpg")
            await log.flush()

        assert await sink.list_runs() == ["migration-1", "migration-2"]

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path: Path) -> None:
        sink = JsonlChangeLogSink(tmp_path / "absent")

        assert await sink.list_runs() == []
        assert await sink.load("migration-1") == []

    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(JsonlChangeLogSink(tmp_path), ChangeLogSink)
        assert isinstance(InMemoryChangeLogSink(), ChangeLogSink)
