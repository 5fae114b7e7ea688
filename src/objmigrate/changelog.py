"""
Per-run changelog of object-level actions.

Entries buffer in memory and are flushed to a ChangeLogSink in batches,
so the log costs one write per flush rather than one per object.

Example:
    >>> changelog = ChangeLog("migration-1700000000-ab12", JsonlChangeLogSink(log_dir))
    >>> changelog.record("moved", "photos/a.jpg", size=1024)
    >>> await changelog.flush()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from objmigrate.models import RunPhase, format_timestamp, parse_timestamp, utcnow
from objmigrate.serialization import json_dumps, json_loads

logger = logging.getLogger(__name__)


class ChangeAction(Enum):
    """What happened to an object."""

    MOVED = "moved"
    SKIPPED = "skipped"
    MERGED = "merged"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ChangeEntry:
    """One changelog line."""

    sequence: int
    run_id: str
    action: ChangeAction
    path: str
    phase: RunPhase
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "run_id": self.run_id,
            "action": self.action.value,
            "path": self.path,
            "phase": self.phase.value,
            "timestamp": format_timestamp(self.timestamp),
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEntry:
        return cls(
            sequence=int(data["sequence"]),
            run_id=data["run_id"],
            action=ChangeAction(data["action"]),
            path=data["path"],
            phase=RunPhase(data["phase"]),
            timestamp=parse_timestamp(data["timestamp"]) or utcnow(),
            details=dict(data.get("details") or {}),
        )


@runtime_checkable
class ChangeLogSink(Protocol):
    """Destination for flushed changelog entries."""

    async def write(self, run_id: str, entries: Sequence[ChangeEntry]) -> None: ...

    async def load(self, run_id: str) -> list[ChangeEntry]: ...

    async def list_runs(self) -> list[str]: ...


class InMemoryChangeLogSink:
    """Sink keeping entries in memory, for tests."""

    def __init__(self) -> None:
        self._entries: dict[str, list[ChangeEntry]] = {}
        self.flush_count = 0

    async def write(self, run_id: str, entries: Sequence[ChangeEntry]) -> None:
        self._entries.setdefault(run_id, []).extend(entries)
        self.flush_count += 1

    async def load(self, run_id: str) -> list[ChangeEntry]:
        return list(self._entries.get(run_id, []))

    async def list_runs(self) -> list[str]:
        return sorted(self._entries)


class JsonlChangeLogSink:
    """
    One JSON-lines file per run under ``directory``.

    Files are appended to, so a resumed run continues its existing log.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, run_id: str) -> Path:
        return self._directory / f"{run_id}.jsonl"

    def _append(self, run_id: str, lines: list[str]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        with self.path_for(run_id).open("a", encoding="utf-8") as handle:
            handle.writelines(line + "\n" for line in lines)

    def _read(self, run_id: str) -> list[ChangeEntry]:
        path = self.path_for(run_id)
        if not path.exists():
            return []
        with path.open(encoding="utf-8") as handle:
            return [
                ChangeEntry.from_dict(json_loads(line)) for line in handle if line.strip()
            ]

    async def write(self, run_id: str, entries: Sequence[ChangeEntry]) -> None:
        lines = [json_dumps(entry.to_dict()) for entry in entries]
        await asyncio.to_thread(self._append, run_id, lines)

    async def load(self, run_id: str) -> list[ChangeEntry]:
        return await asyncio.to_thread(self._read, run_id)

    async def list_runs(self) -> list[str]:
        if not self._directory.exists():
            return []
        return sorted(path.stem for path in self._directory.glob("*.jsonl"))


class ChangeLog:
    """
    Buffered changelog for one run.

    Args:
        run_id: Run the entries belong to.
        sink: Where flushed entries go.
        phase: Initial phase stamped on entries.
        start_sequence: First sequence number (continues a resumed log).
    """

    def __init__(
        self,
        run_id: str,
        sink: ChangeLogSink,
        *,
        phase: RunPhase = RunPhase.COPY,
        start_sequence: int = 0,
    ) -> None:
        self._run_id = run_id
        self._sink = sink
        self._phase = phase
        self._sequence = start_sequence
        self._buffer: list[ChangeEntry] = []

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def sequence(self) -> int:
        return self._sequence

    def record(self, action: ChangeAction | str, path: str, /, **details: Any) -> ChangeEntry:
        self._sequence += 1
        entry = ChangeEntry(
            sequence=self._sequence,
            run_id=self._run_id,
            action=ChangeAction(action),
            path=path,
            phase=self._phase,
            timestamp=utcnow(),
            details=details,
        )
        self._buffer.append(entry)
        return entry

    async def set_phase(self, phase: RunPhase) -> None:
        """Switch phase; entries of the previous phase are flushed first."""
        if phase != self._phase:
            await self.flush()
            self._phase = phase

    async def flush(self) -> int:
        """Write buffered entries to the sink; returns how many were written."""
        if not self._buffer:
            return 0
        entries, self._buffer = self._buffer, []
        try:
            await self._sink.write(self._run_id, entries)
        except Exception:
            self._buffer = entries + self._buffer
            raise
        logger.debug("Flushed %d changelog entries for run %s", len(entries), self._run_id)
        return len(entries)

    def discard(self) -> int:
        """Drop buffered entries without writing them (dry runs)."""
        dropped = len(self._buffer)
        self._buffer.clear()
        return dropped


__all__ = [
    "ChangeAction",
    "ChangeEntry",
    "ChangeLog",
    "ChangeLogSink",
    "InMemoryChangeLogSink",
    "JsonlChangeLogSink",
]
