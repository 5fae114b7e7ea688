"""
Rollback of a run's copies from its changelog.

Every ``moved`` entry that actually wrote an object names the target key it
wrote. Rolling back walks those entries newest first and deletes the
target keys; the source objects were never touched, so nothing else needs
undoing. ``merged`` and ``duplicate`` entries only affect the reference
index and are reported as skipped.

Example:
    >>> engine = RollbackEngine(JsonlChangeLogSink(log_dir), target)
    >>> report = await engine.rollback(run_id, dry_run=True)
    >>> report.total_operations
    250
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from objmigrate.changelog import ChangeAction, ChangeEntry, ChangeLogSink
from objmigrate.exceptions import ChangeLogNotFoundError, MigrationError
from objmigrate.models import RunPhase
from objmigrate.observability import ATTR_DRY_RUN, ATTR_RUN_ID, Tracer, create_tracer
from objmigrate.storage import StorageProvider

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 50


@dataclass
class RollbackReport:
    """Outcome (or, for a dry run, preview) of a rollback."""

    run_id: str
    dry_run: bool
    total_operations: int
    reversed: int = 0
    skipped: int = 0
    errors: int = 0
    by_action: dict[str, int] = field(default_factory=dict)
    by_phase: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "total_operations": self.total_operations,
            "reversed": self.reversed,
            "skipped": self.skipped,
            "errors": self.errors,
            "by_action": dict(self.by_action),
            "by_phase": dict(self.by_phase),
        }


def _reversible_target(entry: ChangeEntry) -> str | None:
    if entry.action != ChangeAction.MOVED or entry.details.get("dry_run"):
        return None
    target = entry.details.get("target")
    return str(target) if target else None


class RollbackEngine:
    """
    Undo the object writes a run recorded in its changelog.

    Args:
        sink: Changelog storage the run flushed to.
        target: Provider the run copied objects into.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        sink: ChangeLogSink,
        target: StorageProvider,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._sink = sink
        self._target = target

    async def _entries(
        self,
        run_id: str,
        phases: Iterable[RunPhase | str] | None,
    ) -> list[ChangeEntry]:
        entries = await self._sink.load(run_id)
        if not entries:
            raise ChangeLogNotFoundError(run_id)
        if phases is not None:
            wanted = {RunPhase(phase) for phase in phases}
            entries = [entry for entry in entries if entry.phase in wanted]
        return sorted(entries, key=lambda entry: entry.sequence)

    async def phases_summary(self, run_id: str) -> dict[str, int]:
        """Changelog entry counts per phase."""
        entries = await self._entries(run_id, None)
        return dict(Counter(entry.phase.value for entry in entries))

    async def rollback(
        self,
        run_id: str,
        *,
        phases: Iterable[RunPhase | str] | None = None,
        dry_run: bool = False,
    ) -> RollbackReport:
        """
        Delete the target objects a run wrote, newest first.

        Args:
            run_id: Run whose changelog is replayed.
            phases: Limit the rollback to entries recorded in these phases.
            dry_run: Count what would be reversed without deleting anything.

        Raises:
            ChangeLogNotFoundError: If the run has no changelog entries.
            ValueError: For an unknown phase name.
        """
        with self._tracer.span(
            "objmigrate.rollback.run",
            {ATTR_RUN_ID: run_id, ATTR_DRY_RUN: dry_run},
        ):
            entries = await self._entries(run_id, phases)
            report = RollbackReport(
                run_id=run_id,
                dry_run=dry_run,
                total_operations=len(entries),
                by_action=dict(Counter(entry.action.value for entry in entries)),
                by_phase=dict(Counter(entry.phase.value for entry in entries)),
            )
            if dry_run:
                report.reversed = sum(1 for entry in entries if _reversible_target(entry))
                report.skipped = report.total_operations - report.reversed
                logger.info(
                    "Dry-run rollback of run %s: %d of %d operation(s) reversible",
                    run_id,
                    report.reversed,
                    report.total_operations,
                )
                return report

            logger.info("Rolling back %d operation(s) of run %s", len(entries), run_id)
            for done, entry in enumerate(reversed(entries), start=1):
                target_key = _reversible_target(entry)
                if target_key is None:
                    report.skipped += 1
                else:
                    try:
                        await self._target.delete(target_key)
                        report.reversed += 1
                    except MigrationError as e:
                        report.errors += 1
                        logger.warning(
                            "Rollback of %s (%s) failed: %s", entry.path, target_key, e
                        )
                if done % PROGRESS_LOG_INTERVAL == 0:
                    logger.info("Rollback progress: %d/%d", done, len(entries))

            logger.info(
                "Rollback of run %s finished: %d reversed, %d skipped, %d error(s)",
                run_id,
                report.reversed,
                report.skipped,
                report.errors,
            )
            return report


__all__ = ["RollbackEngine", "RollbackReport"]
