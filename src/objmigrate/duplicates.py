"""
Duplicate resolution for objects colliding on identity.

When two catalogue records share an identity key (the filename within a
target area) one of them must survive. The winner is chosen by a fixed
tie-break chain so the outcome never depends on arrival order:

    1. usage count (records in use beat orphans)
    2. size (larger is assumed to be the original)
    3. last-modified time (newer wins)
    4. record id (higher wins)

Merging moves the loser's references onto the winner, keeps the loser's
bytes when they are larger, and then removes the loser.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from objmigrate.observability import (
    ATTR_DUPLICATE_ACTION,
    ATTR_OBJECT_PATH,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)
from objmigrate.storage import ObjectMetadata, StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_STORAGE = "default"


@dataclass(frozen=True)
class ObjectRecord:
    """
    Catalogue entry for a stored object.

    Attributes:
        record_id: Catalogue identifier (higher is newer).
        identity: Collision key, normally the filename.
        path: Object key within ``storage``.
        size: Size in bytes.
        last_modified: Modification time, if known.
        usage_count: Inbound references to the record.
        scope: Area within which identities collide (e.g. a target folder).
        storage: Name of the storage holding the object's bytes.
    """

    record_id: int
    identity: str
    path: str
    size: int = 0
    last_modified: datetime | None = None
    usage_count: int = 0
    scope: str = ""
    storage: str = DEFAULT_STORAGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "identity": self.identity,
            "path": self.path,
            "size": self.size,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "usage_count": self.usage_count,
            "scope": self.scope,
            "storage": self.storage,
        }


@runtime_checkable
class ReferenceIndex(Protocol):
    """Catalogue of object records and their inbound references."""

    async def record_for(self, obj: ObjectMetadata) -> ObjectRecord | None: ...

    async def find_by_identity(
        self,
        identity: str,
        *,
        exclude_id: int | None = None,
        scope: str | None = None,
    ) -> ObjectRecord | None: ...

    async def list_records(self, scope: str | None = None) -> list[ObjectRecord]: ...

    async def reassign_references(self, loser_id: int, winner_id: int) -> int: ...

    async def update_size(self, record_id: int, size: int) -> None: ...

    async def remove(self, record_id: int) -> None: ...


class InMemoryReferenceIndex:
    """
    Reference index held in memory.

    Usage counts are derived from the stored references, so reassigning
    references changes the counts reported by later lookups.

    Example:
        >>> index = InMemoryReferenceIndex()
        >>> index.add(ObjectRecord(1, "a.jpg", "photos/a.jpg", size=500), references=["entry-1"])
    """

    def __init__(self) -> None:
        self._records: dict[int, ObjectRecord] = {}
        self._references: dict[int, list[str]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def add(self, record: ObjectRecord, references: Iterable[str] = ()) -> ObjectRecord:
        self._records[record.record_id] = record
        self._references[record.record_id].extend(references)
        return self._current(record.record_id)

    def add_reference(self, record_id: int, referrer: str) -> None:
        self._references[record_id].append(referrer)

    def references_of(self, record_id: int) -> list[str]:
        return list(self._references.get(record_id, []))

    def get(self, record_id: int) -> ObjectRecord | None:
        if record_id not in self._records:
            return None
        return self._current(record_id)

    def _current(self, record_id: int) -> ObjectRecord:
        record = self._records[record_id]
        return replace(record, usage_count=len(self._references.get(record_id, [])))

    async def record_for(self, obj: ObjectMetadata) -> ObjectRecord | None:
        async with self._lock:
            matches = [rid for rid, r in self._records.items() if r.path == obj.path]
            return self._current(max(matches)) if matches else None

    async def find_by_identity(
        self,
        identity: str,
        *,
        exclude_id: int | None = None,
        scope: str | None = None,
    ) -> ObjectRecord | None:
        async with self._lock:
            matches = sorted(
                rid
                for rid, r in self._records.items()
                if r.identity == identity
                and rid != exclude_id
                and (scope is None or r.scope == scope)
            )
            return self._current(matches[0]) if matches else None

    async def list_records(self, scope: str | None = None) -> list[ObjectRecord]:
        async with self._lock:
            return [
                self._current(rid)
                for rid in sorted(self._records)
                if scope is None or self._records[rid].scope == scope
            ]

    async def reassign_references(self, loser_id: int, winner_id: int) -> int:
        async with self._lock:
            moved = self._references.pop(loser_id, [])
            self._references[winner_id].extend(moved)
            return len(moved)

    async def update_size(self, record_id: int, size: int) -> None:
        async with self._lock:
            if record_id in self._records:
                self._records[record_id] = replace(self._records[record_id], size=size)

    async def remove(self, record_id: int) -> None:
        async with self._lock:
            self._records.pop(record_id, None)
            self._references.pop(record_id, None)


class DuplicateAction(Enum):
    """Outcome of a collision check."""

    KEEP = "keep"
    """No collision: process the candidate normally."""

    OVERWRITE = "overwrite"
    """Candidate wins: the existing record is merged into it."""

    MERGE_INTO_EXISTING = "merge_into_existing"
    """Existing record wins: the candidate is merged into it."""


@dataclass(frozen=True)
class DuplicateDecision:
    action: DuplicateAction
    winner: ObjectRecord
    loser: ObjectRecord | None = None
    reason: str = "no_collision"

    @property
    def is_collision(self) -> bool:
        return self.loser is not None


@dataclass(frozen=True)
class MergeOutcome:
    """What ``DuplicateResolver.apply`` did (or would have done in a dry run)."""

    winner_id: int
    loser_id: int
    references_moved: int = 0
    content_copied: bool = False
    content_deleted: bool = False
    dry_run: bool = False


@dataclass
class ResolutionSummary:
    resolved: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"resolved": self.resolved, "errors": self.errors, "details": list(self.details)}


def _compare(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


class DuplicateResolver:
    """
    Deterministic winner selection and merging.

    Args:
        index: Catalogue holding records and references.
        storages: Providers by storage name, used to copy and delete bytes.
            A single provider is registered under ``"default"``.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        index: ReferenceIndex,
        storages: Mapping[str, StorageProvider] | StorageProvider | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._index = index
        if storages is None:
            self._storages: dict[str, StorageProvider] = {}
        elif isinstance(storages, Mapping):
            self._storages = dict(storages)
        else:
            self._storages = {DEFAULT_STORAGE: storages}

    @property
    def index(self) -> ReferenceIndex:
        return self._index

    @staticmethod
    def pick_winner(a: ObjectRecord, b: ObjectRecord) -> tuple[ObjectRecord, str]:
        """
        Return the surviving record and the tie-break that decided it.

        Reasons: ``usage``, ``size``, ``last_modified``, ``record_id``.
        """
        steps: tuple[tuple[str, Any, Any], ...] = (
            ("usage", a.usage_count, b.usage_count),
            ("size", a.size, b.size),
        )
        for reason, left, right in steps:
            order = _compare(left, right)
            if order:
                return (a if order > 0 else b), reason

        if a.last_modified is not None and b.last_modified is not None:
            order = _compare(a.last_modified, b.last_modified)
            if order:
                return (a if order > 0 else b), "last_modified"

        return (a if a.record_id > b.record_id else b), "record_id"

    def resolve(
        self,
        candidate: ObjectRecord,
        existing: ObjectRecord | None,
    ) -> DuplicateDecision:
        """Decide what to do with ``candidate`` given the record at its target."""
        if existing is None or existing.record_id == candidate.record_id:
            return DuplicateDecision(DuplicateAction.KEEP, winner=candidate)

        winner, reason = self.pick_winner(candidate, existing)
        if winner.record_id == candidate.record_id:
            logger.info(
                "Resolving duplicate '%s': candidate #%d wins over #%d (%s)",
                candidate.identity,
                candidate.record_id,
                existing.record_id,
                reason,
            )
            return DuplicateDecision(DuplicateAction.OVERWRITE, candidate, existing, reason)

        logger.info(
            "Resolving duplicate '%s': existing #%d wins over #%d (%s)",
            candidate.identity,
            existing.record_id,
            candidate.record_id,
            reason,
        )
        return DuplicateDecision(DuplicateAction.MERGE_INTO_EXISTING, existing, candidate, reason)

    @staticmethod
    def points_to_same_file(a: ObjectRecord, b: ObjectRecord) -> bool:
        return a.storage == b.storage and a.path == b.path

    @staticmethod
    def find_shared_files(records: Iterable[ObjectRecord]) -> dict[str, list[ObjectRecord]]:
        """Group records sharing one underlying file; only groups of 2+ are returned."""
        groups: dict[str, list[ObjectRecord]] = defaultdict(list)
        for record in records:
            groups[f"{record.storage}::{record.path}"].append(record)
        return {key: items for key, items in groups.items() if len(items) > 1}

    async def apply(self, decision: DuplicateDecision, *, dry_run: bool = False) -> MergeOutcome | None:
        """
        Merge the decision's loser into its winner.

        Returns None for ``keep`` decisions. In a dry run nothing changes
        and the outcome only reports what would be merged.
        """
        loser = decision.loser
        if loser is None:
            return None
        winner = decision.winner

        with self._tracer.span(
            "objmigrate.duplicates.apply",
            {
                ATTR_DUPLICATE_ACTION: decision.action.value,
                ATTR_RECORD_ID: winner.record_id,
                ATTR_OBJECT_PATH: winner.path,
            },
        ):
            if dry_run:
                return MergeOutcome(winner.record_id, loser.record_id, dry_run=True)

            moved = await self._index.reassign_references(loser.record_id, winner.record_id)

            copied = False
            if loser.size > winner.size:
                copied = await self._copy_content(loser, winner)
                if copied:
                    await self._index.update_size(winner.record_id, loser.size)

            await self._index.remove(loser.record_id)
            deleted = False
            if not self.points_to_same_file(winner, loser):
                deleted = await self._delete_content(loser)

            logger.info(
                "Merged record #%d into #%d (%d reference(s) moved, content copied: %s)",
                loser.record_id,
                winner.record_id,
                moved,
                copied,
            )
            return MergeOutcome(
                winner_id=winner.record_id,
                loser_id=loser.record_id,
                references_moved=moved,
                content_copied=copied,
                content_deleted=deleted,
            )

    async def _copy_content(self, loser: ObjectRecord, winner: ObjectRecord) -> bool:
        source = self._storages.get(loser.storage)
        target = self._storages.get(winner.storage)
        if source is None or target is None:
            logger.warning(
                "Could not copy file from #%d to #%d: no storage configured",
                loser.record_id,
                winner.record_id,
            )
            return False
        try:
            data = await source.read(loser.path)
            await target.write(winner.path, data)
        except Exception as e:
            logger.warning(
                "Could not copy file from loser #%d to winner #%d: %s",
                loser.record_id,
                winner.record_id,
                e,
            )
            return False
        return True

    async def _delete_content(self, loser: ObjectRecord) -> bool:
        storage = self._storages.get(loser.storage)
        if storage is None:
            logger.debug("No storage for record #%d; leaving its content", loser.record_id)
            return False
        await storage.delete(loser.path)
        return True

    async def resolve_all(
        self,
        scope: str | None = None,
        *,
        dry_run: bool = False,
    ) -> ResolutionSummary:
        """
        Resolve every identity collision within ``scope`` (all scopes if None).

        Each group of two or more records is reduced to one winner and the
        others are merged into it. A failed merge is counted and logged and
        does not stop the sweep.
        """
        summary = ResolutionSummary()
        records = await self._index.list_records(scope)

        groups: dict[tuple[str, str], list[ObjectRecord]] = defaultdict(list)
        for record in records:
            groups[(record.scope, record.identity)].append(record)

        for (group_scope, identity), members in sorted(groups.items()):
            if len(members) < 2:
                continue
            winner = members[0]
            for record in members[1:]:
                winner, _ = self.pick_winner(winner, record)

            for record in members:
                if record.record_id == winner.record_id:
                    continue
                logger.info(
                    "Merging duplicate '%s': record #%d -> #%d",
                    identity,
                    record.record_id,
                    winner.record_id,
                )
                decision = DuplicateDecision(
                    DuplicateAction.MERGE_INTO_EXISTING, winner, record, "resolve_all"
                )
                try:
                    outcome = await self.apply(decision, dry_run=dry_run)
                except Exception as e:
                    summary.errors += 1
                    logger.error(
                        "Error merging record #%d into #%d: %s",
                        record.record_id,
                        winner.record_id,
                        e,
                    )
                    continue
                summary.resolved += 1
                if outcome is not None and outcome.content_copied:
                    winner = replace(winner, size=record.size)
                summary.details.append(
                    {
                        "scope": group_scope,
                        "identity": identity,
                        "winner": winner.record_id,
                        "loser": record.record_id,
                        "dry_run": dry_run,
                    }
                )
        return summary


__all__ = [
    "DEFAULT_STORAGE",
    "DuplicateAction",
    "DuplicateDecision",
    "DuplicateResolver",
    "InMemoryReferenceIndex",
    "MergeOutcome",
    "ObjectRecord",
    "ReferenceIndex",
    "ResolutionSummary",
]
