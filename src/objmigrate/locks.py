"""
Migration lock: one active migration per lock name.

The lock is a lease in a shared LockStore. A holder refreshes its lease in
the background; a lease that is not refreshed lapses, so a crashed worker
never blocks migrations for longer than the lease duration.

Example:
    >>> manager = LockManager(SQLiteLockStore(db), lock_duration=43200)
    >>> async with manager.hold("full-migration", run_id) as keeper:
    ...     for batch in batches:
    ...         keeper.check()
    ...         await process(batch)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from objmigrate.exceptions import LockHeldError, LockLostError
from objmigrate.models import utcnow
from objmigrate.observability import (
    ATTR_LOCK_HOLDER,
    ATTR_LOCK_NAME,
    ATTR_LOCK_TIMEOUT,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from objmigrate.repositories.lock import LockLease, LockStore

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DURATION = 43200.0


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class LockManager:
    """
    Acquires, refreshes and releases migration locks.

    Args:
        store: Lease storage shared by every worker.
        lock_duration: Lease length in seconds.
        holder_id: Identity recorded with the lease (default hostname:pid).
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        store: LockStore,
        *,
        lock_duration: float = DEFAULT_LOCK_DURATION,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if lock_duration <= 0:
            raise ValueError(f"lock_duration must be positive, got {lock_duration}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._lock_duration = lock_duration
        self._holder_id = holder_id or default_holder_id()

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def lock_duration(self) -> float:
        return self._lock_duration

    @property
    def store(self) -> LockStore:
        return self._store

    def _new_lease(self, lock_name: str, run_id: str) -> LockLease:
        now = utcnow()
        return LockLease(
            lock_name=lock_name,
            run_id=run_id,
            holder_id=self._holder_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self._lock_duration),
        )

    async def acquire(
        self,
        lock_name: str,
        run_id: str,
        *,
        timeout: float = 3.0,
        retry_interval: float = 0.5,
    ) -> LockLease:
        """
        Acquire the lock, retrying until ``timeout`` elapses.

        Expired leases are purged before each attempt. Acquiring a lock the
        same run already holds succeeds and extends the lease.

        Raises:
            LockHeldError: If another run still holds the lock at the deadline.
        """
        with self._tracer.span(
            "objmigrate.lock.acquire",
            {
                ATTR_LOCK_NAME: lock_name,
                ATTR_RUN_ID: run_id,
                ATTR_LOCK_HOLDER: self._holder_id,
                ATTR_LOCK_TIMEOUT: timeout,
            },
        ):
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout

            while True:
                purged = await self._store.purge_expired(utcnow())
                if purged:
                    logger.warning("Purged %d expired migration lock(s)", purged)

                lease = self._new_lease(lock_name, run_id)
                if await self._store.try_acquire(lease):
                    logger.info(
                        "Acquired migration lock %s for run %s (holder %s)",
                        lock_name,
                        run_id,
                        self._holder_id,
                    )
                    return lease

                if loop.time() >= deadline:
                    holder = await self._store.current(lock_name)
                    raise LockHeldError(
                        lock_name,
                        holder_id=holder.holder_id if holder else None,
                        holder_run_id=holder.run_id if holder else None,
                        age_seconds=holder.age_seconds() if holder else None,
                        timeout=timeout,
                        run_id=run_id,
                    )

                await asyncio.sleep(retry_interval)

    async def refresh(self, lease: LockLease) -> LockLease:
        """
        Extend a held lease by the full lock duration.

        Raises:
            LockLostError: If the lease row is gone or owned by another run.
        """
        with self._tracer.span(
            "objmigrate.lock.refresh",
            {ATTR_LOCK_NAME: lease.lock_name, ATTR_RUN_ID: lease.run_id},
        ):
            expires_at = utcnow() + timedelta(seconds=self._lock_duration)
            if not await self._store.extend(lease.lock_name, lease.run_id, expires_at):
                raise LockLostError(
                    lease.lock_name,
                    lease.run_id,
                    "lease no longer held by this run",
                )
            logger.debug("Refreshed migration lock %s until %s", lease.lock_name, expires_at)
            return LockLease(
                lock_name=lease.lock_name,
                run_id=lease.run_id,
                holder_id=lease.holder_id,
                acquired_at=lease.acquired_at,
                expires_at=expires_at,
            )

    async def release(self, lease: LockLease) -> bool:
        """Release a lease. Releasing a lease that is no longer held is a no-op."""
        with self._tracer.span(
            "objmigrate.lock.release",
            {ATTR_LOCK_NAME: lease.lock_name, ATTR_RUN_ID: lease.run_id},
        ):
            released = await self._store.release(lease.lock_name, lease.run_id)
            if released:
                logger.info("Released migration lock %s for run %s", lease.lock_name, lease.run_id)
            else:
                logger.debug(
                    "Migration lock %s was not held by run %s at release",
                    lease.lock_name,
                    lease.run_id,
                )
            return released

    async def current(self, lock_name: str) -> LockLease | None:
        return await self._store.current(lock_name)

    @asynccontextmanager
    async def hold(
        self,
        lock_name: str,
        run_id: str,
        *,
        timeout: float = 3.0,
        retry_interval: float = 0.5,
        refresh_interval: float = 300.0,
    ) -> AsyncIterator[LeaseKeeper]:
        """
        Hold the lock for the duration of the block.

        A LeaseKeeper refreshes the lease every ``refresh_interval`` seconds;
        the lock is released on exit, including on error or cancellation.
        """
        lease = await self.acquire(
            lock_name, run_id, timeout=timeout, retry_interval=retry_interval
        )
        keeper = LeaseKeeper(self, lease, refresh_interval=refresh_interval)
        keeper.start()
        try:
            yield keeper
        finally:
            await keeper.stop()
            await self.release(keeper.lease)


class LeaseKeeper:
    """
    Background task keeping a lease alive.

    A refresh failure stops the task and is recorded; ``check()`` re-raises
    it so the holder aborts at its next safe point.
    """

    def __init__(
        self,
        manager: LockManager,
        lease: LockLease,
        *,
        refresh_interval: float = 300.0,
    ) -> None:
        if refresh_interval <= 0:
            raise ValueError(f"refresh_interval must be positive, got {refresh_interval}")
        self._manager = manager
        self._lease = lease
        self._refresh_interval = refresh_interval
        self._task: asyncio.Task[None] | None = None
        self._failure: LockLostError | None = None

    @property
    def lease(self) -> LockLease:
        return self._lease

    @property
    def lost(self) -> bool:
        return self._failure is not None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._refresh_loop(), name=f"lease-keeper-{self._lease.lock_name}"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def check(self) -> None:
        """Raise LockLostError if the lease could not be refreshed."""
        if self._failure is not None:
            raise self._failure

    async def refresh_now(self) -> None:
        """Refresh immediately, recording a failure instead of raising."""
        try:
            self._lease = await self._manager.refresh(self._lease)
        except LockLostError as e:
            logger.error("Migration lock %s lost: %s", self._lease.lock_name, e.reason)
            self._failure = e
        except Exception as e:
            logger.error(
                "Refreshing migration lock %s failed: %s",
                self._lease.lock_name,
                e,
                exc_info=True,
            )
            self._failure = LockLostError(
                self._lease.lock_name, self._lease.run_id, f"refresh failed: {e}"
            )

    async def _refresh_loop(self) -> None:
        while self._failure is None:
            await asyncio.sleep(self._refresh_interval)
            await self.refresh_now()


__all__ = [
    "DEFAULT_LOCK_DURATION",
    "LeaseKeeper",
    "LockLease",
    "LockManager",
    "default_holder_id",
]
