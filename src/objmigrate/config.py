"""
Engine configuration.

EngineConfig is an explicitly constructed, immutable value passed into the
batch runner, lock manager and dispatcher. There is no module-level
configuration state; two runners in one process may use different configs.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for migration runs.

    Attributes:
        batch_size: Objects per batch. None uses the source provider's
            optimal batch size; an explicit value is still capped by it.
        page_size: Objects requested per listing page.
        checkpoint_every_batches: Persist a checkpoint every N batches.
        changelog_flush_every: Flush the changelog every N batches.
        max_retries: Retries for a transient per-item failure.
        retry_delay_ms: Fixed delay between per-item retries.
        error_threshold: Cumulative general errors that fail the run.
        critical_error_threshold: Cumulative critical (permission/auth)
            errors that fail the run.
        max_repeated_errors: Identical consecutive errors that trip the
            circuit breaker.
        checkpoint_retention_hours: Age after which checkpoints are purged.
        run_retention_days: Age after which finished runs are purged.
        lock_name: Default lock subject.
        lock_timeout_seconds: Lease duration.
        lock_acquire_timeout_seconds: How long acquisition retries.
        lock_retry_interval_seconds: Sleep between acquisition attempts.
        lock_refresh_interval_seconds: Lease refresh period; must be shorter
            than the lease duration.
        skip_existing: Skip objects already present at the target with the
            same size.
        output_max_lines: Size of the run's trailing output ring.
        poll_interval_seconds: Default interval for progress polling.
        worker_pool_size: Concurrent background jobs.

    Example:
        >>> config = EngineConfig(batch_size=50, max_retries=1)
        >>> config.checkpoint_every_batches
        1
    """

    batch_size: int | None = None
    page_size: int = 1000
    checkpoint_every_batches: int = 1
    changelog_flush_every: int = 5
    max_retries: int = 3
    retry_delay_ms: int = 1000
    error_threshold: int = 50
    critical_error_threshold: int = 20
    max_repeated_errors: int = 10
    checkpoint_retention_hours: int = 72
    run_retention_days: int = 7
    lock_name: str = "full-migration"
    lock_timeout_seconds: float = 43200.0
    lock_acquire_timeout_seconds: float = 3.0
    lock_retry_interval_seconds: float = 0.5
    lock_refresh_interval_seconds: float = 300.0
    skip_existing: bool = True
    output_max_lines: int = 200
    poll_interval_seconds: float = 2.0
    worker_pool_size: int = 2

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size is not None and self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")
        if self.checkpoint_every_batches < 1:
            raise ValueError(
                f"checkpoint_every_batches must be >= 1, got {self.checkpoint_every_batches}"
            )
        if self.changelog_flush_every < 1:
            raise ValueError(
                f"changelog_flush_every must be >= 1, got {self.changelog_flush_every}"
            )
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {self.retry_delay_ms}")
        for name in ("error_threshold", "critical_error_threshold", "max_repeated_errors"):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
        if self.checkpoint_retention_hours < 1:
            raise ValueError(
                f"checkpoint_retention_hours must be >= 1, got {self.checkpoint_retention_hours}"
            )
        if self.run_retention_days < 1:
            raise ValueError(f"run_retention_days must be >= 1, got {self.run_retention_days}")
        if not self.lock_name:
            raise ValueError("lock_name must not be empty")
        if self.lock_timeout_seconds <= 0:
            raise ValueError(f"lock_timeout_seconds must be > 0, got {self.lock_timeout_seconds}")
        if self.lock_acquire_timeout_seconds < 0:
            raise ValueError(
                "lock_acquire_timeout_seconds must be >= 0, "
                f"got {self.lock_acquire_timeout_seconds}"
            )
        if self.lock_retry_interval_seconds <= 0:
            raise ValueError(
                "lock_retry_interval_seconds must be > 0, "
                f"got {self.lock_retry_interval_seconds}"
            )
        if not 0 < self.lock_refresh_interval_seconds < self.lock_timeout_seconds:
            raise ValueError(
                "lock_refresh_interval_seconds must be > 0 and shorter than "
                f"lock_timeout_seconds ({self.lock_refresh_interval_seconds} >= "
                f"{self.lock_timeout_seconds})"
            )
        if self.output_max_lines < 1:
            raise ValueError(f"output_max_lines must be >= 1, got {self.output_max_lines}")
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds}"
            )
        if self.worker_pool_size < 1:
            raise ValueError(f"worker_pool_size must be >= 1, got {self.worker_pool_size}")

    def effective_batch_size(self, optimal_batch_size: int) -> int:
        """Batch size bounded by the provider's optimal batch size."""
        if self.batch_size is None:
            return optimal_batch_size
        return min(self.batch_size, optimal_batch_size)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """
        Create from dictionary, ignoring unknown keys.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            EngineConfig instance.
        """
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


__all__ = ["EngineConfig"]
