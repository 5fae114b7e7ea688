"""
Exceptions for the objmigrate migration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- RunNotFoundError
    +-- InvalidStatusTransitionError
    +-- LockHeldError
    +-- LockLostError
    +-- ProviderIOError
    +-- ObjectListingError
    +-- ProviderNotAvailableError
    +-- DispatchValidationError
    |   +-- UnknownCommandError
    +-- CircuitBreakerTripped
    +-- ErrorThresholdExceeded
    +-- ResumeInconsistencyError
    +-- CheckpointRegressionError
    +-- InvalidCheckpointError
    +-- ChangeLogNotFoundError
    +-- MigrationEngineError

Error Classification:
    Every exception carries an ErrorClassification describing its severity,
    whether it can be retried automatically, and what an operator should do.
    The batch runner consults the classification when deciding whether a
    per-item failure is retried, counted as critical, or aborts the run.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Failure that stops the run and needs operator attention.
        ERROR: Significant failure, usually recorded against the run.
        WARNING: Degraded condition that may self-resolve.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    """Failure that stops the run and needs operator attention."""

    ERROR = "error"
    """Significant failure, usually recorded against the run."""

    WARNING = "warning"
    """Degraded condition that may self-resolve."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The run can continue (or be resumed) once the
            underlying issue is addressed.
        TRANSIENT: Temporary error; automatic retry is appropriate.
        FATAL: Retrying cannot help; the item is failed or the run aborted.
    """

    RECOVERABLE = "recoverable"
    """The run can continue once the underlying issue is addressed."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error; no automatic retry."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic error retry.

    With ``exponential_base=1.0`` and ``jitter_factor=0.0`` the delay is
    fixed at ``base_delay_ms`` for every attempt, which is what the batch
    runner uses for per-item retries.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> RetryConfig(max_attempts=4, base_delay_ms=1000, exponential_base=1.0,
        ...             jitter_factor=0.0).get_delay_ms(3)
        1000.0
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    @classmethod
    def fixed(cls, max_retries: int, delay_ms: float) -> RetryConfig:
        """Build a fixed-delay configuration allowing ``max_retries`` retries."""
        return cls(
            max_attempts=max_retries + 1,
            base_delay_ms=delay_ms,
            max_delay_ms=delay_ms,
            exponential_base=1.0,
            jitter_factor=0.0,
        )

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


TRANSIENT_IO_RETRY_CONFIG = RetryConfig.fixed(max_retries=3, delay_ms=1000.0)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class MigrationError(Exception):
    """
    Base exception for all objmigrate errors.

    Attributes:
        message: Human-readable error description.
        run_id: The run that raised the error, if applicable.
        recoverable: Whether the run can be resumed after this error.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and the run's error message",
    )

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.run_id = run_id
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.run_id:
            parts.append(f"run_id={self.run_id}")
        if self.recoverable:
            parts.append("(recoverable)")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Error classification for this exception type."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "run_id": self.run_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class RunNotFoundError(MigrationError):
    """Raised when a requested run does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RUN_NOT_FOUND",
        category="run_state",
        suggested_action="Verify the run id; finished runs are purged after the retention window",
    )

    def __init__(self, run_id: str) -> None:
        super().__init__(message=f"Migration run not found: {run_id}", run_id=run_id)


class InvalidStatusTransitionError(MigrationError):
    """
    Raised when a run status change violates the status state machine.

    Attributes:
        current_status: Status the run is in.
        target_status: Status that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATUS_TRANSITION",
        category="run_state",
        suggested_action="Inspect the run; terminal runs cannot change status",
    )

    def __init__(self, run_id: str, current_status: str, target_status: str) -> None:
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message=f"Invalid status transition from {current_status} to {target_status}",
            run_id=run_id,
        )


class LockHeldError(MigrationError):
    """
    Raised when the migration lock is owned by another live holder.

    Attributes:
        lock_name: Name of the contested lock.
        holder_id: Identity of the current holder (hostname:pid).
        holder_run_id: Run that owns the lock.
        age_seconds: How long the current holder has owned the lock.
        timeout: Acquisition timeout that elapsed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="LOCK_HELD",
        category="lock",
        suggested_action=(
            "Another migration is currently running. Wait for it to finish, "
            "or inspect the holder; abandoned locks expire automatically."
        ),
    )

    def __init__(
        self,
        lock_name: str,
        *,
        holder_id: str | None,
        holder_run_id: str | None,
        age_seconds: float | None,
        timeout: float,
        run_id: str | None = None,
    ) -> None:
        self.lock_name = lock_name
        self.holder_id = holder_id
        self.holder_run_id = holder_run_id
        self.age_seconds = age_seconds
        self.timeout = timeout
        if holder_id is not None:
            age = f"{age_seconds:.0f}s" if age_seconds is not None else "unknown age"
            holder = f"held by {holder_id} (run {holder_run_id}, {age})"
        else:
            holder = "held by another process"
        super().__init__(
            message=(
                f"Another migration is currently running: lock '{lock_name}' {holder}; "
                f"gave up after {timeout}s"
            ),
            run_id=run_id,
            recoverable=True,
        )


class LockLostError(MigrationError):
    """
    Raised when a held lease can no longer be refreshed.

    The runner aborts at the next batch boundary instead of continuing
    without mutual exclusion.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="LOCK_LOST",
        category="lock",
        suggested_action="Check for a competing run, then resume from the last checkpoint",
    )

    def __init__(self, lock_name: str, run_id: str, reason: str) -> None:
        self.lock_name = lock_name
        self.reason = reason
        super().__init__(
            message=f"Lost migration lock '{lock_name}': {reason}",
            run_id=run_id,
            recoverable=True,
        )


class ProviderIOError(MigrationError):
    """
    Raised by storage providers when an object operation fails.

    Attributes:
        operation: Provider operation that failed (read, write, ...).
        path: Object key involved.
        critical: Permission/authentication class failure. Never retried,
            counted against the critical error threshold.
        retryable: Whether a retry can succeed (transient failure).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="PROVIDER_IO",
        category="provider",
        suggested_action="Transient storage failure; the item is retried automatically",
        retry_config=TRANSIENT_IO_RETRY_CONFIG,
    )

    _critical_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="PROVIDER_IO_CRITICAL",
        category="provider",
        suggested_action="Check provider credentials and permissions before resuming",
    )

    _permanent_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="PROVIDER_IO_PERMANENT",
        category="provider",
        suggested_action="The object cannot be transferred; review the changelog entry",
    )

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        path: str | None = None,
        critical: bool = False,
        retryable: bool = True,
    ) -> None:
        self.operation = operation
        self.path = path
        self.critical = critical
        self.retryable = retryable and not critical
        super().__init__(message=message)

    @property
    def classification(self) -> ErrorClassification:
        if self.critical:
            return self._critical_classification
        if not self.retryable:
            return self._permanent_classification
        return self._default_classification


class ObjectListingError(MigrationError):
    """Raised when an object listing page cannot be fetched."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="OBJECT_LISTING",
        category="provider",
        suggested_action="Listing failed; resume the run once the provider is reachable",
    )

    def __init__(self, prefix: str, error: str) -> None:
        self.prefix = prefix
        self.original_error = error
        super().__init__(
            message=f"Failed to list objects under '{prefix}': {error}",
            recoverable=True,
        )


class ProviderNotAvailableError(MigrationError):
    """Raised when no implementation is registered for a provider type."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="PROVIDER_NOT_AVAILABLE",
        category="configuration",
        suggested_action="Register an adapter factory for this provider type",
    )

    def __init__(self, provider_type: str) -> None:
        self.provider_type = provider_type
        super().__init__(message=f"No storage adapter registered for provider '{provider_type}'")


class DispatchValidationError(MigrationError):
    """
    Raised when a dispatch request is malformed.

    Rejected synchronously, before any run record or job exists.

    Attributes:
        errors: Individual validation problems.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DISPATCH_VALIDATION",
        category="dispatch",
        suggested_action="Fix the command or arguments and dispatch again",
    )

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message=message)


class UnknownCommandError(DispatchValidationError):
    """Raised when a command has no registered handler."""

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Command not allowed: {command}", [f"unknown command {command!r}"])


class CircuitBreakerTripped(MigrationError):
    """
    Raised when the same error repeats ``max_repeated_errors`` times in a row.

    Aborts the run immediately regardless of the cumulative thresholds;
    guards against grinding through millions of objects on a systemic
    failure such as revoked credentials.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CIRCUIT_BREAKER_TRIPPED",
        category="error_policy",
        suggested_action="Fix the repeated failure, then resume from the last checkpoint",
    )

    def __init__(self, signature: str, repeats: int, run_id: str | None = None) -> None:
        self.signature = signature
        self.repeats = repeats
        super().__init__(
            message=f"Circuit breaker tripped: same error repeated {repeats} times ({signature})",
            run_id=run_id,
            recoverable=True,
        )


class ErrorThresholdExceeded(MigrationError):
    """
    Raised when cumulative errors reach a configured threshold.

    Attributes:
        kind: "critical" or "general".
        count: Errors counted so far.
        threshold: Threshold that was reached.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ERROR_THRESHOLD_EXCEEDED",
        category="error_policy",
        suggested_action="Review the changelog, fix the cause, then resume the run",
    )

    def __init__(self, kind: str, count: int, threshold: int, run_id: str | None = None) -> None:
        self.kind = kind
        self.count = count
        self.threshold = threshold
        if kind == "critical":
            message = (
                f"Critical error threshold exceeded ({count} critical errors, "
                f"threshold {threshold}). Check provider permissions."
            )
        else:
            message = (
                f"Error threshold exceeded ({count} errors, threshold {threshold}). "
                "Fix the errors and resume the run."
            )
        super().__init__(message=message, run_id=run_id, recoverable=True)


class ResumeInconsistencyError(MigrationError):
    """Raised when resuming a run whose checkpoint is superseded."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RESUME_INCONSISTENCY",
        category="checkpoint",
        suggested_action="Start a fresh run instead of resuming",
    )

    def __init__(self, run_id: str, status: str) -> None:
        self.status = status
        super().__init__(
            message=f"Cannot resume run with status '{status}'; start a fresh run",
            run_id=run_id,
        )


class CheckpointRegressionError(MigrationError):
    """Raised when a checkpoint would move a run's processed count backwards."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHECKPOINT_REGRESSION",
        category="checkpoint",
        suggested_action="Only one runner may write checkpoints for a run",
    )

    def __init__(self, run_id: str, previous: int, attempted: int) -> None:
        self.previous = previous
        self.attempted = attempted
        super().__init__(
            message=(
                f"Checkpoint processed_count {attempted} is lower than the latest "
                f"checkpoint ({previous})"
            ),
            run_id=run_id,
        )


class InvalidCheckpointError(MigrationError):
    """Raised for malformed checkpoint identifiers or payloads."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_CHECKPOINT",
        category="checkpoint",
        suggested_action="Run ids may contain only letters, digits, '-' and '_'",
    )


class ChangeLogNotFoundError(MigrationError):
    """Raised when a rollback finds no changelog entries for a run."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHANGELOG_NOT_FOUND",
        category="changelog",
        suggested_action="Check the run id and the changelog directory",
    )

    def __init__(self, run_id: str) -> None:
        super().__init__(message=f"No changelog entries found for run {run_id}", run_id=run_id)


class MigrationEngineError(MigrationError):
    """Wraps an unexpected failure that aborted a run."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_ENGINE_ERROR",
        category="runner",
        suggested_action="Inspect the logs; the run can be resumed from its last checkpoint",
    )

    def __init__(self, run_id: str, error: str) -> None:
        self.original_error = error
        super().__init__(message=f"Migration run failed: {error}", run_id=run_id, recoverable=True)


def classify_exception(exc: Exception) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_IO_RETRY_CONFIG",
    "MigrationError",
    "RunNotFoundError",
    "InvalidStatusTransitionError",
    "LockHeldError",
    "LockLostError",
    "ProviderIOError",
    "ObjectListingError",
    "ProviderNotAvailableError",
    "DispatchValidationError",
    "UnknownCommandError",
    "CircuitBreakerTripped",
    "ErrorThresholdExceeded",
    "ResumeInconsistencyError",
    "CheckpointRegressionError",
    "InvalidCheckpointError",
    "ChangeLogNotFoundError",
    "MigrationEngineError",
    "classify_exception",
]
