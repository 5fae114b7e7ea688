"""
Per-item retry and run-level error budget.

RetryPolicy retries transient provider failures with a fixed delay.
ErrorPolicy counts the failures that survive retrying and decides when
a run must stop: on a run of identical consecutive failures (circuit
breaker, immediate) or when cumulative counts reach a threshold (checked
after each batch).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from objmigrate.exceptions import (
    CircuitBreakerTripped,
    ErrorSeverity,
    ErrorThresholdExceeded,
    ProviderIOError,
    RetryConfig,
    classify_exception,
)
from objmigrate.models import format_timestamp, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HISTORY_SIZE = 100


def is_retryable(exc: BaseException) -> bool:
    """Only transient, non-critical provider failures are retried."""
    return isinstance(exc, ProviderIOError) and exc.retryable and not exc.critical


def is_critical(exc: BaseException) -> bool:
    if isinstance(exc, ProviderIOError):
        return exc.critical
    if isinstance(exc, Exception):
        return classify_exception(exc).severity == ErrorSeverity.CRITICAL
    return False


def failure_signature(exc: BaseException) -> str:
    """
    Identity of a failure for repeat detection.

    The object path is masked so the same failure on different objects
    produces the same signature.
    """
    message = str(exc)
    if isinstance(exc, ProviderIOError) and exc.path:
        message = message.replace(exc.path, "<path>")
    return f"{type(exc).__name__}:{message}"


class RetryPolicy:
    """
    Fixed-delay retry of a single provider operation.

    Example:
        >>> policy = RetryPolicy(max_retries=3, retry_delay_ms=1000)
        >>> data = await policy.run(lambda: source.read(path))
    """

    def __init__(self, max_retries: int = 3, retry_delay_ms: float = 1000.0) -> None:
        self._config = RetryConfig.fixed(max_retries=max_retries, delay_ms=retry_delay_ms)
        self.retries = 0

    @property
    def max_retries(self) -> int:
        return self._config.max_attempts - 1

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """
        Run ``operation``, retrying retryable failures.

        Returns the first successful result; raises the last error once
        retries are exhausted, or immediately for a non-retryable error.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e) or attempt >= self.max_retries:
                    raise
                delay_ms = self._config.get_delay_ms(attempt)
                attempt += 1
                self.retries += 1
                logger.warning(
                    "Retrying after failure (attempt %d/%d, delay %.0fms): %s",
                    attempt,
                    self.max_retries,
                    delay_ms,
                    e,
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await asyncio.sleep(delay_ms / 1000.0)


class ErrorPolicy:
    """
    Run-level error budget.

    Args:
        error_threshold: Cumulative non-critical errors that abort the run.
        critical_error_threshold: Cumulative critical errors that abort the run.
        max_repeated_errors: Identical consecutive failures that trip the
            circuit breaker.
        history_size: Number of recent failures kept for checkpoints.
        run_id: Attached to raised errors.
    """

    def __init__(
        self,
        error_threshold: int = 50,
        critical_error_threshold: int = 20,
        max_repeated_errors: int = 10,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        run_id: str | None = None,
    ) -> None:
        for name, value in (
            ("error_threshold", error_threshold),
            ("critical_error_threshold", critical_error_threshold),
            ("max_repeated_errors", max_repeated_errors),
            ("history_size", history_size),
        ):
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
        self.error_threshold = error_threshold
        self.critical_error_threshold = critical_error_threshold
        self.max_repeated_errors = max_repeated_errors
        self.run_id = run_id
        self.error_count = 0
        self.critical_count = 0
        self._last_signature: str | None = None
        self._repeats = 0
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)

    @property
    def repeats(self) -> int:
        return self._repeats

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def record_failure(self, exc: BaseException, path: str | None = None) -> dict[str, Any]:
        """
        Count a failure that survived retrying.

        Raises:
            CircuitBreakerTripped: When this failure is the
                ``max_repeated_errors``-th identical one in a row.
        """
        critical = is_critical(exc)
        if critical:
            self.critical_count += 1
        else:
            self.error_count += 1

        signature = failure_signature(exc)
        if signature == self._last_signature:
            self._repeats += 1
        else:
            self._last_signature = signature
            self._repeats = 1

        record = {
            "path": path,
            "error": str(exc),
            "type": type(exc).__name__,
            "critical": critical,
            "timestamp": format_timestamp(utcnow()),
        }
        self._history.append(record)
        logger.log(
            ErrorSeverity.CRITICAL.log_level if critical else ErrorSeverity.WARNING.log_level,
            "Failed to process %s: %s",
            path,
            exc,
        )

        if self._repeats >= self.max_repeated_errors:
            raise CircuitBreakerTripped(signature, self._repeats, run_id=self.run_id)
        return record

    def record_success(self) -> None:
        """A success breaks the chain of identical failures."""
        self._last_signature = None
        self._repeats = 0

    def check_thresholds(self) -> None:
        """
        Raises:
            ErrorThresholdExceeded: Critical threshold first, then general.
        """
        if self.critical_count >= self.critical_error_threshold:
            raise ErrorThresholdExceeded(
                "critical", self.critical_count, self.critical_error_threshold, run_id=self.run_id
            )
        if self.error_count >= self.error_threshold:
            raise ErrorThresholdExceeded(
                "general", self.error_count, self.error_threshold, run_id=self.run_id
            )

    def snapshot(self) -> dict[str, Any]:
        return {
            "error_count": self.error_count,
            "critical_count": self.critical_count,
            "last_signature": self._last_signature,
            "repeats": self._repeats,
            "errors": list(self._history),
        }

    def restore(self, state: dict[str, Any] | None) -> None:
        """Re-seed counters from a checkpoint snapshot."""
        state = state or {}
        self.error_count = int(state.get("error_count", 0))
        self.critical_count = int(state.get("critical_count", 0))
        self._last_signature = state.get("last_signature")
        self._repeats = int(state.get("repeats", 0))
        self._history.clear()
        self._history.extend(state.get("errors") or [])


__all__ = [
    "DEFAULT_HISTORY_SIZE",
    "ErrorPolicy",
    "RetryPolicy",
    "failure_signature",
    "is_critical",
    "is_retryable",
]
