"""
Unit tests for the exception hierarchy and error classification.
"""

import logging

import pytest

from objmigrate.exceptions import (
    CheckpointRegressionError,
    CircuitBreakerTripped,
    DispatchValidationError,
    ErrorRecoverability,
    ErrorSeverity,
    ErrorThresholdExceeded,
    LockHeldError,
    LockLostError,
    MigrationEngineError,
    MigrationError,
    ProviderIOError,
    ProviderNotAvailableError,
    RetryConfig,
    RunNotFoundError,
    UnknownCommandError,
    classify_exception,
)


class TestMigrationError:
    def test_str_includes_context(self) -> None:
        error = MigrationError("boom", run_id="migration-1", recoverable=True)

        assert str(error) == "boom run_id=migration-1 (recoverable)"

    def test_str_without_context(self) -> None:
        assert str(MigrationError("boom")) == "boom"

    def test_to_dict(self) -> None:
        data = RunNotFoundError("migration-1").to_dict()

        assert data["run_id"] == "migration-1"
        assert data["error_code"] == "RUN_NOT_FOUND"
        assert data["classification"]["category"] == "run_state"

    def test_every_error_is_a_migration_error(self) -> None:
        errors = [
            RunNotFoundError("r"),
            LockLostError("lock", "r", "gone"),
            ProviderNotAvailableError("s3"),
            CircuitBreakerTripped("sig", 10),
            ErrorThresholdExceeded("general", 50, 50),
            CheckpointRegressionError("r", 10, 5),
            MigrationEngineError("r", "unexpected"),
        ]

        for error in errors:
            assert isinstance(error, MigrationError)


class TestLockHeldError:
    def test_message_names_holder(self) -> None:
        error = LockHeldError(
            "full-migration",
            holder_id="worker-a:42",
            holder_run_id="migration-9",
            age_seconds=125.0,
            timeout=3.0,
        )

        message = str(error)
        assert "Another migration is currently running" in message
        assert "worker-a:42" in message
        assert "migration-9" in message
        assert "125s" in message
        assert error.recoverable is True
        assert error.error_code == "LOCK_HELD"

    def test_message_without_holder(self) -> None:
        error = LockHeldError(
            "full-migration", holder_id=None, holder_run_id=None, age_seconds=None, timeout=1.0
        )

        assert "held by another process" in str(error)


class TestProviderIOError:
    def test_transient_by_default(self) -> None:
        error = ProviderIOError("timeout", operation="read", path="a.jpg")

        assert error.retryable is True
        assert error.recoverability_type == ErrorRecoverability.TRANSIENT
        assert error.retry_config is not None
        assert error.retry_config.max_attempts == 4

    def test_critical_is_never_retryable(self) -> None:
        error = ProviderIOError("denied", operation="write", critical=True, retryable=True)

        assert error.retryable is False
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.error_code == "PROVIDER_IO_CRITICAL"

    def test_permanent(self) -> None:
        error = ProviderIOError("missing", operation="read", retryable=False)

        assert error.error_code == "PROVIDER_IO_PERMANENT"
        assert error.recoverability_type.should_abort


class TestDispatchValidationError:
    def test_unknown_command_is_a_validation_error(self) -> None:
        error = UnknownCommandError("cache/clear")

        assert isinstance(error, DispatchValidationError)
        assert error.command == "cache/clear"
        assert "Command not allowed" in str(error)
        assert error.errors


class TestErrorThresholdExceeded:
    def test_critical_message(self) -> None:
        error = ErrorThresholdExceeded("critical", 20, 20, run_id="r")

        assert "Critical error threshold exceeded" in str(error)
        assert error.kind == "critical"

    def test_general_message(self) -> None:
        error = ErrorThresholdExceeded("general", 50, 50)

        assert "Error threshold exceeded" in str(error)


class TestClassification:
    def test_classifies_foreign_exceptions(self) -> None:
        classification = classify_exception(ValueError("bad"))

        assert classification.error_code == "UNKNOWN_ERROR"
        assert classification.severity == ErrorSeverity.ERROR

    def test_classifies_migration_errors(self) -> None:
        classification = classify_exception(CircuitBreakerTripped("sig", 10))

        assert classification.error_code == "CIRCUIT_BREAKER_TRIPPED"

    def test_severity_log_levels(self) -> None:
        assert ErrorSeverity.CRITICAL.log_level == logging.CRITICAL
        assert ErrorSeverity.WARNING.log_level == logging.WARNING
        assert ErrorSeverity.ERROR.should_alert
        assert not ErrorSeverity.INFO.should_alert


class TestRetryConfig:
    def test_fixed_delay(self) -> None:
        config = RetryConfig.fixed(max_retries=3, delay_ms=250)

        assert config.max_attempts == 4
        assert [config.get_delay_ms(attempt) for attempt in range(3)] == [250, 250, 250]

    def test_exponential_delay_is_capped(self) -> None:
        config = RetryConfig(base_delay_ms=100, max_delay_ms=300, jitter_factor=0.0)

        assert config.get_delay_ms(0) == 100
        assert config.get_delay_ms(1) == 200
        assert config.get_delay_ms(5) == 300

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay_ms": -1},
            {"base_delay_ms": 500, "max_delay_ms": 100},
            {"exponential_base": 0.5},
            {"jitter_factor": 1.5},
        ],
    )
    def test_validation(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)
