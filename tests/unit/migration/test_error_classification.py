"""
Unit tests for error classification and the retrying ErrorHandler.

Tests cover:
- classify_exception for engine, storage, record and builtin errors
- RetryConfig validation and delays
- ErrorHandler retry loop, OperationResult kinds and alerting
- Error codes and to_dict of engine exceptions
"""

import pytest

from assetmigrate.migration.exceptions import (
    ChangeLogFlushError,
    CheckpointWriteError,
    DestinationConflictError,
    ErrorBudgetExceededError,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    FailureKind,
    LockLostError,
    MigrationAlreadyRunningError,
    MigrationError,
    OperationResult,
    RetryConfig,
    classify_exception,
)
from assetmigrate.records.interface import ReadOnlyRecordError, RecordNotFoundError
from assetmigrate.storage.exceptions import (
    ObjectNotFoundError,
    ReadOnlyViolationError,
    StorageTimeoutError,
)

NO_DELAY = RetryConfig(max_attempts=3, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0)


class TestClassifyException:
    """Tests for classify_exception."""

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError("slow"),
            ConnectionError("reset"),
            StorageTimeoutError("timed out", provider="s3"),
            RuntimeError("something odd happened"),
        ],
    )
    def test_transient_errors(self, error: Exception) -> None:
        classification = classify_exception(error)
        assert classification.kind is FailureKind.TRANSIENT
        assert classification.recoverability.should_retry

    @pytest.mark.parametrize(
        "error",
        [
            ObjectNotFoundError("a.png", provider="source"),
            RecordNotFoundError("r-1"),
            PermissionError("nope"),
            ValueError("invalid checksum"),
        ],
    )
    def test_item_errors_are_not_retried(self, error: Exception) -> None:
        classification = classify_exception(error)
        assert classification.kind is FailureKind.ITEM
        assert classification.error_code == "ITEM_NOT_PROCESSABLE"
        assert not classification.recoverability.should_retry

    @pytest.mark.parametrize(
        "error",
        [
            ReadOnlyViolationError("write", "a.png", provider="destination"),
            ReadOnlyRecordError("r-1"),
        ],
    )
    def test_read_only_violations_are_run_fatal(self, error: Exception) -> None:
        classification = classify_exception(error)
        assert classification.kind is FailureKind.RUN_FATAL
        assert classification.error_code == "READ_ONLY_VIOLATION"
        assert classification.severity is ErrorSeverity.CRITICAL

    def test_migration_errors_carry_their_own_classification(self) -> None:
        error = CheckpointWriteError("run-1", OSError("disk full"))
        assert classify_exception(error) is error.classification
        assert error.kind is FailureKind.RUN_FATAL
        assert error.error_code == "CHECKPOINT_WRITE_FAILED"

    @pytest.mark.parametrize(
        ("error", "code", "kind"),
        [
            (ChangeLogFlushError("run-1", 3), "CHANGELOG_FLUSH_FAILED", FailureKind.RUN_FATAL),
            (LockLostError("migration", "run-1:h"), "LOCK_LOST", FailureKind.RUN_FATAL),
            (
                ErrorBudgetExceededError(
                    "run-1",
                    "5 consecutive failures",
                    consecutive_failures=5,
                    failed=5,
                    processed=12,
                ),
                "ERROR_BUDGET_EXCEEDED",
                FailureKind.RUN_FATAL,
            ),
            (DestinationConflictError("r-1", "a.png"), "DESTINATION_CONFLICT", FailureKind.ITEM),
            (MigrationAlreadyRunningError("run-1"), "MIGRATION_ALREADY_RUNNING", FailureKind.RUN_FATAL),
        ],
    )
    def test_error_codes(self, error: MigrationError, code: str, kind: FailureKind) -> None:
        assert error.error_code == code
        assert error.kind is kind

    def test_to_dict(self) -> None:
        error = ChangeLogFlushError("run-1", 4, OSError("disk full"))
        data = error.to_dict()
        assert data["run_id"] == "run-1"
        assert data["error_code"] == "CHANGELOG_FLUSH_FAILED"
        assert data["classification"]["kind"] == "run_fatal"
        assert error.pending == 4

    def test_str_includes_run_id(self) -> None:
        assert "run_id=run-1" in str(CheckpointWriteError("run-1"))


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_exponential_delay_without_jitter(self) -> None:
        config = RetryConfig(base_delay_ms=100.0, max_delay_ms=1000.0, jitter_factor=0.0)
        assert config.get_delay_ms(0) == 100.0
        assert config.get_delay_ms(1) == 200.0
        assert config.get_delay_ms(2) == 400.0
        assert config.get_delay_ms(10) == 1000.0

    def test_jitter_stays_within_bounds(self) -> None:
        config = RetryConfig(base_delay_ms=100.0, max_delay_ms=1000.0, jitter_factor=0.5)
        for _ in range(20):
            assert 100.0 <= config.get_delay_ms(0) <= 150.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay_ms": -1.0},
            {"base_delay_ms": 100.0, "max_delay_ms": 10.0},
            {"exponential_base": 0.5},
            {"jitter_factor": 1.5},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)

    def test_round_trip(self) -> None:
        config = RetryConfig(max_attempts=5, base_delay_ms=10.0)
        assert RetryConfig.from_dict(config.to_dict()) == config


class TestErrorHandler:
    """Tests for ErrorHandler.execute."""

    async def test_success_on_first_attempt(self) -> None:
        handler = ErrorHandler(NO_DELAY)

        async def operation() -> str:
            return "done"

        result = await handler.execute(operation, "op")
        assert result.ok
        assert result.value == "done"
        assert result.attempts == 1
        assert result.kind is None

    async def test_transient_error_is_retried_until_success(self) -> None:
        handler = ErrorHandler(NO_DELAY)
        calls = 0
        retries: list[int] = []

        async def operation() -> int:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TimeoutError("slow")
            return calls

        result = await handler.execute(
            operation, "op", on_retry=lambda attempt, error, delay: retries.append(attempt)
        )
        assert result.ok
        assert result.value == 3
        assert result.attempts == 3
        assert retries == [0, 1]

    async def test_exhausted_transient_error_becomes_item_failure(self) -> None:
        handler = ErrorHandler(NO_DELAY)
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError("reset")

        result = await handler.execute(operation, "op", item_id="r-1")
        assert not result.ok
        assert calls == 3
        assert result.attempts == 3
        assert result.classification is not None
        assert result.classification.kind is FailureKind.TRANSIENT
        assert result.kind is FailureKind.ITEM
        assert not result.is_run_fatal
        assert result.error_message == "reset"

    async def test_item_error_is_not_retried(self) -> None:
        handler = ErrorHandler(NO_DELAY)
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise ObjectNotFoundError("a.png", provider="source")

        result = await handler.execute(operation, "op")
        assert calls == 1
        assert result.kind is FailureKind.ITEM

    async def test_run_fatal_error(self) -> None:
        handler = ErrorHandler(NO_DELAY)

        async def operation() -> None:
            raise ReadOnlyViolationError("write", "a.png")

        result = await handler.execute(operation, "op")
        assert result.is_run_fatal
        assert result.attempts == 1

    async def test_retry_config_override(self) -> None:
        handler = ErrorHandler(NO_DELAY)
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise TimeoutError()

        single = RetryConfig(max_attempts=1, base_delay_ms=0.0, max_delay_ms=0.0)
        result = await handler.execute(operation, "op", retry_config=single)
        assert calls == 1
        assert not result.ok

    async def test_alert_callback_for_severe_errors(self) -> None:
        alerts: list[str] = []
        handler = ErrorHandler(
            NO_DELAY, alert_callback=lambda error, classification: alerts.append(classification.error_code)
        )

        async def operation() -> None:
            raise PermissionError("denied")

        await handler.execute(operation, "op")
        assert alerts == ["ITEM_NOT_PROCESSABLE"]

    async def test_failing_alert_callback_does_not_propagate(self) -> None:
        def broken_callback(error: BaseException, classification: object) -> None:
            raise RuntimeError("alerting down")

        handler = ErrorHandler(NO_DELAY, alert_callback=broken_callback)

        async def operation() -> None:
            raise PermissionError("denied")

        result = await handler.execute(operation, "op")
        assert not result.ok

    async def test_no_alert_for_warnings(self) -> None:
        alerts: list[str] = []
        handler = ErrorHandler(
            NO_DELAY, alert_callback=lambda error, classification: alerts.append("alert")
        )

        async def operation() -> None:
            raise TimeoutError()

        await handler.execute(operation, "op")
        assert alerts == []


class TestOperationResult:
    def test_failure_classifies_when_missing(self) -> None:
        result: OperationResult[None] = OperationResult.failure(PermissionError("denied"))
        assert result.classification is not None
        assert result.classification.recoverability is ErrorRecoverability.RECOVERABLE
        assert result.kind is FailureKind.ITEM

    def test_success(self) -> None:
        result = OperationResult.success(42, attempts=2)
        assert result.ok
        assert result.value == 42
        assert result.error_message is None
