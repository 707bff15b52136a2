"""
Exceptions and error classification for the asset migration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- RunNotFoundError
    +-- MigrationAlreadyRunningError
    +-- RunStateError
    |   +-- InvalidPhaseTransitionError
    +-- InvalidRunIdError
    +-- LockError
    |   +-- LockAcquisitionError
    |   +-- LockLostError
    +-- ItemTransferError
    |   +-- DestinationConflictError
    +-- CheckpointWriteError
    +-- ChangeLogFlushError
    +-- ErrorBudgetExceededError
    +-- IntegrityError
    +-- RollbackError
        +-- RollbackRefusedError
        +-- InverseOperationError

Error Classification:
    Every error carries an ErrorClassification. Two axes matter to callers:
    - recoverability (TRANSIENT / RECOVERABLE / FATAL) decides whether an
      operation is retried;
    - kind (TRANSIENT / ITEM / RUN_FATAL / INTEGRITY) decides what a failure
      means for the run once retries are over.

    ErrorHandler.execute() runs an operation with bounded retries and
    returns an OperationResult instead of raising, so that the orchestrator
    branches on ``result.kind`` rather than on exception types.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from assetmigrate.records.interface import (
    ReadOnlyRecordError,
    RecordNotFoundError,
)
from assetmigrate.storage.exceptions import (
    ObjectNotFoundError,
    ReadOnlyViolationError,
    StorageTimeoutError,
)

if TYPE_CHECKING:
    from assetmigrate.migration.models import RunPhase, RunStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Drives the log level of a recorded error and whether it should alert.
    """

    CRITICAL = "critical"
    """Failure that may have left external state inconsistent."""

    ERROR = "error"
    """Significant failure that requires operator attention."""

    WARNING = "warning"
    """Issue worth monitoring that may resolve by itself."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Whether an operation that raised should be attempted again.

    Attributes:
        RECOVERABLE: Retrying will not help, but an operator can fix the
            cause and resume the run.
        TRANSIENT: Temporary condition; retry with backoff.
        FATAL: No retry and no automatic recovery.
    """

    RECOVERABLE = "recoverable"
    """Operator action can fix the cause."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


class FailureKind(Enum):
    """
    What a failure means for the run once retries are over.

    Attributes:
        TRANSIENT: Timeouts and contention; retried with backoff. A transient
            failure that exhausts its attempts is reported as ITEM.
        ITEM: One work item failed; counted against the error budget.
        RUN_FATAL: The run cannot continue (budget exhausted, checkpoint
            write failure, change-log flush failure, lock loss).
        INTEGRITY: Verification found a mismatch; reported, never corrected.
    """

    TRANSIENT = "transient"
    ITEM = "item"
    RUN_FATAL = "run_fatal"
    INTEGRITY = "integrity"


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Delay before the first retry in milliseconds.
        max_delay_ms: Upper bound for any single delay.
        exponential_base: Growth factor between attempts.
        jitter_factor: Random extra delay as a fraction (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=3, base_delay_ms=200)
        >>> config.get_delay_ms(attempt=2)  # 800ms plus up to 10% jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 200.0
    max_delay_ms: float = 10000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
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

    def get_delay_ms(self, attempt: int) -> float:
        """
        Delay before the retry following ``attempt`` (0-indexed).

        Returns:
            Delay in milliseconds, capped at max_delay_ms.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter, not security
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


ITEM_RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay_ms=200.0, max_delay_ms=5000.0)
"""Default per-item retry policy."""

STORAGE_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=500.0,
    max_delay_ms=30000.0,
    jitter_factor=0.2,
)
"""Retry policy suggested for storage timeouts."""


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: Whether the failed operation should be retried.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        kind: What the failure means for the run.
        retry_config: Retry policy suggested by the error, if any.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    kind: FailureKind = FailureKind.ITEM
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
            "kind": self.kind.value,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


TRANSIENT_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.WARNING,
    recoverability=ErrorRecoverability.TRANSIENT,
    error_code="TRANSIENT_ERROR",
    category="transient",
    suggested_action="Usually resolves on retry; check storage and database connectivity",
    kind=FailureKind.TRANSIENT,
    retry_config=STORAGE_RETRY_CONFIG,
)

_FATAL_MESSAGE_PATTERNS: tuple[str, ...] = (
    "does not exist",
    "not found",
    "permission denied",
    "access denied",
    "invalid",
    "constraint violation",
)


class MigrationError(Exception):
    """
    Base exception for all migration engine errors.

    Attributes:
        message: Human-readable error description.
        run_id: The run the error belongs to, if known.
        item_id: The work item involved, if any.
        operation: The operation that failed, if any.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review the run's logs and change log",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        item_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.run_id = run_id
        self.item_id = item_id
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.run_id:
            parts.append(f"run_id={self.run_id}")
        if self.item_id:
            parts.append(f"item_id={self.item_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def kind(self) -> FailureKind:
        return self.classification.kind

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "run_id": self.run_id,
            "item_id": self.item_id,
            "operation": self.operation,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class RunNotFoundError(MigrationError):
    """Raised when a run id is unknown to the run repository."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RUN_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the run id",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Migration run not found: {run_id}", run_id=run_id)


class MigrationAlreadyRunningError(MigrationError):
    """
    Raised when a live run cannot start because another holds the lock.

    Attributes:
        holder_id: Identity of the current lock holder, if known.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_ALREADY_RUNNING",
        category="lock",
        suggested_action="Wait for the active run to finish or cancel it",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, run_id: str, holder_id: str | None = None) -> None:
        self.holder_id = holder_id
        message = "Another migration run holds the migration lock"
        if holder_id:
            message += f" (holder: {holder_id})"
        super().__init__(message, run_id=run_id)


class RunStateError(MigrationError):
    """
    Raised when an operation is invalid for the run's current state.

    Attributes:
        status: The run's status when the operation was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RUN_STATE_ERROR",
        category="state",
        suggested_action="Check the run's status before retrying the operation",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(
        self,
        message: str,
        run_id: str,
        status: RunStatus | None = None,
        operation: str | None = None,
    ) -> None:
        self.status = status
        super().__init__(message, run_id=run_id, operation=operation)


class InvalidPhaseTransitionError(RunStateError):
    """Raised when a phase transition is not allowed by the state machine."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PHASE_TRANSITION",
        category="state",
        suggested_action="Report a bug: the orchestrator attempted an illegal transition",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, run_id: str, current_phase: RunPhase, target_phase: RunPhase) -> None:
        self.current_phase = current_phase
        self.target_phase = target_phase
        super().__init__(
            f"Invalid phase transition: {current_phase.value} -> {target_phase.value}",
            run_id=run_id,
            operation="phase_transition",
        )


class InvalidRunIdError(MigrationError, ValueError):
    """Raised when a run id contains characters outside [a-zA-Z0-9_-]."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_RUN_ID",
        category="validation",
        suggested_action="Use only letters, digits, underscores and hyphens in run ids",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Invalid run id: {run_id!r}")


class LockError(MigrationError):
    """Base class for lock manager errors."""

    def __init__(self, message: str, *, lock_name: str, run_id: str | None = None) -> None:
        self.lock_name = lock_name
        super().__init__(message, run_id=run_id, operation="lock")


class LockAcquisitionError(LockError):
    """
    Raised by ``LockManager.hold()`` when the lock cannot be acquired.

    Attributes:
        reason: Why acquisition failed.
        holder_id: Current holder when the lock was busy.
        busy: True if the lock was held by someone else, False on error.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="LOCK_ACQUISITION_FAILED",
        category="lock",
        suggested_action="Wait for the current holder to release the lock",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(
        self,
        lock_name: str,
        reason: str,
        *,
        run_id: str | None = None,
        holder_id: str | None = None,
        busy: bool = False,
    ) -> None:
        self.reason = reason
        self.holder_id = holder_id
        self.busy = busy
        super().__init__(
            f"Failed to acquire lock '{lock_name}': {reason}",
            lock_name=lock_name,
            run_id=run_id,
        )


class LockLostError(LockError):
    """
    Raised when a holder's lock record was reclaimed or deleted under it.

    Losing the lock mid-run is run-fatal: another run may already be
    mutating the same storage.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="LOCK_LOST",
        category="lock",
        suggested_action="Check for a concurrent run and increase the lock TTL",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, lock_name: str, holder_id: str, *, run_id: str | None = None) -> None:
        self.holder_id = holder_id
        super().__init__(
            f"Lock '{lock_name}' is no longer held by {holder_id}",
            lock_name=lock_name,
            run_id=run_id,
        )


class ItemTransferError(MigrationError):
    """
    Raised when one work item cannot be transferred.

    Attributes:
        cause: The underlying exception, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ITEM_TRANSFER_FAILED",
        category="transfer",
        suggested_action="Inspect the item and resume the run",
        kind=FailureKind.ITEM,
    )

    def __init__(
        self,
        message: str,
        *,
        item_id: str,
        operation: str,
        run_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.cause = cause
        super().__init__(message, run_id=run_id, item_id=item_id, operation=operation)


class DestinationConflictError(ItemTransferError):
    """Raised when the destination already holds different content."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DESTINATION_CONFLICT",
        category="transfer",
        suggested_action="Remove or rename the conflicting destination object and resume",
        kind=FailureKind.ITEM,
    )

    def __init__(self, item_id: str, destination_path: str, *, run_id: str | None = None) -> None:
        self.destination_path = destination_path
        super().__init__(
            f"Destination '{destination_path}' exists with different content",
            item_id=item_id,
            operation="copy",
            run_id=run_id,
        )


class CheckpointWriteError(MigrationError):
    """Raised when a checkpoint cannot be durably saved. Run-fatal."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHECKPOINT_WRITE_FAILED",
        category="checkpoint",
        suggested_action="Check checkpoint storage and resume the run",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, run_id: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        message = f"Failed to save checkpoint for run {run_id}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message, run_id=run_id, operation="checkpoint_save")


class ChangeLogFlushError(MigrationError):
    """
    Raised when buffered change-log entries cannot be persisted.

    The buffer is kept, so a later flush may still succeed, but the
    operation that triggered the flush has failed. Run-fatal.

    Attributes:
        pending: Number of entries still buffered.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHANGELOG_FLUSH_FAILED",
        category="changelog",
        suggested_action="Check change-log storage; rollback depends on it",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(self, run_id: str, pending: int, cause: BaseException | None = None) -> None:
        self.pending = pending
        self.cause = cause
        message = f"Failed to flush {pending} change-log entries"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message, run_id=run_id, operation="changelog_flush")


class ErrorBudgetExceededError(MigrationError):
    """
    Raised when item failures cross the run's error budget.

    Attributes:
        consecutive_failures: Consecutive failures when the budget ran out.
        failed: Total failed items.
        processed: Total processed items.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ERROR_BUDGET_EXCEEDED",
        category="budget",
        suggested_action="Fix the failing items' cause, then resume the run",
        kind=FailureKind.RUN_FATAL,
    )

    def __init__(
        self,
        run_id: str,
        reason: str,
        *,
        consecutive_failures: int,
        failed: int,
        processed: int,
    ) -> None:
        self.consecutive_failures = consecutive_failures
        self.failed = failed
        self.processed = processed
        super().__init__(f"Error budget exceeded: {reason}", run_id=run_id)


class IntegrityError(MigrationError):
    """Raised for verification mismatches between source and destination."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INTEGRITY_MISMATCH",
        category="integrity",
        suggested_action="Review the verification report; roll back if required",
        kind=FailureKind.INTEGRITY,
    )


class RollbackError(MigrationError):
    """Base class for rollback errors."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_FAILED",
        category="rollback",
        suggested_action="Fix the cause and re-run the rollback; it resumes from its checkpoint",
        kind=FailureKind.RUN_FATAL,
    )


class RollbackRefusedError(RollbackError):
    """Raised when a rollback may not start (run active or lock held)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_REFUSED",
        category="rollback",
        suggested_action="Cancel or wait for the active run, then retry the rollback",
        kind=FailureKind.RUN_FATAL,
    )


class InverseOperationError(RollbackError):
    """
    Raised when one change-log entry cannot be reversed.

    Attributes:
        sequence: Sequence number of the entry.
    """

    def __init__(
        self,
        run_id: str,
        sequence: int,
        reason: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        self.sequence = sequence
        self.cause = cause
        super().__init__(
            f"Failed to reverse change-log entry {sequence}: {reason}",
            run_id=run_id,
            operation="rollback",
        )


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """
    Outcome of an operation executed through ErrorHandler.

    Attributes:
        ok: True if the operation succeeded.
        value: The operation's return value when ok.
        error: The last exception when not ok.
        classification: Classification of the last error.
        attempts: Number of attempts made.
    """

    ok: bool
    value: T | None = None
    error: BaseException | None = None
    classification: ErrorClassification | None = None
    attempts: int = 1

    @property
    def kind(self) -> FailureKind | None:
        """
        Failure kind after retries, or None on success.

        A transient error that exhausted its attempts counts as an item
        failure.
        """
        if self.ok or self.classification is None:
            return None
        if self.classification.kind is FailureKind.TRANSIENT:
            return FailureKind.ITEM
        return self.classification.kind

    @property
    def is_run_fatal(self) -> bool:
        return self.kind is FailureKind.RUN_FATAL

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> OperationResult[T]:
        return cls(ok=True, value=value, attempts=attempts)

    @classmethod
    def failure(
        cls,
        error: BaseException,
        classification: ErrorClassification | None = None,
        attempts: int = 1,
    ) -> OperationResult[T]:
        if classification is None:
            classification = classify_exception(error)
        return cls(ok=False, error=error, classification=classification, attempts=attempts)


class ErrorHandler:
    """
    Runs operations with bounded retries for transient errors.

    Unlike a raising retry helper, ``execute`` never raises for ordinary
    exceptions: it returns an OperationResult carrying the classification.
    ``asyncio.CancelledError`` is not caught.

    Usage:
        >>> handler = ErrorHandler(retry_config=RetryConfig(max_attempts=3))
        >>> result = await handler.execute(
        ...     lambda: storage.read(path),
        ...     "read",
        ...     item_id=item.item_id,
        ... )
        >>> if not result.ok and result.is_run_fatal:
        ...     abort()

    Attributes:
        retry_config: Default retry policy.
        alert_callback: Invoked for errors whose severity should alert.
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        alert_callback: Callable[[BaseException, ErrorClassification], None] | None = None,
    ) -> None:
        self.retry_config = retry_config or ITEM_RETRY_CONFIG
        self.alert_callback = alert_callback

    async def execute(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        retry_config: RetryConfig | None = None,
        run_id: str | None = None,
        item_id: str | None = None,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> OperationResult[T]:
        """
        Execute an operation, retrying transient failures with backoff.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            retry_config: Override of the handler's retry policy.
            run_id: Run id for log context.
            item_id: Work item id for log context.
            on_retry: Callback invoked before each retry (attempt, error, delay_ms).

        Returns:
            OperationResult with the value or the classified last error.
        """
        config = retry_config or self.retry_config
        attempt = 0

        while True:
            try:
                value = await operation()
            except Exception as e:
                classification = classify_exception(e)
                if classification.recoverability.should_retry and attempt + 1 < config.max_attempts:
                    delay_ms = config.get_delay_ms(attempt)
                    logger.warning(
                        "Retryable error in '%s' (attempt %d/%d, item=%s): %s. Retrying in %.2fs",
                        operation_name,
                        attempt + 1,
                        config.max_attempts,
                        item_id,
                        e,
                        delay_ms / 1000.0,
                    )
                    if on_retry:
                        on_retry(attempt, e, delay_ms)
                    await asyncio.sleep(delay_ms / 1000.0)
                    attempt += 1
                    continue

                self._handle_error(e, classification, operation_name, run_id, item_id)
                return OperationResult.failure(e, classification, attempts=attempt + 1)

            if attempt > 0:
                logger.info(
                    "Operation '%s' succeeded after %d retries (item=%s)",
                    operation_name,
                    attempt,
                    item_id,
                )
            return OperationResult.success(value, attempts=attempt + 1)

    def _handle_error(
        self,
        error: BaseException,
        classification: ErrorClassification,
        operation_name: str,
        run_id: str | None,
        item_id: str | None,
    ) -> None:
        logger.log(
            classification.severity.log_level,
            "Error in '%s' (run=%s, item=%s): %s [code=%s, kind=%s]",
            operation_name,
            run_id,
            item_id,
            error,
            classification.error_code,
            classification.kind.value,
        )
        if classification.severity.should_alert and self.alert_callback:
            try:
                self.alert_callback(error, classification)
            except Exception:
                logger.exception("Alert callback failed")


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception.

    MigrationError subclasses carry their own classification. For other
    exceptions:
    - read-only violations are run-fatal (a dry run tried to mutate);
    - timeouts and connection errors are transient;
    - missing objects or records, permission errors, and messages matching
      a known fatal pattern are item failures that are not retried;
    - anything else is treated as transient.

    Example:
        >>> classify_exception(TimeoutError()).kind
        <FailureKind.TRANSIENT: 'transient'>
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    if isinstance(exc, (ReadOnlyViolationError, ReadOnlyRecordError)):
        return ErrorClassification(
            severity=ErrorSeverity.CRITICAL,
            recoverability=ErrorRecoverability.FATAL,
            error_code="READ_ONLY_VIOLATION",
            category="dry_run",
            suggested_action="Report a bug: a dry run attempted a write",
            kind=FailureKind.RUN_FATAL,
        )

    if isinstance(exc, (StorageTimeoutError, TimeoutError, ConnectionError)):
        return TRANSIENT_CLASSIFICATION

    if isinstance(exc, (ObjectNotFoundError, RecordNotFoundError, PermissionError)):
        return ErrorClassification(
            severity=ErrorSeverity.ERROR,
            recoverability=ErrorRecoverability.RECOVERABLE,
            error_code="ITEM_NOT_PROCESSABLE",
            category="item",
            suggested_action="Check that the source object and its record exist and are accessible",
            kind=FailureKind.ITEM,
        )

    message = str(exc).lower()
    if any(pattern in message for pattern in _FATAL_MESSAGE_PATTERNS):
        return ErrorClassification(
            severity=ErrorSeverity.ERROR,
            recoverability=ErrorRecoverability.RECOVERABLE,
            error_code="ITEM_NOT_PROCESSABLE",
            category="item",
            suggested_action="Inspect the item; retrying will not help",
            kind=FailureKind.ITEM,
        )

    return TRANSIENT_CLASSIFICATION


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "FailureKind",
    "RetryConfig",
    "ITEM_RETRY_CONFIG",
    "STORAGE_RETRY_CONFIG",
    "ErrorClassification",
    "TRANSIENT_CLASSIFICATION",
    "MigrationError",
    "RunNotFoundError",
    "MigrationAlreadyRunningError",
    "RunStateError",
    "InvalidPhaseTransitionError",
    "InvalidRunIdError",
    "LockError",
    "LockAcquisitionError",
    "LockLostError",
    "ItemTransferError",
    "DestinationConflictError",
    "CheckpointWriteError",
    "ChangeLogFlushError",
    "ErrorBudgetExceededError",
    "IntegrityError",
    "RollbackError",
    "RollbackRefusedError",
    "InverseOperationError",
    "OperationResult",
    "ErrorHandler",
    "classify_exception",
]
