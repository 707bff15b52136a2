"""
Asset migration execution engine.

Moves file-backed assets between two storage providers while their
records stay live, and keeps every run resumable and reversible.

Key Components:
    - ErrorBudget: Consecutive-failure and failure-ratio thresholds
    - Categorizer: Builds the ordered manifest of work items
    - Verifier: Size and hash comparison of migrated objects

This package exports the models, errors and stateless components. The
lock and repository packages import them, so the components built on
locks and repositories are imported from their own modules:

    - assetmigrate.migration.orchestrator: MigrationOrchestrator
    - assetmigrate.migration.rollback: RollbackExecutor
    - assetmigrate.migration.changelog: ChangeLog
    - assetmigrate.migration.transfer: ItemTransfer

Run Phases:
    1. DISCOVER: Records and source listing are joined
    2. CATEGORIZE: Items are classified and given destinations
    3. TRANSFER: Batches are copied, checkpointed after each boundary
    4. VERIFY: Destination content is compared to the source
    5. FINALIZE: Filesystem switches are applied
    6. COMPLETED / FAILED / CANCELLED

Usage:
    >>> from assetmigrate.migration import MigrationConfig
    >>> from assetmigrate.migration.orchestrator import MigrationOrchestrator
    >>>
    >>> orchestrator = MigrationOrchestrator(
    ...     source, destination, records,
    ...     lock_manager, checkpoints, changelog_repo, runs,
    ...     config=MigrationConfig(batch_size=100, max_concurrency=8),
    ... )
    >>> result = await orchestrator.start()
    >>> snapshot = await orchestrator.status(result.run_id)
    >>> print(f"{snapshot.phase.value}: {snapshot.progress_percent:.0f}%")
"""

from assetmigrate.migration.categorizer import (
    ORPHAN_ID_PREFIX,
    Categorizer,
    DiscoveredAsset,
    Discovery,
    count_by_action,
    count_by_category,
    discover,
)
from assetmigrate.migration.error_budget import ErrorBudget
from assetmigrate.migration.exceptions import (
    ITEM_RETRY_CONFIG,
    STORAGE_RETRY_CONFIG,
    ChangeLogFlushError,
    CheckpointWriteError,
    DestinationConflictError,
    ErrorBudgetExceededError,
    ErrorClassification,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    FailureKind,
    IntegrityError,
    InvalidPhaseTransitionError,
    InvalidRunIdError,
    InverseOperationError,
    ItemTransferError,
    LockAcquisitionError,
    LockError,
    LockLostError,
    MigrationAlreadyRunningError,
    MigrationError,
    OperationResult,
    RetryConfig,
    RollbackError,
    RollbackRefusedError,
    RunNotFoundError,
    RunStateError,
    classify_exception,
)
from assetmigrate.migration.models import (
    ChangeLogEntry,
    ChangeType,
    Checkpoint,
    DryRunReport,
    ErrorBudgetConfig,
    FilesystemSwitch,
    ItemAction,
    ItemCategory,
    ItemMismatch,
    ItemOutcome,
    MigrationConfig,
    MigrationRun,
    OrphanPolicy,
    RecordFieldMap,
    RollbackPlan,
    RollbackResult,
    RunMode,
    RunPhase,
    RunResult,
    RunStatus,
    RunStatusSnapshot,
    TransformPolicy,
    VerificationReport,
    VerifyMode,
    WorkItem,
    validate_run_id,
)
from assetmigrate.migration.verifier import Verifier

__all__ = [
    # Components
    "ErrorBudget",
    "Categorizer",
    "DiscoveredAsset",
    "Discovery",
    "discover",
    "count_by_category",
    "count_by_action",
    "ORPHAN_ID_PREFIX",
    "Verifier",
    # Models
    "RunMode",
    "RunStatus",
    "RunPhase",
    "ItemCategory",
    "ItemAction",
    "ItemOutcome",
    "ChangeType",
    "VerifyMode",
    "OrphanPolicy",
    "TransformPolicy",
    "ErrorBudgetConfig",
    "RecordFieldMap",
    "FilesystemSwitch",
    "MigrationConfig",
    "WorkItem",
    "MigrationRun",
    "Checkpoint",
    "ChangeLogEntry",
    "ItemMismatch",
    "VerificationReport",
    "RunResult",
    "RunStatusSnapshot",
    "DryRunReport",
    "RollbackPlan",
    "RollbackResult",
    "validate_run_id",
    # Errors
    "ErrorSeverity",
    "ErrorRecoverability",
    "FailureKind",
    "RetryConfig",
    "ITEM_RETRY_CONFIG",
    "STORAGE_RETRY_CONFIG",
    "ErrorClassification",
    "OperationResult",
    "ErrorHandler",
    "classify_exception",
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
]
