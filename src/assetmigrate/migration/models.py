"""
Data models for the asset migration engine.

Enums:
    - RunMode: Live or dry run
    - RunStatus: Run lifecycle status
    - RunPhase: Orchestrator state machine phases
    - ItemCategory / ItemAction / ItemOutcome: Work item classification
    - ChangeType: Tagged variants of change-log entries
    - VerifyMode / OrphanPolicy / TransformPolicy: Policy switches

Configuration:
    - ErrorBudgetConfig: Consecutive and ratio failure thresholds
    - RecordFieldMap: Names of the record fields the engine reads and writes
    - FilesystemSwitch: A record field switched to a new value on finalize
    - MigrationConfig: Complete run configuration

Core Models:
    - MigrationRun: One end-to-end execution (mutable, orchestrator-owned)
    - WorkItem: One file plus its owning record
    - Checkpoint: Durable resumption state
    - ChangeLogEntry: One immutable record of a mutation

Reports:
    - RunResult, RunStatusSnapshot, VerificationReport, ItemMismatch,
      DryRunReport, RollbackPlan, RollbackResult
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from assetmigrate.migration.exceptions import (
    ITEM_RETRY_CONFIG,
    InvalidPhaseTransitionError,
    InvalidRunIdError,
    RetryConfig,
)


RUN_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def validate_run_id(run_id: str) -> str:
    """
    Check that ``run_id`` is safe to use in file names and keys.

    Raises:
        InvalidRunIdError: If it contains anything outside [a-zA-Z0-9_-].
    """
    if not isinstance(run_id, str) or not RUN_ID_PATTERN.match(run_id):
        raise InvalidRunIdError(str(run_id))
    return run_id


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class RunMode(Enum):
    """Whether a run mutates external state."""

    LIVE = "live"
    """Transfers content, updates records, writes the change log."""

    DRY_RUN = "dry_run"
    """Read-only simulation: no lock, no change log, no writes."""


class RunStatus(Enum):
    """
    Status of a migration run.

    A run is RUNNING until it reaches a terminal phase. ROLLED_BACK is set
    by the rollback executor after a full rollback.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self != RunStatus.RUNNING

    @property
    def is_resumable(self) -> bool:
        """Failed and cancelled runs can be resumed from their checkpoint."""
        return self in (RunStatus.FAILED, RunStatus.CANCELLED)


class RunPhase(Enum):
    """
    Orchestrator phases.

    State machine transitions:
        PENDING -> DISCOVER -> CATEGORIZE -> TRANSFER -> VERIFY -> FINALIZE -> COMPLETED
                                                |                     ^
                                                +---------------------+ (verification off)
        VERIFY -----------> ROLLBACK (automatic rollback policy)
        Any non-terminal -> FAILED
        Any non-terminal -> CANCELLED

    Resume re-enters the phase recorded in the run's checkpoint; it is not
    a transition and is handled by MigrationRun.resume().

    ROLLBACK is also the phase tag of rollback executor checkpoints.
    """

    PENDING = "pending"
    """Run created, nothing done yet."""

    DISCOVER = "discover"
    """Enumerating records and source objects."""

    CATEGORIZE = "categorize"
    """Classifying items and computing destination paths."""

    TRANSFER = "transfer"
    """Copying batches of items and updating records."""

    VERIFY = "verify"
    """Comparing destination content against the source."""

    FINALIZE = "finalize"
    """Applying filesystem switches and closing the run."""

    COMPLETED = "completed"
    """Run finished successfully."""

    FAILED = "failed"
    """Run aborted on a run-fatal error."""

    CANCELLED = "cancelled"
    """Run stopped by an operator at a batch boundary."""

    ROLLBACK = "rollback"
    """Run is being, or was, rolled back."""

    @property
    def is_terminal(self) -> bool:
        return self in (RunPhase.COMPLETED, RunPhase.FAILED, RunPhase.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (
            RunPhase.DISCOVER,
            RunPhase.CATEGORIZE,
            RunPhase.TRANSFER,
            RunPhase.VERIFY,
            RunPhase.FINALIZE,
        )

    def can_transition_to(self, target: RunPhase) -> bool:
        """
        Check if transition to ``target`` is allowed.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False
        if target in (RunPhase.FAILED, RunPhase.CANCELLED):
            return True

        valid_transitions: dict[RunPhase, list[RunPhase]] = {
            RunPhase.PENDING: [RunPhase.DISCOVER],
            RunPhase.DISCOVER: [RunPhase.CATEGORIZE],
            RunPhase.CATEGORIZE: [RunPhase.TRANSFER],
            RunPhase.TRANSFER: [RunPhase.VERIFY, RunPhase.FINALIZE],
            RunPhase.VERIFY: [RunPhase.FINALIZE, RunPhase.ROLLBACK],
            RunPhase.FINALIZE: [RunPhase.COMPLETED],
        }
        return target in valid_transitions.get(self, [])


class ItemCategory(Enum):
    """Classification of a work item."""

    LINKED_ASSET = "linked_asset"
    """Primary content referenced by a record."""

    TRANSFORM_DERIVED = "transform_derived"
    """Generated derivative (thumbnail, resized image, ...)."""

    ORPHAN = "orphan"
    """Source object referenced by no record."""


class ItemAction(Enum):
    """What the transfer phase does with an item."""

    TRANSFER = "transfer"
    SKIP = "skip"
    DELETE_SOURCE = "delete_source"


class ItemOutcome(Enum):
    """Per-item result of the transfer phase."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class ChangeType(Enum):
    """
    Tagged variants of change-log entries.

    Each payload carries what is needed to invert the mutation.
    """

    FILE_COPIED = "file_copied"
    """Content copied to the destination; the source is untouched."""

    FILE_MOVED = "file_moved"
    """Content copied to the destination and the source deleted."""

    FILE_DELETED = "file_deleted"
    """An object was deleted (derived artifact, cleanup)."""

    RECORD_UPDATED = "record_updated"
    """Record fields changed; payload holds previous and updated values."""

    FILESYSTEM_SWITCHED = "filesystem_switched"
    """A configuration record was switched to the destination."""


class VerifyMode(Enum):
    NONE = "none"
    SAMPLE = "sample"
    FULL = "full"


class OrphanPolicy(Enum):
    """What to do with source objects no record references."""

    QUARANTINE = "quarantine"
    """Copy under the quarantine prefix of the destination."""

    SKIP = "skip"
    """Report and leave in place."""


class TransformPolicy(Enum):
    """What to do with transform-derived artifacts."""

    MIGRATE = "migrate"
    SKIP = "skip"
    DELETE_SOURCE = "delete_source"
    """Delete from the source; they are regenerated on demand."""


@dataclass(frozen=True)
class ErrorBudgetConfig:
    """
    Failure thresholds for one run.

    Attributes:
        max_consecutive_failures: Abort once this many items in a row fail.
        max_failure_ratio: Abort once failed/processed exceeds this ratio...
        ratio_min_items: ...but only after this many items were processed.
        max_total_failures: Optional absolute cap on failed items.
    """

    max_consecutive_failures: int = 10
    max_failure_ratio: float = 0.5
    ratio_min_items: int = 20
    max_total_failures: int | None = None

    def __post_init__(self) -> None:
        if self.max_consecutive_failures < 1:
            raise ValueError(
                f"max_consecutive_failures must be >= 1, got {self.max_consecutive_failures}"
            )
        if not 0.0 < self.max_failure_ratio <= 1.0:
            raise ValueError(
                f"max_failure_ratio must be in (0.0, 1.0], got {self.max_failure_ratio}"
            )
        if self.ratio_min_items < 1:
            raise ValueError(f"ratio_min_items must be >= 1, got {self.ratio_min_items}")
        if self.max_total_failures is not None and self.max_total_failures < 1:
            raise ValueError(f"max_total_failures must be >= 1, got {self.max_total_failures}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_consecutive_failures": self.max_consecutive_failures,
            "max_failure_ratio": self.max_failure_ratio,
            "ratio_min_items": self.ratio_min_items,
            "max_total_failures": self.max_total_failures,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorBudgetConfig:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class RecordFieldMap:
    """
    Names of the record fields the engine reads and writes.

    Attributes:
        path: Field holding the object path inside its storage.
        location: Field naming the storage the object lives in.
        size: Optional field holding the object size.
        content_hash: Optional field holding the content hash.
    """

    path: str = "path"
    location: str = "location"
    size: str = "size"
    content_hash: str = "content_hash"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "location": self.location,
            "size": self.size,
            "content_hash": self.content_hash,
        }


@dataclass(frozen=True)
class FilesystemSwitch:
    """
    A record field set to a new value when the run finalizes.

    Typically switches a volume or settings record from the source
    filesystem to the destination.
    """

    record_id: str
    field: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"record_id": self.record_id, "field": self.field, "value": self.value}


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for a migration run.

    Immutable so that a run's configuration cannot change under it. The
    configuration is persisted with the run and reused on resume.

    Attributes:
        batch_size: Items per transfer batch.
        checkpoint_every_batches: Save a checkpoint every N batches.
        changelog_flush_every: Flush the change-log buffer every N entries.
        max_concurrency: Items transferred in parallel within a batch.
        item_retry: Retry policy for transient item failures.
        error_budget: Failure thresholds that abort the run.
        checkpoint_retention_hours: Checkpoints older than this are pruned.
        verify_mode: NONE, SAMPLE or FULL verification.
        verify_sample_size: Items checked in SAMPLE mode.
        verify_hash: Compare content hashes, not only sizes.
        rollback_on_verification_failure: Roll back automatically when
            verification finds mismatches (off by default).
        preserve_folders: Keep the source folder hierarchy at the destination.
        source_prefix: Only source objects under this prefix are discovered.
        destination_prefix: Prefix prepended to every destination path.
        quarantine_prefix: Destination prefix for quarantined orphans.
        orphan_policy: What to do with orphans.
        transform_policy: What to do with transform-derived artifacts.
        transform_segment_prefix: A path segment starting with this marks a
            transform artifact (e.g. "_thumbs/a.png").
        delete_source: Delete the source object after a verified copy.
        record_filter: Equality filter applied when querying records.
        field_map: Record field names.
        source_location: Value of the location field for source objects.
        destination_location: Value written to the location field.
        filesystem_switches: Switches applied on finalize.
        max_items_per_second: Transfer rate limit (0 = unlimited).
        lock_timeout: Seconds to wait for the migration lock.

    Example:
        >>> config = MigrationConfig(batch_size=50, max_concurrency=8)
        >>> config.batch_size
        50
    """

    batch_size: int = 100
    checkpoint_every_batches: int = 1
    changelog_flush_every: int = 5
    max_concurrency: int = 4
    item_retry: RetryConfig = ITEM_RETRY_CONFIG
    error_budget: ErrorBudgetConfig = field(default_factory=ErrorBudgetConfig)
    checkpoint_retention_hours: float = 72.0
    verify_mode: VerifyMode = VerifyMode.SAMPLE
    verify_sample_size: int = 50
    verify_hash: bool = True
    rollback_on_verification_failure: bool = False
    preserve_folders: bool = True
    source_prefix: str = ""
    destination_prefix: str = ""
    quarantine_prefix: str = "quarantine"
    orphan_policy: OrphanPolicy = OrphanPolicy.QUARANTINE
    transform_policy: TransformPolicy = TransformPolicy.MIGRATE
    transform_segment_prefix: str = "_"
    delete_source: bool = False
    record_filter: dict[str, Any] = field(default_factory=dict)
    field_map: RecordFieldMap = field(default_factory=RecordFieldMap)
    source_location: str = "source"
    destination_location: str = "destination"
    filesystem_switches: tuple[FilesystemSwitch, ...] = ()
    max_items_per_second: float = 0.0
    lock_timeout: float = 3.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.checkpoint_every_batches < 1:
            raise ValueError(
                f"checkpoint_every_batches must be >= 1, got {self.checkpoint_every_batches}"
            )
        if self.changelog_flush_every < 1:
            raise ValueError(
                f"changelog_flush_every must be >= 1, got {self.changelog_flush_every}"
            )
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.checkpoint_retention_hours <= 0:
            raise ValueError(
                f"checkpoint_retention_hours must be > 0, got {self.checkpoint_retention_hours}"
            )
        if self.verify_sample_size < 1:
            raise ValueError(f"verify_sample_size must be >= 1, got {self.verify_sample_size}")
        if self.max_items_per_second < 0:
            raise ValueError(
                f"max_items_per_second must be >= 0, got {self.max_items_per_second}"
            )
        if self.lock_timeout < 0:
            raise ValueError(f"lock_timeout must be >= 0, got {self.lock_timeout}")
        if self.source_location == self.destination_location:
            raise ValueError("source_location and destination_location must differ")

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.checkpoint_retention_hours)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        return {
            "batch_size": self.batch_size,
            "checkpoint_every_batches": self.checkpoint_every_batches,
            "changelog_flush_every": self.changelog_flush_every,
            "max_concurrency": self.max_concurrency,
            "item_retry": self.item_retry.to_dict(),
            "error_budget": self.error_budget.to_dict(),
            "checkpoint_retention_hours": self.checkpoint_retention_hours,
            "verify_mode": self.verify_mode.value,
            "verify_sample_size": self.verify_sample_size,
            "verify_hash": self.verify_hash,
            "rollback_on_verification_failure": self.rollback_on_verification_failure,
            "preserve_folders": self.preserve_folders,
            "source_prefix": self.source_prefix,
            "destination_prefix": self.destination_prefix,
            "quarantine_prefix": self.quarantine_prefix,
            "orphan_policy": self.orphan_policy.value,
            "transform_policy": self.transform_policy.value,
            "transform_segment_prefix": self.transform_segment_prefix,
            "delete_source": self.delete_source,
            "record_filter": dict(self.record_filter),
            "field_map": self.field_map.to_dict(),
            "source_location": self.source_location,
            "destination_location": self.destination_location,
            "filesystem_switches": [s.to_dict() for s in self.filesystem_switches],
            "max_items_per_second": self.max_items_per_second,
            "lock_timeout": self.lock_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """Create from a dictionary produced by to_dict()."""
        defaults = cls()
        return cls(
            batch_size=data.get("batch_size", defaults.batch_size),
            checkpoint_every_batches=data.get(
                "checkpoint_every_batches", defaults.checkpoint_every_batches
            ),
            changelog_flush_every=data.get("changelog_flush_every", defaults.changelog_flush_every),
            max_concurrency=data.get("max_concurrency", defaults.max_concurrency),
            item_retry=(
                RetryConfig.from_dict(data["item_retry"])
                if "item_retry" in data
                else defaults.item_retry
            ),
            error_budget=(
                ErrorBudgetConfig.from_dict(data["error_budget"])
                if "error_budget" in data
                else defaults.error_budget
            ),
            checkpoint_retention_hours=data.get(
                "checkpoint_retention_hours", defaults.checkpoint_retention_hours
            ),
            verify_mode=VerifyMode(data.get("verify_mode", defaults.verify_mode.value)),
            verify_sample_size=data.get("verify_sample_size", defaults.verify_sample_size),
            verify_hash=data.get("verify_hash", defaults.verify_hash),
            rollback_on_verification_failure=data.get(
                "rollback_on_verification_failure", defaults.rollback_on_verification_failure
            ),
            preserve_folders=data.get("preserve_folders", defaults.preserve_folders),
            source_prefix=data.get("source_prefix", defaults.source_prefix),
            destination_prefix=data.get("destination_prefix", defaults.destination_prefix),
            quarantine_prefix=data.get("quarantine_prefix", defaults.quarantine_prefix),
            orphan_policy=OrphanPolicy(data.get("orphan_policy", defaults.orphan_policy.value)),
            transform_policy=TransformPolicy(
                data.get("transform_policy", defaults.transform_policy.value)
            ),
            transform_segment_prefix=data.get(
                "transform_segment_prefix", defaults.transform_segment_prefix
            ),
            delete_source=data.get("delete_source", defaults.delete_source),
            record_filter=dict(data.get("record_filter", {})),
            field_map=RecordFieldMap(**data.get("field_map", {})),
            source_location=data.get("source_location", defaults.source_location),
            destination_location=data.get("destination_location", defaults.destination_location),
            filesystem_switches=tuple(
                FilesystemSwitch(**s) for s in data.get("filesystem_switches", [])
            ),
            max_items_per_second=data.get("max_items_per_second", defaults.max_items_per_second),
            lock_timeout=data.get("lock_timeout", defaults.lock_timeout),
        )


@dataclass(frozen=True)
class WorkItem:
    """
    One unit of transfer: a source object plus its owning record.

    Attributes:
        item_id: Stable identifier (the source path).
        source_path: Path in the source storage.
        destination_path: Path in the destination storage.
        category: Item classification.
        action: What the transfer phase does with it.
        record_id: Owning record, None for orphans.
        size: Size in bytes if known.
        content_hash: Hex SHA-256 if known.
    """

    item_id: str
    source_path: str
    destination_path: str
    category: ItemCategory
    action: ItemAction = ItemAction.TRANSFER
    record_id: str | None = None
    size: int | None = None
    content_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "source_path": self.source_path,
            "destination_path": self.destination_path,
            "category": self.category.value,
            "action": self.action.value,
            "record_id": self.record_id,
            "size": self.size,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        return cls(
            item_id=data["item_id"],
            source_path=data["source_path"],
            destination_path=data["destination_path"],
            category=ItemCategory(data["category"]),
            action=ItemAction(data.get("action", ItemAction.TRANSFER.value)),
            record_id=data.get("record_id"),
            size=data.get("size"),
            content_hash=data.get("content_hash"),
        )


@dataclass(frozen=True)
class ItemMismatch:
    """One verification finding."""

    item_id: str
    destination_path: str
    reason: str
    """'missing', 'size' or 'hash'."""

    expected: str | int | None = None
    actual: str | int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "destination_path": self.destination_path,
            "reason": self.reason,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass(frozen=True)
class VerificationReport:
    """
    Result of the verify phase.

    Mismatches are reported for operator decision; they never change the
    destination by themselves.
    """

    mode: VerifyMode
    checked: int = 0
    matched: int = 0
    mismatches: tuple[ItemMismatch, ...] = ()
    excluded_failed: int = 0
    verified_at: datetime = field(default_factory=utc_now)

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches

    @property
    def missing(self) -> list[str]:
        return [m.item_id for m in self.mismatches if m.reason == "missing"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "checked": self.checked,
            "matched": self.matched,
            "mismatches": [m.to_dict() for m in self.mismatches],
            "excluded_failed": self.excluded_failed,
            "verified_at": self.verified_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationReport:
        return cls(
            mode=VerifyMode(data["mode"]),
            checked=data.get("checked", 0),
            matched=data.get("matched", 0),
            mismatches=tuple(ItemMismatch(**m) for m in data.get("mismatches", [])),
            excluded_failed=data.get("excluded_failed", 0),
            verified_at=_parse_dt(data.get("verified_at")) or utc_now(),
        )


@dataclass
class MigrationRun:
    """
    One end-to-end execution of the migration engine.

    Mutable because its phase and counters change as the run proceeds;
    only the orchestrator mutates it.

    Attributes:
        run_id: Unique run identifier.
        mode: Live or dry run.
        config: Configuration snapshot.
        phase: Current phase.
        status: Current status.
        started_at: When the run was created.
        updated_at: Last persisted change.
        finished_at: When the run reached a terminal status.
        items_total: Work items in the manifest.
        processed / succeeded / failed / skipped: Item counters.
        cancel_requested: Set by cancel(); observed at batch boundaries.
        error_code / error_message: Failure reason of a failed run.
        verification: Verify phase report, if verification ran.
    """

    run_id: str
    mode: RunMode = RunMode.LIVE
    config: MigrationConfig = field(default_factory=MigrationConfig)
    phase: RunPhase = RunPhase.PENDING
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    items_total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancel_requested: bool = False
    error_code: str | None = None
    error_message: str | None = None
    verification: VerificationReport | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_dry_run(self) -> bool:
        return self.mode is RunMode.DRY_RUN

    @property
    def progress_percent(self) -> float:
        if self.items_total == 0:
            return 0.0
        return min(100.0, (self.processed / self.items_total) * 100)

    @property
    def duration(self) -> timedelta:
        return (self.finished_at or utc_now()) - self.started_at

    def transition_to(self, target: RunPhase) -> None:
        """
        Move to ``target``, validating against the state machine.

        Terminal phases also set the matching terminal status.

        Raises:
            InvalidPhaseTransitionError: If the transition is not allowed.
        """
        if not self.phase.can_transition_to(target):
            raise InvalidPhaseTransitionError(self.run_id, self.phase, target)
        self.phase = target
        self.updated_at = utc_now()
        terminal_status = {
            RunPhase.COMPLETED: RunStatus.COMPLETED,
            RunPhase.FAILED: RunStatus.FAILED,
            RunPhase.CANCELLED: RunStatus.CANCELLED,
        }.get(target)
        if terminal_status is not None:
            self.status = terminal_status
            self.finished_at = self.updated_at

    def resume(self, phase: RunPhase) -> None:
        """Re-enter ``phase`` after a crash, failure or cancellation."""
        self.phase = phase
        self.status = RunStatus.RUNNING
        self.finished_at = None
        self.cancel_requested = False
        self.error_code = None
        self.error_message = None
        self.updated_at = utc_now()

    def apply_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.processed = checkpoint.processed
        self.succeeded = checkpoint.succeeded
        self.failed = checkpoint.failed
        self.skipped = checkpoint.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "config": self.config.to_dict(),
            "phase": self.phase.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": _iso(self.finished_at),
            "stats": self.stats(),
            "cancel_requested": self.cancel_requested,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "verification": self.verification.to_dict() if self.verification else None,
        }

    def stats(self) -> dict[str, int]:
        return {
            "items_total": self.items_total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationRun:
        stats = data.get("stats", {})
        verification = data.get("verification")
        return cls(
            run_id=data["run_id"],
            mode=RunMode(data["mode"]),
            config=MigrationConfig.from_dict(data.get("config", {})),
            phase=RunPhase(data["phase"]),
            status=RunStatus(data["status"]),
            started_at=_parse_dt(data["started_at"]) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
            finished_at=_parse_dt(data.get("finished_at")),
            items_total=stats.get("items_total", 0),
            processed=stats.get("processed", 0),
            succeeded=stats.get("succeeded", 0),
            failed=stats.get("failed", 0),
            skipped=stats.get("skipped", 0),
            cancel_requested=bool(data.get("cancel_requested", False)),
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
            verification=VerificationReport.from_dict(verification) if verification else None,
        )


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable resumption state for one run (or one rollback).

    Attributes:
        run_id: Run identifier (``<run_id>_rollback`` for rollback progress).
        phase: Phase to re-enter on resume.
        batch_offset: Index of the first manifest item not yet attempted.
        batches_completed: Transfer batches committed so far.
        processed / succeeded / failed / skipped: Cumulative item counters.
        last_sequence: Change-log high-water mark when saved. For rollback
            checkpoints, the last successfully reversed sequence.
        consecutive_failures: Error budget state.
        failed_item_ids: Items that failed, excluded from verification.
        updated_at: When the checkpoint was saved.
        retention_until: After this instant the checkpoint may be pruned.
    """

    run_id: str
    phase: RunPhase
    batch_offset: int = 0
    batches_completed: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    last_sequence: int = 0
    consecutive_failures: int = 0
    failed_item_ids: tuple[str, ...] = ()
    updated_at: datetime = field(default_factory=utc_now)
    retention_until: datetime = field(default_factory=lambda: utc_now() + timedelta(hours=72))

    def __post_init__(self) -> None:
        if self.batch_offset < 0:
            raise ValueError(f"batch_offset must be >= 0, got {self.batch_offset}")
        if self.last_sequence < 0:
            raise ValueError(f"last_sequence must be >= 0, got {self.last_sequence}")

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.retention_until <= (now or utc_now())

    def advance(self, **changes: Any) -> Checkpoint:
        """Copy with ``changes`` applied and a fresh ``updated_at``."""
        changes.setdefault("updated_at", utc_now())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "phase": self.phase.value,
            "batch_offset": self.batch_offset,
            "batches_completed": self.batches_completed,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "last_sequence": self.last_sequence,
            "consecutive_failures": self.consecutive_failures,
            "failed_item_ids": list(self.failed_item_ids),
            "updated_at": self.updated_at.isoformat(),
            "retention_until": self.retention_until.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            run_id=data["run_id"],
            phase=RunPhase(data["phase"]),
            batch_offset=data.get("batch_offset", 0),
            batches_completed=data.get("batches_completed", 0),
            processed=data.get("processed", 0),
            succeeded=data.get("succeeded", 0),
            failed=data.get("failed", 0),
            skipped=data.get("skipped", 0),
            last_sequence=data.get("last_sequence", 0),
            consecutive_failures=data.get("consecutive_failures", 0),
            failed_item_ids=tuple(data.get("failed_item_ids", ())),
            updated_at=_parse_dt(data["updated_at"]) or utc_now(),
            retention_until=_parse_dt(data["retention_until"]) or utc_now(),
        )


class ChangeLogEntry(BaseModel):
    """
    One immutable record of a mutation.

    Payloads by change type:
        FILE_COPIED / FILE_MOVED: source_path, destination_path, size,
            content_hash, source_provider, destination_provider
        FILE_DELETED: storage ("source" or "destination"), path, and
            optionally restore_storage / restore_path
        RECORD_UPDATED: record_id, previous, updated
        FILESYSTEM_SWITCHED: record_id, field, previous, value
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1, description="Globally unique, strictly increasing")
    run_id: str = Field(..., min_length=1)
    change_type: ChangeType
    phase: RunPhase
    item_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeLogEntry:
        return cls.model_validate(data)


@dataclass(frozen=True)
class RunResult:
    """
    Final result returned to the control surface.

    Attributes:
        run_id: Run identifier.
        status: Terminal status.
        phase: Final phase.
        mode: Live or dry run.
        items_total / succeeded / failed / skipped: Item counters.
        duration_seconds: Wall time of this invocation's run.
        last_sequence: Latest change-log sequence of the run.
        error_code / error_message: Failure reason, if any.
        verification: Verify phase report, if any.
        dry_run_report: Simulation report for dry runs.
    """

    run_id: str
    status: RunStatus
    phase: RunPhase
    mode: RunMode
    items_total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    last_sequence: int = 0
    error_code: str | None = None
    error_message: str | None = None
    verification: VerificationReport | None = None
    dry_run_report: DryRunReport | None = None

    @property
    def success(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @classmethod
    def from_run(
        cls,
        run: MigrationRun,
        *,
        last_sequence: int = 0,
        dry_run_report: DryRunReport | None = None,
    ) -> RunResult:
        return cls(
            run_id=run.run_id,
            status=run.status,
            phase=run.phase,
            mode=run.mode,
            items_total=run.items_total,
            succeeded=run.succeeded,
            failed=run.failed,
            skipped=run.skipped,
            duration_seconds=run.duration.total_seconds(),
            last_sequence=last_sequence,
            error_code=run.error_code,
            error_message=run.error_message,
            verification=run.verification,
            dry_run_report=dry_run_report,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "phase": self.phase.value,
            "mode": self.mode.value,
            "items_total": self.items_total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_seconds": self.duration_seconds,
            "last_sequence": self.last_sequence,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "verification": self.verification.to_dict() if self.verification else None,
            "dry_run_report": self.dry_run_report.to_dict() if self.dry_run_report else None,
        }


@dataclass(frozen=True)
class RunStatusSnapshot:
    """
    Read-only view for status consumers such as a polling dashboard.

    Combines the run record, its latest checkpoint counters and the latest
    change-log sequence number.
    """

    run_id: str
    status: RunStatus
    phase: RunPhase
    mode: RunMode
    items_total: int
    processed: int
    succeeded: int
    failed: int
    skipped: int
    batch_offset: int
    last_sequence: int
    started_at: datetime
    updated_at: datetime
    checkpoint_at: datetime | None = None
    cancel_requested: bool = False
    error_message: str | None = None

    @property
    def progress_percent(self) -> float:
        if self.items_total == 0:
            return 0.0
        return min(100.0, (self.processed / self.items_total) * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "phase": self.phase.value,
            "mode": self.mode.value,
            "items_total": self.items_total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "batch_offset": self.batch_offset,
            "last_sequence": self.last_sequence,
            "progress_percent": self.progress_percent,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "checkpoint_at": _iso(self.checkpoint_at),
            "cancel_requested": self.cancel_requested,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class DryRunReport:
    """
    What a live run would do, computed without mutating anything.

    Attributes:
        items_total: Items in the working set.
        by_category: Item counts per category.
        by_action: Item counts per action.
        would_transfer: Items that would be copied.
        would_skip: Items already at the destination or skipped by policy.
        would_conflict: Destinations that exist with different content.
        total_bytes: Bytes that would be copied.
        missing_sources: Records whose file is absent from the source.
    """

    items_total: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    by_action: dict[str, int] = field(default_factory=dict)
    would_transfer: int = 0
    would_skip: int = 0
    would_conflict: int = 0
    total_bytes: int = 0
    missing_sources: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "items_total": self.items_total,
            "by_category": dict(self.by_category),
            "by_action": dict(self.by_action),
            "would_transfer": self.would_transfer,
            "would_skip": self.would_skip,
            "would_conflict": self.would_conflict,
            "total_bytes": self.total_bytes,
            "missing_sources": list(self.missing_sources),
        }


@dataclass(frozen=True)
class RollbackPlan:
    """
    Dry-run output of the rollback executor.

    Attributes:
        run_id: Run to roll back.
        from_sequence: Highest sequence that would be reversed.
        to_sequence: Exclusive lower bound.
        total_entries: Entries that would be reversed.
        by_change_type: Counts per change type.
        by_phase: Counts per phase.
        irreversible: Entries that cannot be reversed (no restore info).
        estimated_seconds: Rough duration estimate.
    """

    run_id: str
    from_sequence: int
    to_sequence: int
    total_entries: int = 0
    by_change_type: dict[str, int] = field(default_factory=dict)
    by_phase: dict[str, int] = field(default_factory=dict)
    irreversible: int = 0
    estimated_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "from_sequence": self.from_sequence,
            "to_sequence": self.to_sequence,
            "total_entries": self.total_entries,
            "by_change_type": dict(self.by_change_type),
            "by_phase": dict(self.by_phase),
            "irreversible": self.irreversible,
            "estimated_seconds": self.estimated_seconds,
        }


@dataclass(frozen=True)
class RollbackResult:
    """
    Outcome of a rollback.

    Attributes:
        run_id: Run that was rolled back.
        success: True if every selected entry was reversed or already reversed.
        to_sequence: Exclusive lower bound that was requested.
        last_reversed_sequence: Lowest sequence reversed so far (resume point).
        reversed: Entries whose inverse was applied.
        already_reversed: Entries whose inverse condition already held.
        skipped: Entries filtered out or irreversible.
        failed: Entries that could not be reversed.
        errors: Messages of the failures.
        complete: True if the run was rolled back to its start.
        dry_run: True if nothing was mutated.
        plan: The plan, for dry runs.
    """

    run_id: str
    success: bool
    to_sequence: int
    last_reversed_sequence: int | None = None
    reversed: int = 0
    already_reversed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: tuple[str, ...] = ()
    complete: bool = False
    dry_run: bool = False
    plan: RollbackPlan | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "to_sequence": self.to_sequence,
            "last_reversed_sequence": self.last_reversed_sequence,
            "reversed": self.reversed,
            "already_reversed": self.already_reversed,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "complete": self.complete,
            "dry_run": self.dry_run,
            "plan": self.plan.to_dict() if self.plan else None,
        }


__all__ = [
    "utc_now",
    "RUN_ID_PATTERN",
    "validate_run_id",
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
    "ItemMismatch",
    "VerificationReport",
    "MigrationRun",
    "Checkpoint",
    "ChangeLogEntry",
    "RunResult",
    "RunStatusSnapshot",
    "DryRunReport",
    "RollbackPlan",
    "RollbackResult",
]
