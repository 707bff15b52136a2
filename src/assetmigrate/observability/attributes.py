"""
Standard span attributes for assetmigrate.

These constants keep span attributes consistent across the lock manager,
the checkpoint and change-log stores, the orchestrator and the rollback
executor. Database attributes follow OpenTelemetry semantic conventions.

Example:
    >>> from assetmigrate.observability.attributes import ATTR_RUN_ID, ATTR_RUN_PHASE
    >>>
    >>> with tracer.span(
    ...     "assetmigrate.orchestrator.phase",
    ...     {ATTR_RUN_ID: run.run_id, ATTR_RUN_PHASE: run.phase.value},
    ... ):
    ...     pass
"""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_RUN_ID = "migration.run.id"
"""Identifier of the migration run."""

ATTR_RUN_MODE = "migration.run.mode"
"""Run mode ('live' or 'dry_run')."""

ATTR_RUN_PHASE = "migration.run.phase"
"""Current phase of the run (e.g., 'transfer')."""

ATTR_RUN_STATUS = "migration.run.status"
"""Status of the run (e.g., 'completed')."""

# =============================================================================
# Work Item Attributes
# =============================================================================

ATTR_ITEM_ID = "migration.item.id"
"""Identifier of a work item."""

ATTR_ITEM_CATEGORY = "migration.item.category"
"""Category of a work item ('linked_asset', 'transform_derived', 'orphan')."""

ATTR_ITEM_OUTCOME = "migration.item.outcome"
"""Outcome of processing a work item ('succeeded', 'skipped', 'failed')."""

ATTR_ITEM_COUNT = "migration.item.count"
"""Number of work items in an operation."""

ATTR_ITEM_ATTEMPTS = "migration.item.attempts"
"""Number of attempts made for one item."""

# =============================================================================
# Batch / Progress Attributes
# =============================================================================

ATTR_BATCH_OFFSET = "migration.batch.offset"
"""Index of the first item in a batch."""

ATTR_BATCH_SIZE = "migration.batch.size"
"""Number of items in a batch."""

ATTR_ITEMS_PROCESSED = "migration.items.processed"
"""Items processed so far in the run."""

ATTR_ITEMS_FAILED = "migration.items.failed"
"""Items failed so far in the run."""

# =============================================================================
# Change Log Attributes
# =============================================================================

ATTR_SEQUENCE = "migration.changelog.sequence"
"""A change-log sequence number."""

ATTR_TO_SEQUENCE = "migration.changelog.to_sequence"
"""Lower bound (exclusive) of a rollback."""

ATTR_CHANGE_TYPE = "migration.changelog.change_type"
"""Type of a change-log entry (e.g., 'file_copied')."""

ATTR_ENTRY_COUNT = "migration.changelog.entry_count"
"""Number of change-log entries in an operation."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_NAME = "migration.lock.name"
"""Name of the system-wide migration lock."""

ATTR_LOCK_HOLDER = "migration.lock.holder"
"""Holder identity of the lock (run id, host and pid)."""

ATTR_LOCK_MODE = "migration.lock.mode"
"""Requested lock mode ('exclusive' or 'dry_run')."""

ATTR_LOCK_STATUS = "migration.lock.status"
"""Result of an acquisition ('acquired', 'busy', 'error')."""

ATTR_LOCK_ATTEMPTS = "migration.lock.attempts"
"""Number of acquisition attempts made."""

# =============================================================================
# Storage Attributes
# =============================================================================

ATTR_STORAGE_PROVIDER = "migration.storage.provider"
"""Name of a storage provider."""

ATTR_STORAGE_PATH = "migration.storage.path"
"""Object path inside a storage provider."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system ('postgresql', 'sqlite')."""

ATTR_DB_NAME = "db.name"
"""Database name or path."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation (e.g., 'INSERT', 'SELECT')."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "error.type"
"""Exception class name of a recorded error."""

ATTR_ERROR_CODE = "migration.error.code"
"""Classification code of a recorded error."""


__all__ = [
    "ATTR_RUN_ID",
    "ATTR_RUN_MODE",
    "ATTR_RUN_PHASE",
    "ATTR_RUN_STATUS",
    "ATTR_ITEM_ID",
    "ATTR_ITEM_CATEGORY",
    "ATTR_ITEM_OUTCOME",
    "ATTR_ITEM_COUNT",
    "ATTR_ITEM_ATTEMPTS",
    "ATTR_BATCH_OFFSET",
    "ATTR_BATCH_SIZE",
    "ATTR_ITEMS_PROCESSED",
    "ATTR_ITEMS_FAILED",
    "ATTR_SEQUENCE",
    "ATTR_TO_SEQUENCE",
    "ATTR_CHANGE_TYPE",
    "ATTR_ENTRY_COUNT",
    "ATTR_LOCK_NAME",
    "ATTR_LOCK_HOLDER",
    "ATTR_LOCK_MODE",
    "ATTR_LOCK_STATUS",
    "ATTR_LOCK_ATTEMPTS",
    "ATTR_STORAGE_PROVIDER",
    "ATTR_STORAGE_PATH",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_ERROR_TYPE",
    "ATTR_ERROR_CODE",
]
