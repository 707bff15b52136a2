"""
assetmigrate - Resumable, reversible asset migration engine.

This library provides:
- A system-wide migration lock with in-memory, SQLite and PostgreSQL backends
- Atomic checkpoints (in-memory, file, SQLite, PostgreSQL)
- A durable, sequenced change log that makes every run reversible
- The migration orchestrator: discover, categorize, transfer, verify, finalize
- Reverse replay of a run's change log
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("assetmigrate-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from assetmigrate.locks import (
    InMemoryLockManager,
    LockHandle,
    LockManager,
    LockMode,
    PostgreSQLLockManager,
    SQLiteLockManager,
)
from assetmigrate.locks.sqlite import SQLITE_AVAILABLE
from assetmigrate.migration import (
    ChangeType,
    Checkpoint,
    MigrationConfig,
    MigrationError,
    MigrationRun,
    RollbackResult,
    RunMode,
    RunPhase,
    RunResult,
    RunStatus,
    RunStatusSnapshot,
    WorkItem,
)
from assetmigrate.migration.changelog import ChangeLog
from assetmigrate.migration.orchestrator import MigrationOrchestrator
from assetmigrate.migration.rollback import RollbackExecutor
from assetmigrate.records import InMemoryRecordStore, Record, RecordStore
from assetmigrate.repositories import (
    ChangeLogRepository,
    CheckpointStore,
    FileCheckpointStore,
    InMemoryChangeLogRepository,
    InMemoryCheckpointStore,
    InMemoryRunRepository,
    PostgreSQLChangeLogRepository,
    PostgreSQLCheckpointStore,
    PostgreSQLRunRepository,
    RunRepository,
    SQLiteChangeLogRepository,
    SQLiteCheckpointStore,
    SQLiteRunRepository,
)
from assetmigrate.storage import (
    InMemoryStorageProvider,
    LocalFileStorageProvider,
    StorageProvider,
)

__all__ = [
    # Version
    "__version__",
    "SQLITE_AVAILABLE",
    # Orchestration
    "MigrationOrchestrator",
    "RollbackExecutor",
    "MigrationConfig",
    "MigrationRun",
    "RunMode",
    "RunPhase",
    "RunStatus",
    "RunResult",
    "RunStatusSnapshot",
    "RollbackResult",
    "WorkItem",
    "Checkpoint",
    "ChangeLog",
    "ChangeType",
    "MigrationError",
    # Locks
    "LockManager",
    "LockMode",
    "LockHandle",
    "InMemoryLockManager",
    "SQLiteLockManager",
    "PostgreSQLLockManager",
    # Repositories
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "SQLiteCheckpointStore",
    "PostgreSQLCheckpointStore",
    "ChangeLogRepository",
    "InMemoryChangeLogRepository",
    "SQLiteChangeLogRepository",
    "PostgreSQLChangeLogRepository",
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "PostgreSQLRunRepository",
    # Collaborators
    "StorageProvider",
    "InMemoryStorageProvider",
    "LocalFileStorageProvider",
    "Record",
    "RecordStore",
    "InMemoryRecordStore",
]
