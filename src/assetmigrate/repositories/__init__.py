"""
Durable state for the migration engine.

- Checkpoint stores: resumption state per run
- Change-log repositories: sequenced, append-only record of mutations
- Run repositories: run status, counters and manifests

Each concern has in-memory, SQLite and PostgreSQL implementations behind a
Protocol; checkpoints additionally have an atomic file store.
"""

from assetmigrate.repositories.changelog import (
    DEFAULT_PAGE_SIZE,
    ChangeLogRepository,
    InMemoryChangeLogRepository,
    PostgreSQLChangeLogRepository,
    SQLiteChangeLogRepository,
)
from assetmigrate.repositories.checkpoint import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    PostgreSQLCheckpointStore,
    SQLiteCheckpointStore,
)
from assetmigrate.repositories.run import (
    InMemoryRunRepository,
    PostgreSQLRunRepository,
    RunRepository,
    SQLiteRunRepository,
)

__all__ = [
    # Checkpoints
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "SQLiteCheckpointStore",
    "PostgreSQLCheckpointStore",
    # Change log
    "ChangeLogRepository",
    "InMemoryChangeLogRepository",
    "SQLiteChangeLogRepository",
    "PostgreSQLChangeLogRepository",
    "DEFAULT_PAGE_SIZE",
    # Runs
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "PostgreSQLRunRepository",
]
