"""
Migration lock managers.

At most one live exclusive lock exists at any time across every process
sharing the backing store. Dry runs never take the lock.
"""

from assetmigrate.locks.in_memory import InMemoryLockManager, InMemoryLockTable
from assetmigrate.locks.interface import (
    DEFAULT_LOCK_NAME,
    AcquireAttempt,
    AcquireStatus,
    LockAcquireResult,
    LockHandle,
    LockManager,
    LockMode,
    LockRecord,
)
from assetmigrate.locks.postgresql import PostgreSQLLockManager
from assetmigrate.locks.sqlite import SQLITE_AVAILABLE, SQLiteLockManager

__all__ = [
    "DEFAULT_LOCK_NAME",
    "LockMode",
    "AcquireStatus",
    "LockRecord",
    "LockHandle",
    "AcquireAttempt",
    "LockAcquireResult",
    "LockManager",
    "InMemoryLockManager",
    "InMemoryLockTable",
    "SQLiteLockManager",
    "PostgreSQLLockManager",
    "SQLITE_AVAILABLE",
]
