"""
SQLite lock manager.

Each attempt opens its own connection and runs inside ``BEGIN IMMEDIATE``,
which takes SQLite's write lock up front: two processes racing for the
migration lock serialize on the database, and the loser either sees the
winner's live record or gets "database is locked", which is treated as
contention and retried with backoff.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from assetmigrate.locks.interface import AcquireAttempt, LockManager, LockMode, LockRecord
from assetmigrate.schemas import get_schema

try:
    import aiosqlite

    SQLITE_AVAILABLE = True
except ImportError:
    SQLITE_AVAILABLE = False
    aiosqlite = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


class SQLiteNotAvailableError(ImportError):
    """Raised when aiosqlite is not installed."""

    def __init__(self) -> None:
        super().__init__(
            "aiosqlite is required for SQLite backends. "
            "Install it with: pip install assetmigrate-py[sqlite]"
        )


def _row_to_record(row: Any) -> LockRecord:
    return LockRecord(
        lock_name=row[0],
        run_id=row[1],
        holder_id=row[2],
        mode=LockMode(row[3]),
        acquired_at=datetime.fromisoformat(row[4]),
        heartbeat_at=datetime.fromisoformat(row[5]),
        expires_at=datetime.fromisoformat(row[6]),
    )


_SELECT = """
    SELECT lock_name, run_id, holder_id, mode, acquired_at, heartbeat_at, expires_at
    FROM migration_locks
    WHERE lock_name = ?
"""


class SQLiteLockManager(LockManager):
    """
    Lock manager backed by the ``migration_locks`` table of a SQLite file.

    Args:
        database_path: Path to the SQLite database shared by all processes.
        busy_timeout: Seconds SQLite waits on its own lock before reporting
            "database is locked".
        **kwargs: LockManager options.

    Raises:
        SQLiteNotAvailableError: If aiosqlite is not installed.
    """

    def __init__(self, database_path: str, *, busy_timeout: float = 1.0, **kwargs: Any) -> None:
        if not SQLITE_AVAILABLE:
            raise SQLiteNotAvailableError()
        super().__init__(**kwargs)
        self._database_path = database_path
        self._busy_timeout = busy_timeout

    async def initialize(self) -> None:
        """Create the lock table if it does not exist."""
        async with aiosqlite.connect(self._database_path) as conn:
            await conn.executescript(get_schema("locks", backend="sqlite"))
            await conn.commit()

    def _connect(self) -> Any:
        return aiosqlite.connect(
            self._database_path,
            timeout=self._busy_timeout,
            isolation_level=None,
        )

    def _is_contention_error(self, error: BaseException) -> bool:
        if not isinstance(error, sqlite3.OperationalError):
            return False
        message = str(error).lower()
        return "locked" in message or "busy" in message

    async def _try_acquire(
        self, candidate: LockRecord, now: datetime, takeover: bool
    ) -> AcquireAttempt:
        async with self._connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(_SELECT, (self.lock_name,))
                row = await cursor.fetchone()
                existing = _row_to_record(row) if row else None

                replaceable = existing is None or existing.is_expired(now) or (
                    takeover and existing.run_id == candidate.run_id
                )
                if not replaceable:
                    await conn.execute("ROLLBACK")
                    return AcquireAttempt(acquired=False, current=existing)

                await conn.execute(
                    """
                    INSERT INTO migration_locks
                        (lock_name, run_id, holder_id, mode, acquired_at, heartbeat_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (lock_name) DO UPDATE
                    SET run_id = excluded.run_id,
                        holder_id = excluded.holder_id,
                        mode = excluded.mode,
                        acquired_at = excluded.acquired_at,
                        heartbeat_at = excluded.heartbeat_at,
                        expires_at = excluded.expires_at
                    """,
                    (
                        candidate.lock_name,
                        candidate.run_id,
                        candidate.holder_id,
                        candidate.mode.value,
                        candidate.acquired_at.isoformat(),
                        candidate.heartbeat_at.isoformat(),
                        candidate.expires_at.isoformat(),
                    ),
                )
                await conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise

        if existing is None:
            return AcquireAttempt(acquired=True, current=candidate)
        if existing.is_expired(now):
            return AcquireAttempt(acquired=True, current=candidate, reclaimed=existing)
        return AcquireAttempt(acquired=True, current=candidate, taken_over=existing)

    async def _refresh(self, holder_id: str, now: datetime, expires_at: datetime) -> bool:
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE migration_locks
                SET heartbeat_at = ?, expires_at = ?
                WHERE lock_name = ? AND holder_id = ?
                """,
                (now.isoformat(), expires_at.isoformat(), self.lock_name, holder_id),
            )
            return cursor.rowcount == 1

    async def _delete(self, holder_id: str) -> bool:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "DELETE FROM migration_locks WHERE lock_name = ? AND holder_id = ?",
                (self.lock_name, holder_id),
            )
            return cursor.rowcount == 1

    async def _read(self) -> LockRecord | None:
        async with self._connect() as conn:
            cursor = await conn.execute(_SELECT, (self.lock_name,))
            row = await cursor.fetchone()
            return _row_to_record(row) if row else None


__all__ = ["SQLiteLockManager", "SQLiteNotAvailableError", "SQLITE_AVAILABLE"]
