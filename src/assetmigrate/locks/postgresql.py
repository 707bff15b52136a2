"""
PostgreSQL lock manager.

Each attempt is one transaction in its own session. The existing row is
locked with ``SELECT ... FOR UPDATE NOWAIT``; the candidate is then written
with an upsert whose ``WHERE`` clause only replaces an expired row or,
on takeover, a row of the same run, and ``RETURNING`` tells whether the
write happened.
Serialization failures, deadlocks and lock-not-available errors are
contention and are retried with backoff.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assetmigrate.locks.interface import AcquireAttempt, LockManager, LockMode, LockRecord

logger = logging.getLogger(__name__)

CONTENTION_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
"""serialization_failure, deadlock_detected, lock_not_available."""

_SELECT_FOR_UPDATE = text("""
    SELECT lock_name, run_id, holder_id, mode, acquired_at, heartbeat_at, expires_at
    FROM migration_locks
    WHERE lock_name = :lock_name
    FOR UPDATE NOWAIT
""")

_UPSERT = text("""
    INSERT INTO migration_locks
        (lock_name, run_id, holder_id, mode, acquired_at, heartbeat_at, expires_at)
    VALUES (:lock_name, :run_id, :holder_id, :mode, :acquired_at, :heartbeat_at, :expires_at)
    ON CONFLICT (lock_name) DO UPDATE
    SET run_id = EXCLUDED.run_id,
        holder_id = EXCLUDED.holder_id,
        mode = EXCLUDED.mode,
        acquired_at = EXCLUDED.acquired_at,
        heartbeat_at = EXCLUDED.heartbeat_at,
        expires_at = EXCLUDED.expires_at
    WHERE migration_locks.expires_at <= :now
       OR (:takeover AND migration_locks.run_id = EXCLUDED.run_id)
    RETURNING holder_id
""")


def _row_to_record(row: Any) -> LockRecord:
    return LockRecord(
        lock_name=row[0],
        run_id=row[1],
        holder_id=row[2],
        mode=LockMode(row[3]),
        acquired_at=row[4],
        heartbeat_at=row[5],
        expires_at=row[6],
    )


def _sqlstate(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None)
    for source in (orig, error):
        if source is None:
            continue
        code = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if code:
            return str(code)
    return None


class PostgreSQLLockManager(LockManager):
    """
    Lock manager backed by the ``migration_locks`` table in PostgreSQL.

    Args:
        session_factory: SQLAlchemy async session factory.
        **kwargs: LockManager options.

    Example:
        >>> manager = PostgreSQLLockManager(async_sessionmaker(engine))
        >>> async with manager.hold("run-42", timeout=5.0) as handle:
        ...     await orchestrator_work()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory

    def _is_contention_error(self, error: BaseException) -> bool:
        if not isinstance(error, DBAPIError):
            return False
        return _sqlstate(error) in CONTENTION_SQLSTATES

    async def _try_acquire(
        self, candidate: LockRecord, now: datetime, takeover: bool
    ) -> AcquireAttempt:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(_SELECT_FOR_UPDATE, {"lock_name": self.lock_name})
            row = result.fetchone()
            existing = _row_to_record(row) if row else None

            result = await session.execute(
                _UPSERT,
                {
                    "lock_name": candidate.lock_name,
                    "run_id": candidate.run_id,
                    "holder_id": candidate.holder_id,
                    "mode": candidate.mode.value,
                    "acquired_at": candidate.acquired_at,
                    "heartbeat_at": candidate.heartbeat_at,
                    "expires_at": candidate.expires_at,
                    "now": now,
                    "takeover": takeover,
                },
            )
            written = result.fetchone() is not None

        if not written:
            return AcquireAttempt(acquired=False, current=existing)
        if existing is None:
            return AcquireAttempt(acquired=True, current=candidate)
        if existing.is_expired(now):
            return AcquireAttempt(acquired=True, current=candidate, reclaimed=existing)
        return AcquireAttempt(acquired=True, current=candidate, taken_over=existing)

    async def _refresh(self, holder_id: str, now: datetime, expires_at: datetime) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                text("""
                    UPDATE migration_locks
                    SET heartbeat_at = :now, expires_at = :expires_at
                    WHERE lock_name = :lock_name AND holder_id = :holder_id
                """),
                {
                    "now": now,
                    "expires_at": expires_at,
                    "lock_name": self.lock_name,
                    "holder_id": holder_id,
                },
            )
            return result.rowcount == 1

    async def _delete(self, holder_id: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                text("""
                    DELETE FROM migration_locks
                    WHERE lock_name = :lock_name AND holder_id = :holder_id
                """),
                {"lock_name": self.lock_name, "holder_id": holder_id},
            )
            return result.rowcount == 1

    async def _read(self) -> LockRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT lock_name, run_id, holder_id, mode, acquired_at, heartbeat_at, expires_at
                    FROM migration_locks
                    WHERE lock_name = :lock_name
                """),
                {"lock_name": self.lock_name},
            )
            row = result.fetchone()
            return _row_to_record(row) if row else None


__all__ = ["PostgreSQLLockManager", "CONTENTION_SQLSTATES"]
