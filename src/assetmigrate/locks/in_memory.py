"""
In-memory lock manager.

Several managers sharing one InMemoryLockTable contend exactly like
processes sharing a database table, which makes the table useful for
testing concurrent acquisition inside one event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any

from assetmigrate.locks.interface import AcquireAttempt, LockManager, LockRecord


class InMemoryLockTable:
    """A process-local stand-in for the migration_locks table."""

    def __init__(self) -> None:
        self.records: dict[str, LockRecord] = {}
        self.lock = asyncio.Lock()

    def clear(self) -> None:
        self.records.clear()


class InMemoryLockManager(LockManager):
    """
    Lock manager backed by an InMemoryLockTable.

    Example:
        >>> table = InMemoryLockTable()
        >>> first = InMemoryLockManager(table, holder_suffix="host-a:1")
        >>> second = InMemoryLockManager(table, holder_suffix="host-b:2")
        >>> (await first.acquire("run-1")).acquired
        True
        >>> (await second.acquire("run-2", timeout=0)).busy
        True
    """

    def __init__(self, table: InMemoryLockTable | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.table = table or InMemoryLockTable()

    async def _try_acquire(
        self, candidate: LockRecord, now: datetime, takeover: bool
    ) -> AcquireAttempt:
        async with self.table.lock:
            existing = self.table.records.get(self.lock_name)
            if existing is None:
                self.table.records[self.lock_name] = candidate
                return AcquireAttempt(acquired=True, current=candidate)
            if existing.is_expired(now):
                self.table.records[self.lock_name] = candidate
                return AcquireAttempt(acquired=True, current=candidate, reclaimed=existing)
            if takeover and existing.run_id == candidate.run_id:
                self.table.records[self.lock_name] = candidate
                return AcquireAttempt(acquired=True, current=candidate, taken_over=existing)
            return AcquireAttempt(acquired=False, current=existing)

    async def _refresh(self, holder_id: str, now: datetime, expires_at: datetime) -> bool:
        async with self.table.lock:
            existing = self.table.records.get(self.lock_name)
            if existing is None or existing.holder_id != holder_id:
                return False
            self.table.records[self.lock_name] = replace(
                existing, heartbeat_at=now, expires_at=expires_at
            )
            return True

    async def _delete(self, holder_id: str) -> bool:
        async with self.table.lock:
            existing = self.table.records.get(self.lock_name)
            if existing is None or existing.holder_id != holder_id:
                return False
            del self.table.records[self.lock_name]
            return True

    async def _read(self) -> LockRecord | None:
        async with self.table.lock:
            return self.table.records.get(self.lock_name)


__all__ = ["InMemoryLockManager", "InMemoryLockTable"]
