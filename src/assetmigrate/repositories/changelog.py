"""
Change-log repositories.

The change log is an append-only sequence of ChangeLogEntry rows with
globally unique, strictly increasing sequence numbers. Numbers are handed
out by a durable counter (``changelog_sequences``) that is incremented in a
single statement, so concurrent writers in separate processes always claim
disjoint, contiguous blocks.

Implementations:
- InMemoryChangeLogRepository: for tests and dry runs
- SQLiteChangeLogRepository: aiosqlite
- PostgreSQLChangeLogRepository: SQLAlchemy async
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from assetmigrate.migration.models import ChangeLogEntry, ChangeType, RunPhase
from assetmigrate.observability import Tracer, create_tracer
from assetmigrate.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_ENTRY_COUNT,
    ATTR_RUN_ID,
    ATTR_SEQUENCE,
)
from assetmigrate.repositories._connection import execute_with_connection
from assetmigrate.serialization import json_dumps, json_loads

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

SEQUENCE_NAME = "changelog"
DEFAULT_PAGE_SIZE = 500


@runtime_checkable
class ChangeLogRepository(Protocol):
    """Protocol for durable change-log storage."""

    async def claim_sequences(self, count: int = 1) -> int:
        """
        Durably claim ``count`` consecutive sequence numbers.

        Returns:
            The first number of the claimed block.
        """
        ...

    async def write_entries(self, entries: Sequence[ChangeLogEntry]) -> None:
        """Persist ``entries`` all-or-nothing."""
        ...

    async def read_after(
        self,
        after_sequence: int,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        """Entries with sequence > ``after_sequence``, ascending."""
        ...

    async def read_before(
        self,
        before_sequence: int | None = None,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        """Entries with sequence < ``before_sequence`` (all if None), descending."""
        ...

    async def latest_sequence(self, run_id: str | None = None) -> int:
        """Highest persisted sequence, or 0."""
        ...

    async def delete_run(self, run_id: str) -> int:
        """Delete a run's entries; returns the number deleted."""
        ...

    async def prune(self, older_than: datetime) -> int:
        """Delete entries recorded before ``older_than``."""
        ...


class InMemoryChangeLogRepository:
    """
    In-memory change-log repository.

    ``fail_writes`` makes every write raise, for exercising flush failures.

    Example:
        >>> repo = InMemoryChangeLogRepository()
        >>> first = await repo.claim_sequences(3)
        >>> first
        1
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._entries: dict[int, ChangeLogEntry] = {}
        self._counter = 0
        self._lock = asyncio.Lock()
        self.fail_writes: BaseException | None = None
        self.write_count = 0

    async def claim_sequences(self, count: int = 1) -> int:
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        async with self._lock:
            first = self._counter + 1
            self._counter += count
            return first

    async def write_entries(self, entries: Sequence[ChangeLogEntry]) -> None:
        with self._tracer.span(
            "assetmigrate.changelog_repository.write_entries",
            {ATTR_ENTRY_COUNT: len(entries), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                if self.fail_writes is not None:
                    raise self.fail_writes
                for entry in entries:
                    if entry.sequence in self._entries:
                        raise ValueError(f"Duplicate change-log sequence {entry.sequence}")
                for entry in entries:
                    self._entries[entry.sequence] = entry
                self.write_count += 1

    async def read_after(
        self,
        after_sequence: int,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        async with self._lock:
            matching = [
                self._entries[seq]
                for seq in sorted(self._entries)
                if seq > after_sequence
                and (run_id is None or self._entries[seq].run_id == run_id)
            ]
        return matching[:limit]

    async def read_before(
        self,
        before_sequence: int | None = None,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        async with self._lock:
            matching = [
                self._entries[seq]
                for seq in sorted(self._entries, reverse=True)
                if (before_sequence is None or seq < before_sequence)
                and (run_id is None or self._entries[seq].run_id == run_id)
            ]
        return matching[:limit]

    async def latest_sequence(self, run_id: str | None = None) -> int:
        async with self._lock:
            sequences = [
                seq
                for seq, entry in self._entries.items()
                if run_id is None or entry.run_id == run_id
            ]
        return max(sequences, default=0)

    async def delete_run(self, run_id: str) -> int:
        async with self._lock:
            doomed = [seq for seq, entry in self._entries.items() if entry.run_id == run_id]
            for seq in doomed:
                del self._entries[seq]
            return len(doomed)

    async def prune(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                seq for seq, entry in self._entries.items() if entry.recorded_at < older_than
            ]
            for seq in doomed:
                del self._entries[seq]
            return len(doomed)

    @property
    def entries(self) -> list[ChangeLogEntry]:
        """All persisted entries in sequence order."""
        return [self._entries[seq] for seq in sorted(self._entries)]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._counter = 0


def _row_to_entry(row: Any) -> ChangeLogEntry:
    payload = row[5]
    recorded_at = row[6]
    return ChangeLogEntry(
        sequence=row[0],
        run_id=row[1],
        change_type=ChangeType(row[2]),
        phase=RunPhase(row[3]),
        item_id=row[4],
        payload=json_loads(payload) if isinstance(payload, str) else payload,
        recorded_at=(
            datetime.fromisoformat(recorded_at) if isinstance(recorded_at, str) else recorded_at
        ),
    )


_COLUMNS = "sequence, run_id, change_type, phase, item_id, payload, recorded_at"


class SQLiteChangeLogRepository:
    """
    SQLite change-log repository.

    The counter row is incremented with ``INSERT ... ON CONFLICT DO UPDATE
    ... RETURNING`` and committed before the numbers are handed out, so a
    claimed block survives a crash (possibly leaving a gap, never a reuse).
    An asyncio.Lock serializes claims and writes on the shared connection.

    Example:
        >>> async with aiosqlite.connect("migration.db") as db:
        ...     repo = SQLiteChangeLogRepository(db)
        ...     first = await repo.claim_sequences()
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection
        self._lock = asyncio.Lock()

    async def claim_sequences(self, count: int = 1) -> int:
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        async with self._lock:
            cursor = await self._connection.execute(
                """
                INSERT INTO changelog_sequences (name, value) VALUES (?, ?)
                ON CONFLICT (name) DO UPDATE
                SET value = changelog_sequences.value + excluded.value
                RETURNING value
                """,
                (SEQUENCE_NAME, count),
            )
            row = await cursor.fetchone()
            await cursor.close()
            await self._connection.commit()
        return int(row[0]) - count + 1

    async def write_entries(self, entries: Sequence[ChangeLogEntry]) -> None:
        if not entries:
            return
        with self._tracer.span(
            "assetmigrate.changelog_repository.write_entries",
            {
                ATTR_ENTRY_COUNT: len(entries),
                ATTR_SEQUENCE: entries[-1].sequence,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            async with self._lock:
                try:
                    await self._connection.executemany(
                        f"INSERT INTO changelog_entries ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        [
                            (
                                entry.sequence,
                                entry.run_id,
                                entry.change_type.value,
                                entry.phase.value,
                                entry.item_id,
                                json_dumps(entry.payload),
                                entry.recorded_at.isoformat(),
                            )
                            for entry in entries
                        ],
                    )
                    await self._connection.commit()
                except Exception:
                    with contextlib.suppress(Exception):
                        await self._connection.rollback()
                    raise

    async def read_after(
        self,
        after_sequence: int,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        if run_id is None:
            sql = f"""
                SELECT {_COLUMNS} FROM changelog_entries
                WHERE sequence > ? ORDER BY sequence ASC LIMIT ?
            """
            params: tuple[Any, ...] = (after_sequence, limit)
        else:
            sql = f"""
                SELECT {_COLUMNS} FROM changelog_entries
                WHERE sequence > ? AND run_id = ? ORDER BY sequence ASC LIMIT ?
            """
            params = (after_sequence, run_id, limit)
        cursor = await self._connection.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def read_before(
        self,
        before_sequence: int | None = None,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        conditions = []
        params: list[Any] = []
        if before_sequence is not None:
            conditions.append("sequence < ?")
            params.append(before_sequence)
        if run_id is not None:
            conditions.append("run_id = ?")
            params.append(run_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        cursor = await self._connection.execute(
            f"SELECT {_COLUMNS} FROM changelog_entries {where} ORDER BY sequence DESC LIMIT ?",
            tuple(params),
        )
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def latest_sequence(self, run_id: str | None = None) -> int:
        if run_id is None:
            cursor = await self._connection.execute("SELECT MAX(sequence) FROM changelog_entries")
        else:
            cursor = await self._connection.execute(
                "SELECT MAX(sequence) FROM changelog_entries WHERE run_id = ?",
                (run_id,),
            )
        row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    async def delete_run(self, run_id: str) -> int:
        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM changelog_entries WHERE run_id = ?",
                (run_id,),
            )
            await self._connection.commit()
            return cursor.rowcount

    async def prune(self, older_than: datetime) -> int:
        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM changelog_entries WHERE recorded_at < ?",
                (older_than.isoformat(),),
            )
            await self._connection.commit()
            return cursor.rowcount


class PostgreSQLChangeLogRepository:
    """
    PostgreSQL change-log repository.

    Claims run in their own transaction so that the counter row lock is
    held only for the single increment statement.

    Example:
        >>> repo = PostgreSQLChangeLogRepository(engine)
        >>> first = await repo.claim_sequences(10)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def claim_sequences(self, count: int = 1) -> int:
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        query = text("""
            INSERT INTO changelog_sequences (name, value) VALUES (:name, :count)
            ON CONFLICT (name) DO UPDATE
            SET value = changelog_sequences.value + EXCLUDED.value
            RETURNING value
        """)
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"name": SEQUENCE_NAME, "count": count})
            value = result.scalar_one()
        return int(value) - count + 1

    async def write_entries(self, entries: Sequence[ChangeLogEntry]) -> None:
        if not entries:
            return
        with self._tracer.span(
            "assetmigrate.changelog_repository.write_entries",
            {
                ATTR_ENTRY_COUNT: len(entries),
                ATTR_SEQUENCE: entries[-1].sequence,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                INSERT INTO changelog_entries
                    (sequence, run_id, change_type, phase, item_id, payload, recorded_at)
                VALUES
                    (:sequence, :run_id, :change_type, :phase, :item_id,
                     CAST(:payload AS JSONB), :recorded_at)
            """)
            params = [
                {
                    "sequence": entry.sequence,
                    "run_id": entry.run_id,
                    "change_type": entry.change_type.value,
                    "phase": entry.phase.value,
                    "item_id": entry.item_id,
                    "payload": json_dumps(entry.payload),
                    "recorded_at": entry.recorded_at,
                }
                for entry in entries
            ]
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def read_after(
        self,
        after_sequence: int,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        query = text(f"""
            SELECT {_COLUMNS} FROM changelog_entries
            WHERE sequence > :after
              AND (CAST(:run_id AS VARCHAR) IS NULL OR run_id = :run_id)
            ORDER BY sequence ASC
            LIMIT :limit
        """)
        params = {"after": after_sequence, "run_id": run_id, "limit": limit}
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def read_before(
        self,
        before_sequence: int | None = None,
        run_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[ChangeLogEntry]:
        query = text(f"""
            SELECT {_COLUMNS} FROM changelog_entries
            WHERE (CAST(:before AS BIGINT) IS NULL OR sequence < :before)
              AND (CAST(:run_id AS VARCHAR) IS NULL OR run_id = :run_id)
            ORDER BY sequence DESC
            LIMIT :limit
        """)
        params = {"before": before_sequence, "run_id": run_id, "limit": limit}
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def latest_sequence(self, run_id: str | None = None) -> int:
        query = text("""
            SELECT MAX(sequence) FROM changelog_entries
            WHERE CAST(:run_id AS VARCHAR) IS NULL OR run_id = :run_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            value = result.scalar()
        return int(value) if value is not None else 0

    async def delete_run(self, run_id: str) -> int:
        query = text("DELETE FROM changelog_entries WHERE run_id = :run_id")
        with self._tracer.span(
            "assetmigrate.changelog_repository.delete_run",
            {ATTR_RUN_ID: run_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, {"run_id": run_id})
                return result.rowcount

    async def prune(self, older_than: datetime) -> int:
        query = text("DELETE FROM changelog_entries WHERE recorded_at < :older_than")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"older_than": older_than})
            return result.rowcount


__all__ = [
    "ChangeLogRepository",
    "InMemoryChangeLogRepository",
    "SQLiteChangeLogRepository",
    "PostgreSQLChangeLogRepository",
    "SEQUENCE_NAME",
    "DEFAULT_PAGE_SIZE",
]
