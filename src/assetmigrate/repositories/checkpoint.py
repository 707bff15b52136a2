"""
Checkpoint stores for resumable runs.

A checkpoint records how far a run (or a rollback) got: the phase to
re-enter, the offset of the first unattempted item, cumulative counters and
the change-log high-water mark. Saves are atomic: after a crash at any
point, ``load`` returns either the previous complete checkpoint or the new
one, never a mixture.

Implementations:
- InMemoryCheckpointStore: dict-backed, for tests
- FileCheckpointStore: one JSON file per run, replaced atomically
- SQLiteCheckpointStore: ``migration_checkpoints`` table via aiosqlite
- PostgreSQLCheckpointStore: ``migration_checkpoints`` table via SQLAlchemy
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from assetmigrate.migration.exceptions import CheckpointWriteError
from assetmigrate.migration.models import Checkpoint, utc_now, validate_run_id
from assetmigrate.observability import Tracer, create_tracer
from assetmigrate.observability.attributes import (
    ATTR_BATCH_OFFSET,
    ATTR_RUN_ID,
    ATTR_RUN_PHASE,
    ATTR_SEQUENCE,
)
from assetmigrate.repositories._connection import execute_with_connection
from assetmigrate.serialization import json_dumps, json_loads

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStore(Protocol):
    """
    Protocol for checkpoint stores.

    ``save`` reports failure by raising CheckpointWriteError; ``load``
    reports "not found" by returning None.
    """

    async def save(self, checkpoint: Checkpoint) -> None:
        """
        Atomically replace the checkpoint of ``checkpoint.run_id``.

        Raises:
            CheckpointWriteError: If the checkpoint could not be made durable.
        """
        ...

    async def load(self, run_id: str) -> Checkpoint | None:
        """Return the latest complete checkpoint, or None."""
        ...

    async def prune(self, older_than: datetime | None = None) -> int:
        """
        Delete checkpoints whose retention has expired.

        Args:
            older_than: Reference instant; defaults to now.

        Returns:
            Number of checkpoints deleted.
        """
        ...

    async def delete(self, run_id: str) -> bool:
        """Delete a run's checkpoint; True if one existed."""
        ...

    async def list_checkpoints(self) -> list[Checkpoint]:
        """All stored checkpoints, ordered by run id."""
        ...


class InMemoryCheckpointStore:
    """
    In-memory checkpoint store for testing.

    Example:
        >>> store = InMemoryCheckpointStore()
        >>> await store.save(Checkpoint(run_id="run-1", phase=RunPhase.TRANSFER))
        >>> (await store.load("run-1")).phase
        <RunPhase.TRANSFER: 'transfer'>
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()
        self.save_count = 0

    async def save(self, checkpoint: Checkpoint) -> None:
        validate_run_id(checkpoint.run_id)
        with self._tracer.span(
            "assetmigrate.checkpoint.save",
            {ATTR_RUN_ID: checkpoint.run_id, ATTR_RUN_PHASE: checkpoint.phase.value},
        ):
            async with self._lock:
                self._checkpoints[checkpoint.run_id] = checkpoint
                self.save_count += 1

    async def load(self, run_id: str) -> Checkpoint | None:
        validate_run_id(run_id)
        async with self._lock:
            return self._checkpoints.get(run_id)

    async def prune(self, older_than: datetime | None = None) -> int:
        now = older_than or utc_now()
        async with self._lock:
            expired = [rid for rid, cp in self._checkpoints.items() if cp.is_expired(now)]
            for run_id in expired:
                del self._checkpoints[run_id]
            return len(expired)

    async def delete(self, run_id: str) -> bool:
        async with self._lock:
            return self._checkpoints.pop(run_id, None) is not None

    async def list_checkpoints(self) -> list[Checkpoint]:
        async with self._lock:
            return [self._checkpoints[rid] for rid in sorted(self._checkpoints)]

    async def clear(self) -> None:
        async with self._lock:
            self._checkpoints.clear()


class FileCheckpointStore:
    """
    One JSON file per run in a directory.

    A save writes ``<run_id>.json.tmp`` while holding an exclusive
    ``flock`` on ``<run_id>.lock``, fsyncs it, renames it over
    ``<run_id>.json`` with ``os.replace`` and fsyncs the directory.
    The rename is atomic, so readers see the old file or the new one.
    Staging files left behind by a crash are ignored and overwritten.

    Example:
        >>> store = FileCheckpointStore("/var/lib/assetmigrate/checkpoints")
        >>> await store.save(checkpoint)
        >>> await store.load(checkpoint.run_id)
    """

    SUFFIX = ".json"
    STAGING_SUFFIX = ".json.tmp"
    LOCK_SUFFIX = ".lock"

    def __init__(
        self,
        directory: str | Path,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{validate_run_id(run_id)}{self.SUFFIX}"

    async def save(self, checkpoint: Checkpoint) -> None:
        target = self._path(checkpoint.run_id)
        with self._tracer.span(
            "assetmigrate.checkpoint.save",
            {
                ATTR_RUN_ID: checkpoint.run_id,
                ATTR_RUN_PHASE: checkpoint.phase.value,
                ATTR_BATCH_OFFSET: checkpoint.batch_offset,
                ATTR_SEQUENCE: checkpoint.last_sequence,
            },
        ):
            data = json_dumps(checkpoint.to_dict(), indent=2).encode("utf-8")
            async with self._lock:
                try:
                    await asyncio.to_thread(self._write_atomic, checkpoint.run_id, target, data)
                except OSError as e:
                    logger.error(
                        "Failed to save checkpoint for run %s: %s",
                        checkpoint.run_id,
                        e,
                    )
                    raise CheckpointWriteError(checkpoint.run_id, e) from e
            logger.debug(
                "Saved checkpoint for run %s at offset %d (sequence %d)",
                checkpoint.run_id,
                checkpoint.batch_offset,
                checkpoint.last_sequence,
            )

    def _write_atomic(self, run_id: str, target: Path, data: bytes) -> None:
        staging = self.directory / f"{run_id}{self.STAGING_SUFFIX}"
        lock_path = self.directory / f"{run_id}{self.LOCK_SUFFIX}"
        with open(lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                with open(staging, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(staging, target)
                self._fsync_directory()
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _fsync_directory(self) -> None:
        fd = os.open(self.directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    async def load(self, run_id: str) -> Checkpoint | None:
        path = self._path(run_id)
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return None
        return Checkpoint.from_dict(json_loads(raw))

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    async def prune(self, older_than: datetime | None = None) -> int:
        now = older_than or utc_now()
        removed = 0
        for checkpoint in await self.list_checkpoints():
            if checkpoint.is_expired(now) and await self.delete(checkpoint.run_id):
                removed += 1
        if removed:
            logger.info("Pruned %d expired checkpoints from %s", removed, self.directory)
        return removed

    async def delete(self, run_id: str) -> bool:
        path = self._path(run_id)
        async with self._lock:
            return await asyncio.to_thread(self._unlink, run_id, path)

    def _unlink(self, run_id: str, path: Path) -> bool:
        existed = path.exists()
        path.unlink(missing_ok=True)
        for suffix in (self.STAGING_SUFFIX, self.LOCK_SUFFIX):
            (self.directory / f"{run_id}{suffix}").unlink(missing_ok=True)
        return existed

    async def list_checkpoints(self) -> list[Checkpoint]:
        paths = sorted(
            p
            for p in self.directory.glob(f"*{self.SUFFIX}")
            if not p.name.endswith(self.STAGING_SUFFIX)
        )
        checkpoints = []
        for path in paths:
            raw = await asyncio.to_thread(self._read, path)
            if raw is not None:
                checkpoints.append(Checkpoint.from_dict(json_loads(raw)))
        return checkpoints


class SQLiteCheckpointStore:
    """
    SQLite checkpoint store over the ``migration_checkpoints`` table.

    The full checkpoint is kept as JSON in ``state``; ``phase``,
    ``last_sequence`` and the timestamps are duplicated into columns for
    querying. Each save is a single upsert followed by a commit.

    Example:
        >>> async with aiosqlite.connect("migration.db") as db:
        ...     store = SQLiteCheckpointStore(db)
        ...     await store.save(checkpoint)
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

    async def save(self, checkpoint: Checkpoint) -> None:
        validate_run_id(checkpoint.run_id)
        with self._tracer.span(
            "assetmigrate.checkpoint.save",
            {ATTR_RUN_ID: checkpoint.run_id, ATTR_RUN_PHASE: checkpoint.phase.value},
        ):
            try:
                await self._connection.execute(
                    """
                    INSERT INTO migration_checkpoints
                        (run_id, phase, last_sequence, state, updated_at, retention_until)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (run_id) DO UPDATE
                    SET phase = excluded.phase,
                        last_sequence = excluded.last_sequence,
                        state = excluded.state,
                        updated_at = excluded.updated_at,
                        retention_until = excluded.retention_until
                    """,
                    (
                        checkpoint.run_id,
                        checkpoint.phase.value,
                        checkpoint.last_sequence,
                        json_dumps(checkpoint.to_dict()),
                        checkpoint.updated_at.isoformat(),
                        checkpoint.retention_until.isoformat(),
                    ),
                )
                await self._connection.commit()
            except Exception as e:
                with contextlib.suppress(Exception):
                    await self._connection.rollback()
                raise CheckpointWriteError(checkpoint.run_id, e) from e

    async def load(self, run_id: str) -> Checkpoint | None:
        validate_run_id(run_id)
        cursor = await self._connection.execute(
            "SELECT state FROM migration_checkpoints WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Checkpoint.from_dict(json_loads(row[0]))

    async def prune(self, older_than: datetime | None = None) -> int:
        now = (older_than or utc_now()).isoformat()
        cursor = await self._connection.execute(
            "DELETE FROM migration_checkpoints WHERE retention_until <= ?",
            (now,),
        )
        await self._connection.commit()
        return cursor.rowcount

    async def delete(self, run_id: str) -> bool:
        cursor = await self._connection.execute(
            "DELETE FROM migration_checkpoints WHERE run_id = ?",
            (run_id,),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def list_checkpoints(self) -> list[Checkpoint]:
        cursor = await self._connection.execute(
            "SELECT state FROM migration_checkpoints ORDER BY run_id"
        )
        rows = await cursor.fetchall()
        return [Checkpoint.from_dict(json_loads(row[0])) for row in rows]


class PostgreSQLCheckpointStore:
    """
    PostgreSQL checkpoint store over the ``migration_checkpoints`` table.

    Example:
        >>> store = PostgreSQLCheckpointStore(engine)
        >>> await store.save(checkpoint)
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

    async def save(self, checkpoint: Checkpoint) -> None:
        validate_run_id(checkpoint.run_id)
        with self._tracer.span(
            "assetmigrate.checkpoint.save",
            {ATTR_RUN_ID: checkpoint.run_id, ATTR_RUN_PHASE: checkpoint.phase.value},
        ):
            query = text("""
                INSERT INTO migration_checkpoints
                    (run_id, phase, last_sequence, state, updated_at, retention_until)
                VALUES
                    (:run_id, :phase, :last_sequence, CAST(:state AS JSONB),
                     :updated_at, :retention_until)
                ON CONFLICT (run_id) DO UPDATE
                SET phase = EXCLUDED.phase,
                    last_sequence = EXCLUDED.last_sequence,
                    state = EXCLUDED.state,
                    updated_at = EXCLUDED.updated_at,
                    retention_until = EXCLUDED.retention_until
            """)
            params = {
                "run_id": checkpoint.run_id,
                "phase": checkpoint.phase.value,
                "last_sequence": checkpoint.last_sequence,
                "state": json_dumps(checkpoint.to_dict()),
                "updated_at": checkpoint.updated_at,
                "retention_until": checkpoint.retention_until,
            }
            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(query, params)
            except Exception as e:
                raise CheckpointWriteError(checkpoint.run_id, e) from e

    async def load(self, run_id: str) -> Checkpoint | None:
        validate_run_id(run_id)
        query = text("SELECT state FROM migration_checkpoints WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            row = result.fetchone()
        if row is None:
            return None
        state = row[0]
        return Checkpoint.from_dict(json_loads(state) if isinstance(state, str) else state)

    async def prune(self, older_than: datetime | None = None) -> int:
        query = text("DELETE FROM migration_checkpoints WHERE retention_until <= :now")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"now": older_than or utc_now()})
            return result.rowcount

    async def delete(self, run_id: str) -> bool:
        query = text("DELETE FROM migration_checkpoints WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            return result.rowcount > 0

    async def list_checkpoints(self) -> list[Checkpoint]:
        query = text("SELECT state FROM migration_checkpoints ORDER BY run_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            rows = result.fetchall()
        return [
            Checkpoint.from_dict(json_loads(row[0]) if isinstance(row[0], str) else row[0])
            for row in rows
        ]


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "SQLiteCheckpointStore",
    "PostgreSQLCheckpointStore",
]
