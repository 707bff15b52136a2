"""
Run repositories.

A run row holds the run's status, phase, counters and configuration
snapshot so that a read-only consumer can report progress and a later
process can resume. The manifest (the categorized, path-ordered working
set) is stored beside the run so that a resumed run replays exactly the
same items in the same order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from assetmigrate.migration.exceptions import RunNotFoundError
from assetmigrate.migration.models import MigrationRun, RunStatus, WorkItem, validate_run_id
from assetmigrate.observability import Tracer, create_tracer
from assetmigrate.observability.attributes import (
    ATTR_ITEM_COUNT,
    ATTR_RUN_ID,
    ATTR_RUN_PHASE,
    ATTR_RUN_STATUS,
)
from assetmigrate.repositories._connection import execute_with_connection
from assetmigrate.serialization import json_dumps, json_loads

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


@runtime_checkable
class RunRepository(Protocol):
    """Protocol for run and manifest persistence."""

    async def create(self, run: MigrationRun) -> None:
        """
        Insert a new run.

        Raises:
            ValueError: If a run with the same id exists.
        """
        ...

    async def get(self, run_id: str) -> MigrationRun | None:
        ...

    async def save(self, run: MigrationRun) -> None:
        """
        Persist the run's current state.

        Raises:
            RunNotFoundError: If the run was never created.
        """
        ...

    async def list_active(self) -> list[MigrationRun]:
        """Runs whose status is RUNNING."""
        ...

    async def request_cancel(self, run_id: str) -> bool:
        """Set the persisted cancel flag; False if the run does not exist."""
        ...

    async def clear_cancel(self, run_id: str) -> None:
        """Reset the persisted cancel flag (on resume)."""
        ...

    async def is_cancel_requested(self, run_id: str) -> bool:
        ...

    async def save_manifest(self, run_id: str, items: Sequence[WorkItem]) -> None:
        """Replace the run's manifest with ``items`` in order."""
        ...

    async def load_manifest(self, run_id: str) -> list[WorkItem]:
        """The run's manifest in order; empty if none was saved."""
        ...


class InMemoryRunRepository:
    """
    In-memory run repository for testing.

    Runs are stored as copies so callers cannot mutate stored state
    without calling ``save``.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._runs: dict[str, MigrationRun] = {}
        self._manifests: dict[str, list[WorkItem]] = {}
        self._lock = asyncio.Lock()

    async def create(self, run: MigrationRun) -> None:
        validate_run_id(run.run_id)
        async with self._lock:
            if run.run_id in self._runs:
                raise ValueError(f"Run {run.run_id} already exists")
            self._runs[run.run_id] = copy.deepcopy(run)

    async def get(self, run_id: str) -> MigrationRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "assetmigrate.run_repository.save",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_RUN_PHASE: run.phase.value,
                ATTR_RUN_STATUS: run.status.value,
            },
        ):
            async with self._lock:
                stored = self._runs.get(run.run_id)
                if stored is None:
                    raise RunNotFoundError(run.run_id)
                saved = copy.deepcopy(run)
                # cancel() may have set the flag since this copy was loaded
                saved.cancel_requested = run.cancel_requested or stored.cancel_requested
                self._runs[run.run_id] = saved

    async def list_active(self) -> list[MigrationRun]:
        async with self._lock:
            return [
                copy.deepcopy(run)
                for _, run in sorted(self._runs.items())
                if run.status is RunStatus.RUNNING
            ]

    async def request_cancel(self, run_id: str) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return False
            run.cancel_requested = True
            return True

    async def clear_cancel(self, run_id: str) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is not None:
                run.cancel_requested = False

    async def is_cancel_requested(self, run_id: str) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            return bool(run and run.cancel_requested)

    async def save_manifest(self, run_id: str, items: Sequence[WorkItem]) -> None:
        async with self._lock:
            self._manifests[run_id] = list(items)

    async def load_manifest(self, run_id: str) -> list[WorkItem]:
        async with self._lock:
            return list(self._manifests.get(run_id, []))


def _run_from_row(row: Any) -> MigrationRun:
    def _json(value: Any) -> Any:
        return json_loads(value) if isinstance(value, str) else value

    def _dt(value: Any) -> Any:
        return value.isoformat() if hasattr(value, "isoformat") else value

    return MigrationRun.from_dict(
        {
            "run_id": row[0],
            "mode": row[1],
            "status": row[2],
            "phase": row[3],
            "cancel_requested": bool(row[4]),
            "config": _json(row[5]),
            "stats": _json(row[6]),
            "verification": _json(row[7]) if row[7] is not None else None,
            "error_code": row[8],
            "error_message": row[9],
            "started_at": _dt(row[10]),
            "updated_at": _dt(row[11]),
            "finished_at": _dt(row[12]) if row[12] is not None else None,
        }
    )


_RUN_COLUMNS = """
    run_id, mode, status, phase, cancel_requested, config, stats, verification,
    error_code, error_message, started_at, updated_at, finished_at
"""


class SQLiteRunRepository:
    """
    SQLite run repository over ``migration_runs`` and ``migration_work_items``.

    ``save`` never clears ``cancel_requested``: the flag is only set by
    ``request_cancel`` and only reset when a run is resumed.
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

    @staticmethod
    def _params(run: MigrationRun) -> tuple[Any, ...]:
        data = run.to_dict()
        return (
            run.run_id,
            run.mode.value,
            run.status.value,
            run.phase.value,
            int(run.cancel_requested),
            json_dumps(data["config"]),
            json_dumps(data["stats"]),
            json_dumps(data["verification"]) if data["verification"] else None,
            run.error_code,
            run.error_message,
            run.started_at.isoformat(),
            run.updated_at.isoformat(),
            run.finished_at.isoformat() if run.finished_at else None,
        )

    async def create(self, run: MigrationRun) -> None:
        validate_run_id(run.run_id)
        cursor = await self._connection.execute(
            "SELECT 1 FROM migration_runs WHERE run_id = ?", (run.run_id,)
        )
        if await cursor.fetchone():
            raise ValueError(f"Run {run.run_id} already exists")
        await self._connection.execute(
            f"INSERT INTO migration_runs ({_RUN_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._params(run),
        )
        await self._connection.commit()

    async def get(self, run_id: str) -> MigrationRun | None:
        cursor = await self._connection.execute(
            f"SELECT {_RUN_COLUMNS} FROM migration_runs WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        return _run_from_row(row) if row else None

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "assetmigrate.run_repository.save",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_RUN_PHASE: run.phase.value,
                ATTR_RUN_STATUS: run.status.value,
            },
        ):
            params = self._params(run)
            cursor = await self._connection.execute(
                """
                UPDATE migration_runs
                SET mode = ?, status = ?, phase = ?,
                    cancel_requested = MAX(cancel_requested, ?),
                    config = ?, stats = ?, verification = ?,
                    error_code = ?, error_message = ?,
                    started_at = ?, updated_at = ?, finished_at = ?
                WHERE run_id = ?
                """,
                (*params[1:], run.run_id),
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                raise RunNotFoundError(run.run_id)

    async def list_active(self) -> list[MigrationRun]:
        cursor = await self._connection.execute(
            f"SELECT {_RUN_COLUMNS} FROM migration_runs WHERE status = ? ORDER BY run_id",
            (RunStatus.RUNNING.value,),
        )
        rows = await cursor.fetchall()
        return [_run_from_row(row) for row in rows]

    async def request_cancel(self, run_id: str) -> bool:
        cursor = await self._connection.execute(
            "UPDATE migration_runs SET cancel_requested = 1 WHERE run_id = ?",
            (run_id,),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def clear_cancel(self, run_id: str) -> None:
        await self._connection.execute(
            "UPDATE migration_runs SET cancel_requested = 0 WHERE run_id = ?",
            (run_id,),
        )
        await self._connection.commit()

    async def is_cancel_requested(self, run_id: str) -> bool:
        cursor = await self._connection.execute(
            "SELECT cancel_requested FROM migration_runs WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        return bool(row and row[0])

    async def save_manifest(self, run_id: str, items: Sequence[WorkItem]) -> None:
        with self._tracer.span(
            "assetmigrate.run_repository.save_manifest",
            {ATTR_RUN_ID: run_id, ATTR_ITEM_COUNT: len(items)},
        ):
            await self._connection.execute(
                "DELETE FROM migration_work_items WHERE run_id = ?", (run_id,)
            )
            await self._connection.executemany(
                "INSERT INTO migration_work_items (run_id, position, item) VALUES (?, ?, ?)",
                [(run_id, i, json_dumps(item.to_dict())) for i, item in enumerate(items)],
            )
            await self._connection.commit()

    async def load_manifest(self, run_id: str) -> list[WorkItem]:
        cursor = await self._connection.execute(
            "SELECT item FROM migration_work_items WHERE run_id = ? ORDER BY position",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [WorkItem.from_dict(json_loads(row[0])) for row in rows]


class PostgreSQLRunRepository:
    """PostgreSQL run repository over ``migration_runs`` and ``migration_work_items``."""

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    @staticmethod
    def _params(run: MigrationRun) -> dict[str, Any]:
        data = run.to_dict()
        return {
            "run_id": run.run_id,
            "mode": run.mode.value,
            "status": run.status.value,
            "phase": run.phase.value,
            "cancel_requested": run.cancel_requested,
            "config": json_dumps(data["config"]),
            "stats": json_dumps(data["stats"]),
            "verification": json_dumps(data["verification"]) if data["verification"] else None,
            "error_code": run.error_code,
            "error_message": run.error_message,
            "started_at": run.started_at,
            "updated_at": run.updated_at,
            "finished_at": run.finished_at,
        }

    async def create(self, run: MigrationRun) -> None:
        validate_run_id(run.run_id)
        query = text(f"""
            INSERT INTO migration_runs ({_RUN_COLUMNS})
            VALUES (:run_id, :mode, :status, :phase, :cancel_requested,
                    CAST(:config AS JSONB), CAST(:stats AS JSONB),
                    CAST(:verification AS JSONB), :error_code, :error_message,
                    :started_at, :updated_at, :finished_at)
            ON CONFLICT (run_id) DO NOTHING
        """)
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, self._params(run))
            if result.rowcount == 0:
                raise ValueError(f"Run {run.run_id} already exists")

    async def get(self, run_id: str) -> MigrationRun | None:
        query = text(f"SELECT {_RUN_COLUMNS} FROM migration_runs WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            row = result.fetchone()
        return _run_from_row(row) if row else None

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "assetmigrate.run_repository.save",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_RUN_PHASE: run.phase.value,
                ATTR_RUN_STATUS: run.status.value,
            },
        ):
            query = text("""
                UPDATE migration_runs
                SET mode = :mode, status = :status, phase = :phase,
                    cancel_requested = cancel_requested OR :cancel_requested,
                    config = CAST(:config AS JSONB), stats = CAST(:stats AS JSONB),
                    verification = CAST(:verification AS JSONB),
                    error_code = :error_code, error_message = :error_message,
                    started_at = :started_at, updated_at = :updated_at,
                    finished_at = :finished_at
                WHERE run_id = :run_id
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, self._params(run))
                if result.rowcount == 0:
                    raise RunNotFoundError(run.run_id)

    async def list_active(self) -> list[MigrationRun]:
        query = text(f"""
            SELECT {_RUN_COLUMNS} FROM migration_runs
            WHERE status = :status ORDER BY run_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"status": RunStatus.RUNNING.value})
            rows = result.fetchall()
        return [_run_from_row(row) for row in rows]

    async def request_cancel(self, run_id: str) -> bool:
        query = text("UPDATE migration_runs SET cancel_requested = TRUE WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            return result.rowcount > 0

    async def clear_cancel(self, run_id: str) -> None:
        query = text("UPDATE migration_runs SET cancel_requested = FALSE WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, {"run_id": run_id})

    async def is_cancel_requested(self, run_id: str) -> bool:
        query = text("SELECT cancel_requested FROM migration_runs WHERE run_id = :run_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            row = result.fetchone()
        return bool(row and row[0])

    async def save_manifest(self, run_id: str, items: Sequence[WorkItem]) -> None:
        delete = text("DELETE FROM migration_work_items WHERE run_id = :run_id")
        insert = text("""
            INSERT INTO migration_work_items (run_id, position, item)
            VALUES (:run_id, :position, CAST(:item AS JSONB))
        """)
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(delete, {"run_id": run_id})
            if items:
                await conn.execute(
                    insert,
                    [
                        {"run_id": run_id, "position": i, "item": json_dumps(item.to_dict())}
                        for i, item in enumerate(items)
                    ],
                )

    async def load_manifest(self, run_id: str) -> list[WorkItem]:
        query = text("""
            SELECT item FROM migration_work_items
            WHERE run_id = :run_id ORDER BY position
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"run_id": run_id})
            rows = result.fetchall()
        return [
            WorkItem.from_dict(json_loads(row[0]) if isinstance(row[0], str) else row[0])
            for row in rows
        ]


__all__ = [
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "PostgreSQLRunRepository",
]
