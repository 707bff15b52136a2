"""
In-memory record store, and the read-only view used by dry runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from assetmigrate.records.interface import (
    ReadOnlyRecordError,
    Record,
    RecordNotFoundError,
    RecordStore,
)


class InMemoryRecordStore(RecordStore):
    """
    Dictionary-backed record store.

    Example:
        >>> store = InMemoryRecordStore([Record("r1", {"path": "a.png"})])
        >>> (await store.get("r1")).get("path")
        'a.png'
    """

    def __init__(self, records: list[Record] | None = None) -> None:
        self._records: dict[str, Record] = {r.id: r for r in records or []}
        self._lock = asyncio.Lock()
        self.update_count = 0

    async def get(self, record_id: str) -> Record | None:
        async with self._lock:
            return self._records.get(record_id)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Record:
        async with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFoundError(record_id)
            updated = Record(id=record_id, fields={**current.fields, **fields})
            self._records[record_id] = updated
            self.update_count += 1
            return updated

    async def query(self, filter: Mapping[str, Any] | None = None) -> list[Record]:
        async with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.id)
        if not filter:
            return records
        return [r for r in records if all(r.get(k) == v for k, v in filter.items())]

    def add(self, record: Record) -> None:
        self._records[record.id] = record


class ReadOnlyRecordView(RecordStore):
    """Delegates reads to a wrapped store and refuses updates."""

    def __init__(self, inner: RecordStore) -> None:
        self._inner = inner

    @property
    def read_only(self) -> bool:
        return True

    async def get(self, record_id: str) -> Record | None:
        return await self._inner.get(record_id)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Record:
        raise ReadOnlyRecordError(record_id)

    async def query(self, filter: Mapping[str, Any] | None = None) -> list[Record]:
        return await self._inner.query(filter)


__all__ = ["InMemoryRecordStore", "ReadOnlyRecordView"]
