"""
Record store interface.

A record is an application-side row that references a stored file by
path and location. Migrating an asset means copying the file and then
pointing its record at the new location.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class RecordStoreError(Exception):
    """Base exception for record store errors."""


class RecordNotFoundError(RecordStoreError):
    """Raised when updating a record that does not exist."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record '{record_id}' not found")


class ReadOnlyRecordError(RecordStoreError):
    """Raised when a dry run attempts to update a record."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Refusing update of record '{record_id}' on a read-only record store")


@dataclass(frozen=True)
class Record:
    """
    A record referencing a stored asset.

    Attributes:
        id: Record identifier
        fields: Field values (path, location, size, hash, ...)
    """

    id: str
    fields: Mapping[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)


class RecordStore(ABC):
    """
    Abstract base class for the store of asset records.

    ``update`` merges the given fields into the record and returns the
    updated record; other fields are untouched.
    """

    @abstractmethod
    async def get(self, record_id: str) -> Record | None:
        """Return the record, or None if it does not exist."""
        ...

    @abstractmethod
    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Record:
        """
        Merge ``fields`` into a record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        ...

    @abstractmethod
    async def query(self, filter: Mapping[str, Any] | None = None) -> list[Record]:
        """
        Return records whose fields equal every value in ``filter``.

        Results are ordered by record id.
        """
        ...

    @property
    def read_only(self) -> bool:
        return False


__all__ = [
    "Record",
    "RecordStore",
    "RecordStoreError",
    "RecordNotFoundError",
    "ReadOnlyRecordError",
]
