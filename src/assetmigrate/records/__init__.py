"""
Record stores: the application records that reference migrated assets.
"""

from assetmigrate.records.in_memory import InMemoryRecordStore, ReadOnlyRecordView
from assetmigrate.records.interface import (
    ReadOnlyRecordError,
    Record,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)

__all__ = [
    "Record",
    "RecordStore",
    "RecordStoreError",
    "RecordNotFoundError",
    "ReadOnlyRecordError",
    "InMemoryRecordStore",
    "ReadOnlyRecordView",
]
