"""
Storage providers for assetmigrate.

Provides the StorageProvider interface for source and destination object
stores, an in-memory provider, a local filesystem provider, and the
read-only view used by dry runs.
"""

from assetmigrate.storage.exceptions import (
    ObjectNotFoundError,
    ReadOnlyViolationError,
    StorageError,
    StorageTimeoutError,
)
from assetmigrate.storage.in_memory import InMemoryStorageProvider
from assetmigrate.storage.interface import ObjectInfo, StorageProvider, content_hash
from assetmigrate.storage.local import LocalFileStorageProvider
from assetmigrate.storage.read_only import ReadOnlyStorageView

__all__ = [
    "StorageProvider",
    "ObjectInfo",
    "content_hash",
    "InMemoryStorageProvider",
    "LocalFileStorageProvider",
    "ReadOnlyStorageView",
    "StorageError",
    "ObjectNotFoundError",
    "StorageTimeoutError",
    "ReadOnlyViolationError",
]
