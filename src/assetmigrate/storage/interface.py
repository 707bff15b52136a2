"""
Storage provider interface.

A storage provider is an object store addressed by slash-separated paths.
The engine moves objects between two providers: the source and the
destination. Implementations must be safe to call concurrently from
several coroutines.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class ObjectInfo:
    """
    Size and content hash of a stored object.

    Attributes:
        path: Object path inside its provider
        size: Size in bytes
        content_hash: Hex SHA-256 of the content
    """

    path: str
    size: int
    content_hash: str

    @classmethod
    def from_bytes(cls, path: str, data: bytes) -> ObjectInfo:
        return cls(path=path, size=len(data), content_hash=content_hash(data))


def content_hash(data: bytes) -> str:
    """Hex SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


class StorageProvider(ABC):
    """
    Abstract base class for object storage.

    Paths never start with a slash. ``list`` returns paths sorted so that
    discovery is deterministic across runs.

    Example:
        >>> provider = InMemoryStorageProvider("source")
        >>> await provider.write("images/a.png", b"...")
        >>> await provider.exists("images/a.png")
        True
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Name identifying this provider in logs and change-log payloads."""
        ...

    @property
    def read_only(self) -> bool:
        """True if writes and deletes are refused."""
        return False

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """
        Read an object's content.

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        ...

    @abstractmethod
    async def write(self, path: str, data: bytes) -> None:
        """
        Write an object, replacing any existing content.

        A reader never observes a partially written object.
        """
        ...

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """
        Delete an object.

        Returns:
            True if the object existed and was deleted, False otherwise
        """
        ...

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check whether an object exists."""
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """List object paths under ``prefix`` in sorted order."""
        ...

    async def stat(self, path: str) -> ObjectInfo | None:
        """
        Return size and hash of an object, or None if it does not exist.

        The default implementation reads the object; providers with cheaper
        metadata access may override it.
        """
        if not await self.exists(path):
            return None
        return ObjectInfo.from_bytes(path, await self.read(path))


__all__ = [
    "ObjectInfo",
    "StorageProvider",
    "content_hash",
]
