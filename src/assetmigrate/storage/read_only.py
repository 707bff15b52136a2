"""
Read-only wrapper used for dry runs.
"""

from __future__ import annotations

from assetmigrate.storage.exceptions import ReadOnlyViolationError
from assetmigrate.storage.interface import ObjectInfo, StorageProvider


class ReadOnlyStorageView(StorageProvider):
    """
    Delegates reads to a wrapped provider and refuses every mutation.

    Args:
        inner: The provider to wrap
    """

    def __init__(self, inner: StorageProvider) -> None:
        self._inner = inner

    @property
    def name(self) -> str:
        return self._inner.name

    @property
    def read_only(self) -> bool:
        return True

    async def read(self, path: str) -> bytes:
        return await self._inner.read(path)

    async def write(self, path: str, data: bytes) -> None:
        raise ReadOnlyViolationError("write", path, provider=self.name)

    async def delete(self, path: str) -> bool:
        raise ReadOnlyViolationError("delete", path, provider=self.name)

    async def exists(self, path: str) -> bool:
        return await self._inner.exists(path)

    async def list(self, prefix: str = "") -> list[str]:
        return await self._inner.list(prefix)

    async def stat(self, path: str) -> ObjectInfo | None:
        return await self._inner.stat(path)


__all__ = ["ReadOnlyStorageView"]
