"""
In-memory storage provider.

Useful for tests and dry-run simulations. Supports fault injection so that
retry and error-budget behaviour can be exercised deterministically.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from assetmigrate.storage.exceptions import ObjectNotFoundError
from assetmigrate.storage.interface import StorageProvider

FaultHook = Callable[[str, str], None]
"""Called as ``hook(operation, path)`` before each operation; may raise."""


class InMemoryStorageProvider(StorageProvider):
    """
    Dictionary-backed storage provider.

    Args:
        name: Provider name
        objects: Optional initial content
        fault_hook: Optional callable invoked before every operation with
            the operation name ("read", "write", "delete", "exists",
            "list") and path; raising from it simulates a provider failure.

    Example:
        >>> storage = InMemoryStorageProvider("source", {"a.txt": b"hello"})
        >>> await storage.read("a.txt")
        b'hello'
    """

    def __init__(
        self,
        name: str = "memory",
        objects: dict[str, bytes] | None = None,
        *,
        fault_hook: FaultHook | None = None,
    ) -> None:
        self._name = name
        self._objects: dict[str, bytes] = dict(objects or {})
        self._lock = asyncio.Lock()
        self.fault_hook = fault_hook
        self.operations: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    def _record(self, operation: str, path: str) -> None:
        self.operations.append((operation, path))
        if self.fault_hook is not None:
            self.fault_hook(operation, path)

    async def read(self, path: str) -> bytes:
        self._record("read", path)
        async with self._lock:
            try:
                return self._objects[path]
            except KeyError:
                raise ObjectNotFoundError(path, provider=self._name) from None

    async def write(self, path: str, data: bytes) -> None:
        self._record("write", path)
        async with self._lock:
            self._objects[path] = bytes(data)

    async def delete(self, path: str) -> bool:
        self._record("delete", path)
        async with self._lock:
            return self._objects.pop(path, None) is not None

    async def exists(self, path: str) -> bool:
        self._record("exists", path)
        async with self._lock:
            return path in self._objects

    async def list(self, prefix: str = "") -> list[str]:
        self._record("list", prefix)
        async with self._lock:
            return sorted(p for p in self._objects if p.startswith(prefix))

    @property
    def mutation_count(self) -> int:
        """Number of write and delete calls made so far."""
        return sum(1 for op, _ in self.operations if op in ("write", "delete"))

    def snapshot(self) -> dict[str, bytes]:
        """Copy of the current content, for assertions."""
        return dict(self._objects)

    def clear(self) -> None:
        self._objects.clear()
        self.operations.clear()


__all__ = ["InMemoryStorageProvider", "FaultHook"]
