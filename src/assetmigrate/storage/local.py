"""
Local filesystem storage provider.

Objects are files below a root directory. Blocking file I/O runs in a
worker thread so the event loop keeps serving other items.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from assetmigrate.storage.exceptions import ObjectNotFoundError, StorageError
from assetmigrate.storage.interface import StorageProvider

logger = logging.getLogger(__name__)


class LocalFileStorageProvider(StorageProvider):
    """
    Storage provider rooted at a local directory.

    Writes go to a temporary file in the target directory which is then
    renamed over the destination, so a crash never leaves a truncated
    object behind.

    Args:
        root: Root directory (created if missing)
        name: Provider name, defaults to the directory name
    """

    def __init__(self, root: str | Path, name: str | None = None) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._name = name or self._root.name

    @property
    def name(self) -> str:
        return self._name

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if target != self._root and self._root not in target.parents:
            raise StorageError(
                f"Invalid path '{path}' escapes storage root",
                provider=self._name,
                path=path,
            )
        return target

    def _read_sync(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError:
            raise ObjectNotFoundError(path, provider=self._name) from None

    def _write_sync(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _delete_sync(self, path: str) -> bool:
        try:
            self._resolve(path).unlink()
        except FileNotFoundError:
            return False
        return True

    def _list_sync(self, prefix: str) -> list[str]:
        paths = []
        for file in self._root.rglob("*"):
            if not file.is_file() or file.name.endswith(".tmp"):
                continue
            rel = file.relative_to(self._root).as_posix()
            if rel.startswith(prefix):
                paths.append(rel)
        return sorted(paths)

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read_sync, path)

    async def write(self, path: str, data: bytes) -> None:
        await asyncio.to_thread(self._write_sync, path, data)
        logger.debug("Wrote %s (%d bytes) to %s", path, len(data), self._name)

    async def delete(self, path: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, path)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(lambda: self._resolve(path).is_file())

    async def list(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list_sync, prefix)


__all__ = ["LocalFileStorageProvider"]
