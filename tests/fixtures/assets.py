"""
Builders for source storage and record stores.

Asset ``n`` (1-based) lives at ``assets/item-<nnnn>.bin`` and is owned by
record ``r-<nnnn>``, so manifest order equals numeric order.
"""

from __future__ import annotations

from assetmigrate.records.interface import Record
from assetmigrate.records.in_memory import InMemoryRecordStore
from assetmigrate.storage.in_memory import FaultHook, InMemoryStorageProvider


def asset_path(n: int, prefix: str = "assets") -> str:
    return f"{prefix}/item-{n:04d}.bin"


def asset_content(n: int) -> bytes:
    return f"content of asset {n}".encode()


def record_id(n: int) -> str:
    return f"r-{n:04d}"


def build_assets(
    count: int,
    *,
    prefix: str = "assets",
    fault_hook: FaultHook | None = None,
) -> tuple[InMemoryStorageProvider, InMemoryRecordStore]:
    """
    Create a source storage with ``count`` objects and one record per object.

    Returns:
        (source storage, record store)
    """
    objects = {asset_path(n, prefix): asset_content(n) for n in range(1, count + 1)}
    records = [
        Record(
            record_id(n),
            {
                "path": asset_path(n, prefix),
                "location": "source",
                "size": len(asset_content(n)),
            },
        )
        for n in range(1, count + 1)
    ]
    source = InMemoryStorageProvider("source", objects, fault_hook=fault_hook)
    return source, InMemoryRecordStore(records)
