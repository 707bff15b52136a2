"""
Discover and Categorize phases.

Discovery joins the record store with a listing of the source storage:

- a record whose ``location`` already names the destination is carried
  forward as already migrated (the transfer step skips it if the object
  is really there);
- a record whose file is absent from the source is reported as missing
  and left out of the manifest;
- a source object that no record references is an orphan.

Categorization turns the discovered assets into the run's manifest: a
deterministic, path-ordered list of WorkItems, each with a category,
an action and a destination path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from assetmigrate.migration.models import (
    ItemAction,
    ItemCategory,
    MigrationConfig,
    OrphanPolicy,
    TransformPolicy,
    WorkItem,
)
from assetmigrate.records.interface import Record, RecordStore
from assetmigrate.storage.interface import StorageProvider

logger = logging.getLogger(__name__)

ORPHAN_ID_PREFIX = "orphan:"


@dataclass(frozen=True)
class DiscoveredAsset:
    """
    One asset found during discovery.

    Attributes:
        path: Storage key (source key, or destination key when already migrated).
        record: Owning record; None for orphans.
        already_migrated: The record's location already names the destination.
    """

    path: str
    record: Record | None = None
    already_migrated: bool = False

    @property
    def is_orphan(self) -> bool:
        return self.record is None


@dataclass
class Discovery:
    """
    Result of the Discover phase.

    Attributes:
        assets: Discovered assets, ordered by path then record id.
        missing_sources: Ids of records whose source file does not exist.
    """

    assets: list[DiscoveredAsset] = field(default_factory=list)
    missing_sources: list[str] = field(default_factory=list)

    @property
    def orphan_count(self) -> int:
        return sum(1 for a in self.assets if a.is_orphan)


async def discover(
    records: RecordStore,
    source: StorageProvider,
    config: MigrationConfig,
) -> Discovery:
    """
    Run the Discover phase. Read-only.

    Args:
        records: Record store to query with ``config.record_filter``.
        source: Source storage, listed under ``config.source_prefix``.
        config: Run configuration.
    """
    fields = config.field_map
    source_paths = set(await source.list(config.source_prefix))
    referenced: set[str] = set()
    discovery = Discovery()

    for record in await records.query(config.record_filter or None):
        path = record.get(fields.path)
        if not path:
            logger.warning("Record %s has no '%s' field; skipping", record.id, fields.path)
            discovery.missing_sources.append(record.id)
            continue
        if record.get(fields.location) == config.destination_location:
            # a source copy left at the same path is not an orphan
            referenced.add(path)
            discovery.assets.append(DiscoveredAsset(path, record, already_migrated=True))
            continue
        if path not in source_paths:
            logger.warning("Source file '%s' of record %s does not exist", path, record.id)
            discovery.missing_sources.append(record.id)
            continue
        referenced.add(path)
        discovery.assets.append(DiscoveredAsset(path, record))

    for path in sorted(source_paths - referenced):
        discovery.assets.append(DiscoveredAsset(path))

    discovery.assets.sort(key=lambda a: (a.path, a.record.id if a.record else ""))
    logger.info(
        "Discovered %d assets (%d orphans, %d missing sources)",
        len(discovery.assets),
        discovery.orphan_count,
        len(discovery.missing_sources),
    )
    return discovery


def _join(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


class Categorizer:
    """
    Builds the manifest from discovered assets.

    Rules, applied in order:
    1. A directory segment starting with ``transform_segment_prefix`` marks
       a transform artifact (TRANSFORM_DERIVED), handled by ``transform_policy``.
    2. An asset without a record is an ORPHAN, handled by ``orphan_policy``
       (QUARANTINE copies it under ``quarantine_prefix``).
    3. Everything else is a LINKED_ASSET to transfer.

    Destinations keep the source folder structure unless
    ``preserve_folders`` is False; a flattened name that collides with an
    earlier item falls back to the preserved path.

    Example:
        >>> manifest = Categorizer(config).categorize(discovery.assets)
    """

    def __init__(self, config: MigrationConfig) -> None:
        self.config = config

    def relative_path(self, path: str) -> str:
        prefix = self.config.source_prefix.strip("/")
        path = path.lstrip("/")
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            path = path[len(prefix) :]
        return path.lstrip("/")

    def is_transform(self, path: str) -> bool:
        marker = self.config.transform_segment_prefix
        if not marker:
            return False
        directories = self.relative_path(path).split("/")[:-1]
        return any(segment.startswith(marker) for segment in directories)

    def categorize(self, assets: Iterable[DiscoveredAsset]) -> list[WorkItem]:
        config = self.config
        size_field = config.field_map.size
        hash_field = config.field_map.content_hash
        used_flat_names: set[str] = set()
        manifest: list[WorkItem] = []

        for asset in sorted(assets, key=lambda a: (a.path, a.record.id if a.record else "")):
            record = asset.record
            item_id = record.id if record else f"{ORPHAN_ID_PREFIX}{asset.path}"
            size = record.get(size_field) if record else None
            digest = record.get(hash_field) if record else None

            if asset.already_migrated:
                manifest.append(
                    WorkItem(
                        item_id=item_id,
                        source_path=asset.path,
                        destination_path=asset.path,
                        category=ItemCategory.LINKED_ASSET,
                        action=ItemAction.SKIP,
                        record_id=record.id if record else None,
                        size=size if isinstance(size, int) else None,
                        content_hash=digest if isinstance(digest, str) else None,
                    )
                )
                continue

            relative = self.relative_path(asset.path)
            if self.is_transform(asset.path):
                category = ItemCategory.TRANSFORM_DERIVED
                action = {
                    TransformPolicy.MIGRATE: ItemAction.TRANSFER,
                    TransformPolicy.SKIP: ItemAction.SKIP,
                    TransformPolicy.DELETE_SOURCE: ItemAction.DELETE_SOURCE,
                }[config.transform_policy]
                destination = _join(config.destination_prefix, relative)
            elif asset.is_orphan:
                category = ItemCategory.ORPHAN
                action = (
                    ItemAction.TRANSFER
                    if config.orphan_policy is OrphanPolicy.QUARANTINE
                    else ItemAction.SKIP
                )
                destination = _join(config.quarantine_prefix, relative)
            else:
                category = ItemCategory.LINKED_ASSET
                action = ItemAction.TRANSFER
                destination = _join(config.destination_prefix, self._place(relative, used_flat_names))

            manifest.append(
                WorkItem(
                    item_id=item_id,
                    source_path=asset.path,
                    destination_path=destination,
                    category=category,
                    action=action,
                    record_id=record.id if record else None,
                    size=size if isinstance(size, int) else None,
                    content_hash=digest if isinstance(digest, str) else None,
                )
            )

        logger.info(
            "Categorized %d items: %s",
            len(manifest),
            ", ".join(f"{k}={v}" for k, v in sorted(count_by_category(manifest).items())),
        )
        return manifest

    def _place(self, relative: str, used_flat_names: set[str]) -> str:
        if self.config.preserve_folders:
            return relative
        name = relative.rsplit("/", 1)[-1]
        if name in used_flat_names:
            logger.warning(
                "Flattened name '%s' already used; keeping folder structure for '%s'",
                name,
                relative,
            )
            return relative
        used_flat_names.add(name)
        return name


def count_by_category(items: Iterable[WorkItem]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in items:
        counts[item.category.value] = counts.get(item.category.value, 0) + 1
    return counts


def count_by_action(items: Iterable[WorkItem]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in items:
        counts[item.action.value] = counts.get(item.action.value, 0) + 1
    return counts


__all__ = [
    "DiscoveredAsset",
    "Discovery",
    "discover",
    "Categorizer",
    "count_by_category",
    "count_by_action",
    "ORPHAN_ID_PREFIX",
]
