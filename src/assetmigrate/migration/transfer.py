"""
ItemTransfer - moves one work item from source to destination.

Every step is idempotent so that an item interrupted by a crash, a retry
or a resume can simply be processed again:

    - record already points at an existing destination object: SKIPPED
    - destination object exists with the same size and hash: no copy,
      the record is updated
    - destination object exists with different content:
      DestinationConflictError (item failure)
    - otherwise the object is copied (FILE_COPIED), or copied and the
      source deleted (FILE_MOVED) when ``delete_source`` is set, and the
      record is updated (RECORD_UPDATED, with the previous values)

Each mutation is appended to the run's change log before it is performed.
An entry whose mutation never happened is harmless: its inverse finds
nothing to undo. A source deleted because the destination already held
the same content is logged with the destination as its restore point.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from assetmigrate.migration.changelog import ChangeLog
from assetmigrate.migration.exceptions import (
    DestinationConflictError,
    ErrorClassification,
    ErrorHandler,
    FailureKind,
    ItemTransferError,
)
from assetmigrate.migration.models import (
    ChangeLogEntry,
    ChangeType,
    ItemAction,
    ItemOutcome,
    MigrationConfig,
    WorkItem,
)
from assetmigrate.observability import (
    ATTR_ITEM_ATTEMPTS,
    ATTR_ITEM_CATEGORY,
    ATTR_ITEM_ID,
    ATTR_ITEM_OUTCOME,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from assetmigrate.records.interface import Record, RecordNotFoundError, RecordStore
from assetmigrate.storage.exceptions import ObjectNotFoundError
from assetmigrate.storage.interface import ObjectInfo, StorageProvider

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token bucket limiting items started per second.

    A rate of 0 disables limiting.
    """

    def __init__(self, max_rate: float) -> None:
        self._max_rate = max_rate
        self._tokens = float(max_rate)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def wait(self, count: int = 1) -> None:
        if self._max_rate <= 0:
            return

        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(
                self._max_rate,
                self._tokens + elapsed * self._max_rate,
            )

            if count > self._tokens:
                wait_time = (count - self._tokens) / self._max_rate
                await asyncio.sleep(wait_time)
                self._tokens = 0
                self._last_update = time.monotonic()
            else:
                self._tokens -= count


@dataclass(frozen=True)
class ItemResult:
    """
    Outcome of processing one work item.

    Attributes:
        item_id: The item.
        outcome: SUCCEEDED, SKIPPED or FAILED.
        error: Last error for failed items.
        classification: Classification of that error.
        attempts: Attempts made.
        bytes_copied: Bytes written to the destination.
    """

    item_id: str
    outcome: ItemOutcome
    error: BaseException | None = None
    classification: ErrorClassification | None = None
    attempts: int = 1
    bytes_copied: int = 0

    @property
    def is_run_fatal(self) -> bool:
        return (
            self.classification is not None
            and self.classification.kind is FailureKind.RUN_FATAL
        )


def completion_change_type(item: WorkItem) -> ChangeType:
    """The change-log entry whose presence proves ``item`` was completed."""
    if item.action is ItemAction.DELETE_SOURCE:
        return ChangeType.FILE_DELETED
    if item.record_id is not None:
        return ChangeType.RECORD_UPDATED
    return ChangeType.FILE_COPIED


def completed_item_ids(items: Iterable[WorkItem], entries: Iterable[ChangeLogEntry]) -> set[str]:
    """
    Ids of ``items`` whose final change-log entry is among ``entries``.

    FILE_MOVED stands in for FILE_COPIED.
    """
    logged: set[tuple[str, ChangeType]] = set()
    for entry in entries:
        if entry.item_id is None:
            continue
        change_type = entry.change_type
        if change_type is ChangeType.FILE_MOVED:
            change_type = ChangeType.FILE_COPIED
        logged.add((entry.item_id, change_type))
    return {item.item_id for item in items if (item.item_id, completion_change_type(item)) in logged}


class ItemTransfer:
    """
    Processes work items for one run.

    Args:
        source: Source storage.
        destination: Destination storage.
        records: Record store.
        config: Run configuration.
        changelog: The run's change log.
        run_id: Run identifier for logging and errors.
        error_handler: Retry policy executor; built from ``config.item_retry``
            when not given.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer if none is given.
    """

    def __init__(
        self,
        source: StorageProvider,
        destination: StorageProvider,
        records: RecordStore,
        config: MigrationConfig,
        changelog: ChangeLog,
        *,
        run_id: str,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._destination = destination
        self._records = records
        self._config = config
        self._changelog = changelog
        self._run_id = run_id
        self._error_handler = error_handler or ErrorHandler(retry_config=config.item_retry)

    async def process(self, item: WorkItem) -> ItemResult:
        """
        Process one item with retries.

        Never raises for item-level problems: failures come back as an
        ItemResult with outcome FAILED and the error's classification.
        """
        with self._tracer.span(
            "assetmigrate.transfer.process",
            {
                ATTR_RUN_ID: self._run_id,
                ATTR_ITEM_ID: item.item_id,
                ATTR_ITEM_CATEGORY: item.category.value,
            },
        ) as span:
            result = await self._error_handler.execute(
                lambda: self._apply(item),
                "transfer_item",
                run_id=self._run_id,
                item_id=item.item_id,
            )
            if result.ok and result.value is not None:
                outcome, copied = result.value
                item_result = ItemResult(
                    item_id=item.item_id,
                    outcome=outcome,
                    attempts=result.attempts,
                    bytes_copied=copied,
                )
            else:
                item_result = ItemResult(
                    item_id=item.item_id,
                    outcome=ItemOutcome.FAILED,
                    error=result.error,
                    classification=result.classification,
                    attempts=result.attempts,
                )
            if span is not None:
                span.set_attribute(ATTR_ITEM_OUTCOME, item_result.outcome.value)
                span.set_attribute(ATTR_ITEM_ATTEMPTS, item_result.attempts)
            return item_result

    async def _apply(self, item: WorkItem) -> tuple[ItemOutcome, int]:
        record = await self._load_record(item)

        if record is not None and self._points_at_destination(record):
            path = record.get(self._config.field_map.path)
            if await self._destination.exists(path):
                return ItemOutcome.SKIPPED, 0
            raise ItemTransferError(
                f"Record {record.id} points at missing destination object '{path}'",
                item_id=item.item_id,
                operation="check",
                run_id=self._run_id,
            )

        if item.action is ItemAction.SKIP:
            return ItemOutcome.SKIPPED, 0
        if item.action is ItemAction.DELETE_SOURCE:
            return await self._delete_source(item)

        copied = await self._copy(item)
        if record is not None:
            await self._update_record(item, record)
        return ItemOutcome.SUCCEEDED, copied

    async def _load_record(self, item: WorkItem) -> Record | None:
        if item.record_id is None:
            return None
        record = await self._records.get(item.record_id)
        if record is None:
            raise RecordNotFoundError(item.record_id)
        return record

    def _points_at_destination(self, record: Record) -> bool:
        return record.get(self._config.field_map.location) == self._config.destination_location

    async def _delete_source(self, item: WorkItem) -> tuple[ItemOutcome, int]:
        info = await self._source.stat(item.source_path)
        if info is None:
            return ItemOutcome.SKIPPED, 0
        await self._log_source_delete(item, info, restore_path=None)
        await self._source.delete(item.source_path)
        return ItemOutcome.SUCCEEDED, 0

    async def _log_source_delete(
        self, item: WorkItem, info: ObjectInfo, restore_path: str | None
    ) -> None:
        await self._changelog.append(
            ChangeType.FILE_DELETED,
            {
                "storage": "source",
                "path": item.source_path,
                "size": info.size,
                "content_hash": info.content_hash,
                "restore_storage": "destination" if restore_path else None,
                "restore_path": restore_path,
            },
            item_id=item.item_id,
        )

    async def _copy(self, item: WorkItem) -> int:
        """Copy (or move) the object; returns bytes written, 0 if already there."""
        existing = await self._destination.stat(item.destination_path)
        source_info = await self._source.stat(item.source_path)

        if existing is not None:
            if source_info is None:
                # A previous attempt moved it and crashed before the record update.
                if self._config.delete_source:
                    return 0
                raise ObjectNotFoundError(item.source_path, provider=self._source.name)
            if not self._same_content(source_info, existing):
                raise DestinationConflictError(
                    item.item_id, item.destination_path, run_id=self._run_id
                )
            logger.debug(
                "Destination '%s' already holds item %s; not copying",
                item.destination_path,
                item.item_id,
            )
            if self._config.delete_source:
                await self._log_source_delete(
                    item, source_info, restore_path=item.destination_path
                )
                await self._source.delete(item.source_path)
            return 0

        if source_info is None:
            raise ObjectNotFoundError(item.source_path, provider=self._source.name)

        data = await self._source.read(item.source_path)
        info = ObjectInfo.from_bytes(item.destination_path, data)

        moved = self._config.delete_source
        await self._changelog.append(
            ChangeType.FILE_MOVED if moved else ChangeType.FILE_COPIED,
            {
                "source_path": item.source_path,
                "destination_path": item.destination_path,
                "size": info.size,
                "content_hash": info.content_hash,
                "source_provider": self._source.name,
                "destination_provider": self._destination.name,
            },
            item_id=item.item_id,
        )
        await self._destination.write(item.destination_path, data)
        if moved:
            await self._source.delete(item.source_path)
        return info.size

    def _same_content(self, expected: ObjectInfo, actual: ObjectInfo) -> bool:
        if expected.size != actual.size:
            return False
        if self._config.verify_hash:
            return expected.content_hash == actual.content_hash
        return True

    async def _update_record(self, item: WorkItem, record: Record) -> None:
        fields = self._config.field_map
        updated: dict[str, Any] = {
            fields.path: item.destination_path,
            fields.location: self._config.destination_location,
        }
        previous = {name: record.get(name) for name in updated}
        if previous == updated:
            return
        await self._changelog.append(
            ChangeType.RECORD_UPDATED,
            {"record_id": record.id, "previous": previous, "updated": updated},
            item_id=item.item_id,
        )
        await self._records.update(record.id, updated)


__all__ = [
    "RateLimiter",
    "ItemResult",
    "ItemTransfer",
    "completion_change_type",
    "completed_item_ids",
]
