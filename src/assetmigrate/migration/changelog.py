"""
Buffered, sequenced change log for one run.

Every mutation the orchestrator performs is appended here before the next
mutation starts. ``append`` claims a durable sequence number immediately
and buffers the entry; buffered entries are written in sequence order
every ``flush_every`` appends, on ``flush()``, on ``set_phase()`` and
before every checkpoint save. A failed flush is fatal for the run but
leaves the buffer intact, so a later flush can still persist it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from assetmigrate.migration.exceptions import ChangeLogFlushError
from assetmigrate.migration.models import ChangeLogEntry, ChangeType, RunPhase, utc_now
from assetmigrate.observability import (
    ATTR_ENTRY_COUNT,
    ATTR_RUN_ID,
    ATTR_SEQUENCE,
    Tracer,
    create_tracer,
)
from assetmigrate.repositories.changelog import DEFAULT_PAGE_SIZE, ChangeLogRepository

logger = logging.getLogger(__name__)


class ChangeLog:
    """
    Append-only change log scoped to one run.

    Sequence numbers come from the repository's durable counter, so they
    are unique and increasing across every run and process sharing the
    repository. Within one ChangeLog, appends are serialized: concurrent
    appenders receive contiguous numbers and entries are persisted in
    sequence order.

    Args:
        repository: Durable change-log storage.
        run_id: Run whose mutations are logged.
        flush_every: Buffered entries that trigger an automatic flush.
        phase: Phase recorded on new entries.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer if none is given.

    Example:
        >>> log = ChangeLog(InMemoryChangeLogRepository(), "run-1", flush_every=5)
        >>> seq = await log.append(ChangeType.FILE_COPIED, {"destination_path": "a.png"})
        >>> await log.flush()
        >>> [e.sequence async for e in log.stream_since(0)]
        [1]
    """

    def __init__(
        self,
        repository: ChangeLogRepository,
        run_id: str,
        *,
        flush_every: int = 5,
        phase: RunPhase = RunPhase.TRANSFER,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if flush_every < 1:
            raise ValueError(f"flush_every must be >= 1, got {flush_every}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._repository = repository
        self.run_id = run_id
        self.flush_every = flush_every
        self._phase = phase
        self._buffer: list[ChangeLogEntry] = []
        self._lock = asyncio.Lock()
        self._last_sequence = 0

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def pending_count(self) -> int:
        """Entries appended but not yet persisted."""
        return len(self._buffer)

    @property
    def last_appended(self) -> int:
        """Sequence of the most recent append by this log, or 0."""
        return self._last_sequence

    async def append(
        self,
        change_type: ChangeType,
        payload: dict[str, Any],
        item_id: str | None = None,
    ) -> int:
        """
        Record a mutation.

        Args:
            change_type: Kind of mutation.
            payload: Data needed to describe and reverse it.
            item_id: Work item the mutation belongs to.

        Returns:
            The entry's sequence number.

        Raises:
            ChangeLogFlushError: If this append triggered a flush that failed.
        """
        async with self._lock:
            sequence = await self._repository.claim_sequences(1)
            entry = ChangeLogEntry(
                sequence=sequence,
                run_id=self.run_id,
                change_type=change_type,
                phase=self._phase,
                item_id=item_id,
                payload=payload,
                recorded_at=utc_now(),
            )
            self._buffer.append(entry)
            self._last_sequence = sequence
            logger.debug(
                "Change %d %s for run %s (item=%s)",
                sequence,
                change_type.value,
                self.run_id,
                item_id,
            )
            if len(self._buffer) >= self.flush_every:
                await self._flush_locked()
            return sequence

    async def flush(self) -> int:
        """
        Persist all buffered entries.

        Returns:
            Number of entries written.

        Raises:
            ChangeLogFlushError: If the write failed; the buffer is kept.
        """
        async with self._lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> int:
        if not self._buffer:
            return 0
        pending = list(self._buffer)
        with self._tracer.span(
            "assetmigrate.changelog.flush",
            {
                ATTR_RUN_ID: self.run_id,
                ATTR_ENTRY_COUNT: len(pending),
                ATTR_SEQUENCE: pending[-1].sequence,
            },
        ):
            try:
                await self._repository.write_entries(pending)
            except Exception as e:
                logger.error(
                    "Failed to flush %d change-log entries for run %s: %s",
                    len(pending),
                    self.run_id,
                    e,
                )
                raise ChangeLogFlushError(self.run_id, len(pending), e) from e
            del self._buffer[: len(pending)]
            logger.debug(
                "Flushed %d change-log entries for run %s (through %d)",
                len(pending),
                self.run_id,
                pending[-1].sequence,
            )
            return len(pending)

    async def set_phase(self, phase: RunPhase) -> None:
        """Flush, then record subsequent entries under ``phase``."""
        async with self._lock:
            await self._flush_locked()
            self._phase = phase

    async def latest_sequence(self) -> int:
        """Highest sequence of this run, persisted or buffered."""
        persisted = await self._repository.latest_sequence(self.run_id)
        return max(persisted, self._last_sequence)

    async def stream_since(
        self,
        sequence: int,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[ChangeLogEntry]:
        """
        Yield this run's persisted entries after ``sequence``, ascending.

        Pages through the repository; restart from the last yielded
        sequence to continue after an interruption.
        """
        after = sequence
        while True:
            page = await self._repository.read_after(after, run_id=self.run_id, limit=page_size)
            for entry in page:
                yield entry
            if len(page) < page_size:
                return
            after = page[-1].sequence

    async def stream_reverse(
        self,
        from_sequence: int | None = None,
        to_sequence: int = 0,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[ChangeLogEntry]:
        """
        Yield this run's persisted entries in descending order.

        Args:
            from_sequence: Highest sequence to include; None for the latest.
            to_sequence: Stop before reaching this sequence (exclusive).
        """
        before = None if from_sequence is None else from_sequence + 1
        while True:
            page = await self._repository.read_before(before, run_id=self.run_id, limit=page_size)
            for entry in page:
                if entry.sequence <= to_sequence:
                    return
                yield entry
            if len(page) < page_size:
                return
            before = page[-1].sequence

    def __repr__(self) -> str:
        return (
            f"ChangeLog(run_id={self.run_id!r}, phase={self._phase.value}, "
            f"pending={len(self._buffer)})"
        )


__all__ = ["ChangeLog"]
