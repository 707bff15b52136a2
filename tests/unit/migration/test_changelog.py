"""
Unit tests for the buffered ChangeLog and the in-memory change-log repository.

Tests cover:
- Sequence allocation under concurrent appends
- Buffering and automatic flushing
- Flush failures keeping the buffer intact
- Phase tagging and set_phase flushing
- Forward and reverse streaming with paging
- Repository reads, duplicate detection, delete_run and prune
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from assetmigrate.migration.changelog import ChangeLog
from assetmigrate.migration.exceptions import ChangeLogFlushError
from assetmigrate.migration.models import ChangeLogEntry, ChangeType, RunPhase
from assetmigrate.observability import MockTracer
from assetmigrate.repositories.changelog import (
    ChangeLogRepository,
    InMemoryChangeLogRepository,
)


def copied(n: int) -> dict:
    return {"source_path": f"a/{n}.bin", "destination_path": f"b/{n}.bin"}


class TestSequencing:
    """Tests for sequence allocation."""

    async def test_concurrent_appends_get_contiguous_sequences(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=5, enable_tracing=False)

        sequences = await asyncio.gather(
            *(log.append(ChangeType.FILE_COPIED, copied(n), item_id=f"i-{n}") for n in range(50))
        )
        await log.flush()

        assert sorted(sequences) == list(range(1, 51))
        assert [e.sequence for e in changelog_repo.entries] == list(range(1, 51))
        assert log.last_appended == 50

    async def test_two_logs_sharing_a_repository_never_collide(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        first = ChangeLog(changelog_repo, "run-a", flush_every=3, enable_tracing=False)
        second = ChangeLog(changelog_repo, "run-b", flush_every=3, enable_tracing=False)

        results = await asyncio.gather(
            *(
                log.append(ChangeType.FILE_COPIED, copied(n))
                for n in range(10)
                for log in (first, second)
            )
        )
        await first.flush()
        await second.flush()

        assert sorted(results) == list(range(1, 21))
        assert await first.latest_sequence() in results
        assert {e.run_id for e in changelog_repo.entries} == {"run-a", "run-b"}

    async def test_sequences_strictly_increase_in_append_order(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", enable_tracing=False)
        sequences = [await log.append(ChangeType.FILE_COPIED, copied(n)) for n in range(7)]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 7


class TestBuffering:
    """Tests for buffering and flushing."""

    async def test_entries_buffered_until_threshold(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=3, enable_tracing=False)

        await log.append(ChangeType.FILE_COPIED, copied(1))
        await log.append(ChangeType.FILE_COPIED, copied(2))
        assert log.pending_count == 2
        assert changelog_repo.entries == []

        await log.append(ChangeType.FILE_COPIED, copied(3))
        assert log.pending_count == 0
        assert len(changelog_repo.entries) == 3
        assert changelog_repo.write_count == 1

    async def test_flush_returns_written_count(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=10, enable_tracing=False)
        await log.append(ChangeType.FILE_COPIED, copied(1))

        assert await log.flush() == 1
        assert await log.flush() == 0

    async def test_latest_sequence_includes_buffered_entries(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=10, enable_tracing=False)
        await log.append(ChangeType.FILE_COPIED, copied(1))

        assert await changelog_repo.latest_sequence("run-1") == 0
        assert await log.latest_sequence() == 1

    def test_rejects_invalid_flush_every(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        with pytest.raises(ValueError):
            ChangeLog(changelog_repo, "run-1", flush_every=0, enable_tracing=False)


class TestFlushFailure:
    """Tests for flush failures."""

    async def test_failed_flush_raises_and_keeps_buffer(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=10, enable_tracing=False)
        for n in range(3):
            await log.append(ChangeType.FILE_COPIED, copied(n))

        changelog_repo.fail_writes = OSError("disk full")
        with pytest.raises(ChangeLogFlushError) as exc_info:
            await log.flush()

        assert exc_info.value.pending == 3
        assert isinstance(exc_info.value.cause, OSError)
        assert log.pending_count == 3
        assert changelog_repo.entries == []

        changelog_repo.fail_writes = None
        assert await log.flush() == 3
        assert [e.sequence for e in changelog_repo.entries] == [1, 2, 3]

    async def test_append_that_triggers_failed_flush_raises(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=2, enable_tracing=False)
        changelog_repo.fail_writes = ConnectionError("db gone")

        await log.append(ChangeType.FILE_COPIED, copied(1))
        with pytest.raises(ChangeLogFlushError):
            await log.append(ChangeType.FILE_COPIED, copied(2))
        assert log.pending_count == 2


class TestPhases:
    async def test_entries_carry_current_phase(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        log = ChangeLog(changelog_repo, "run-1", flush_every=10, enable_tracing=False)
        await log.append(ChangeType.FILE_COPIED, copied(1))
        await log.set_phase(RunPhase.FINALIZE)

        # set_phase flushes what was buffered under the old phase
        assert log.pending_count == 0
        await log.append(
            ChangeType.FILESYSTEM_SWITCHED,
            {"record_id": "settings", "field": "fs", "previous": "a", "value": "b"},
        )
        await log.flush()

        assert [e.phase for e in changelog_repo.entries] == [RunPhase.TRANSFER, RunPhase.FINALIZE]
        assert log.phase is RunPhase.FINALIZE


class TestStreaming:
    """Tests for stream_since and stream_reverse."""

    @pytest.fixture
    async def filled_log(self, changelog_repo: InMemoryChangeLogRepository) -> ChangeLog:
        log = ChangeLog(changelog_repo, "run-1", flush_every=100, enable_tracing=False)
        other = ChangeLog(changelog_repo, "run-2", flush_every=100, enable_tracing=False)
        for n in range(12):
            await log.append(ChangeType.FILE_COPIED, copied(n), item_id=f"i-{n}")
            if n % 4 == 0:
                await other.append(ChangeType.FILE_COPIED, copied(n))
        await log.flush()
        await other.flush()
        return log

    async def test_stream_since_pages_in_order(self, filled_log: ChangeLog) -> None:
        entries = [e async for e in filled_log.stream_since(0, page_size=5)]
        assert len(entries) == 12
        assert [e.item_id for e in entries] == [f"i-{n}" for n in range(12)]
        assert all(e.run_id == "run-1" for e in entries)

    async def test_stream_since_resumes_after_sequence(self, filled_log: ChangeLog) -> None:
        all_entries = [e async for e in filled_log.stream_since(0)]
        resumed = [e async for e in filled_log.stream_since(all_entries[7].sequence, page_size=2)]
        assert resumed == all_entries[8:]

    async def test_stream_reverse(self, filled_log: ChangeLog) -> None:
        forward = [e.sequence async for e in filled_log.stream_since(0)]
        backward = [e.sequence async for e in filled_log.stream_reverse(page_size=5)]
        assert backward == list(reversed(forward))

    async def test_stream_reverse_bounds(self, filled_log: ChangeLog) -> None:
        forward = [e.sequence async for e in filled_log.stream_since(0)]
        window = [
            e.sequence
            async for e in filled_log.stream_reverse(
                from_sequence=forward[9], to_sequence=forward[3], page_size=2
            )
        ]
        assert window == list(reversed(forward[4:10]))


class TestInMemoryChangeLogRepository:
    """Tests for the in-memory repository."""

    def _entry(self, sequence: int, run_id: str = "run-1", **kwargs) -> ChangeLogEntry:
        return ChangeLogEntry(
            sequence=sequence,
            run_id=run_id,
            change_type=ChangeType.FILE_COPIED,
            phase=RunPhase.TRANSFER,
            **kwargs,
        )

    def test_implements_protocol(self, changelog_repo: InMemoryChangeLogRepository) -> None:
        assert isinstance(changelog_repo, ChangeLogRepository)

    async def test_claim_blocks(self, changelog_repo: InMemoryChangeLogRepository) -> None:
        assert await changelog_repo.claim_sequences(3) == 1
        assert await changelog_repo.claim_sequences() == 4
        with pytest.raises(ValueError):
            await changelog_repo.claim_sequences(0)

    async def test_duplicate_sequence_rejected_all_or_nothing(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        await changelog_repo.write_entries([self._entry(1)])
        with pytest.raises(ValueError):
            await changelog_repo.write_entries([self._entry(2), self._entry(1)])
        assert [e.sequence for e in changelog_repo.entries] == [1]

    async def test_reads_filter_by_run(self, changelog_repo: InMemoryChangeLogRepository) -> None:
        await changelog_repo.write_entries(
            [self._entry(1), self._entry(2, "run-2"), self._entry(3), self._entry(4, "run-2")]
        )
        assert [e.sequence for e in await changelog_repo.read_after(0, run_id="run-1")] == [1, 3]
        assert [e.sequence for e in await changelog_repo.read_after(1)] == [2, 3, 4]
        assert [e.sequence for e in await changelog_repo.read_before(4)] == [3, 2, 1]
        assert [e.sequence for e in await changelog_repo.read_before(None, "run-2", 1)] == [4]
        assert await changelog_repo.latest_sequence() == 4
        assert await changelog_repo.latest_sequence("run-1") == 3
        assert await changelog_repo.latest_sequence("run-3") == 0

    async def test_delete_run(self, changelog_repo: InMemoryChangeLogRepository) -> None:
        await changelog_repo.write_entries([self._entry(1), self._entry(2, "run-2")])
        assert await changelog_repo.delete_run("run-1") == 1
        assert [e.run_id for e in changelog_repo.entries] == ["run-2"]

    async def test_prune(self, changelog_repo: InMemoryChangeLogRepository) -> None:
        now = datetime.now(UTC)
        await changelog_repo.write_entries(
            [
                self._entry(1, recorded_at=now - timedelta(days=10)),
                self._entry(2, recorded_at=now),
            ]
        )
        assert await changelog_repo.prune(now - timedelta(days=1)) == 1
        assert [e.sequence for e in changelog_repo.entries] == [2]

    async def test_clear_resets_counter(
        self, changelog_repo: InMemoryChangeLogRepository
    ) -> None:
        await changelog_repo.claim_sequences(5)
        await changelog_repo.clear()
        assert await changelog_repo.claim_sequences() == 1

    async def test_write_is_traced(self) -> None:
        tracer = MockTracer()
        repo = InMemoryChangeLogRepository(tracer=tracer)
        await repo.write_entries([self._entry(1)])
        assert "assetmigrate.changelog_repository.write_entries" in tracer.span_names
