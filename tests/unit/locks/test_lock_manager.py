"""
Unit tests for the migration lock manager (in-memory backend).

Tests cover:
- Exclusive acquisition, Busy results and release
- Concurrent acquirers racing for the lock
- Waiting for a busy lock until it is released
- Stale lock reclaim, and same-run takeover only when requested
- Contention and backend error handling
- Heartbeat, lock loss and the hold() context manager
- Dry-run no-op handles
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from assetmigrate.locks import (
    AcquireAttempt,
    AcquireStatus,
    InMemoryLockManager,
    InMemoryLockTable,
    LockMode,
    LockRecord,
)
from assetmigrate.migration.exceptions import LockAcquisitionError, LockLostError
from assetmigrate.migration.models import utc_now
from assetmigrate.observability import MockTracer


def make_manager(table: InMemoryLockTable, host: str, **kwargs) -> InMemoryLockManager:
    options = {
        "retry_interval": 0.0,
        "acquire_timeout": 0.0,
        "holder_suffix": f"{host}:1",
        "enable_tracing": False,
    }
    options.update(kwargs)
    return InMemoryLockManager(table, **options)


class TestAcquireRelease:
    """Tests for basic acquisition."""

    async def test_acquire_free_lock(self, lock_manager: InMemoryLockManager) -> None:
        result = await lock_manager.acquire("run-1")

        assert result.acquired
        assert result.status is AcquireStatus.ACQUIRED
        assert result.attempts == 1
        assert result.handle is not None
        assert result.handle.run_id == "run-1"
        assert result.handle.holder_id == "run-1:test-host:1"
        assert await lock_manager.is_held()
        assert await lock_manager.is_held(result.handle)

    async def test_second_run_gets_busy(self, lock_table: InMemoryLockTable) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")

        held = await first.acquire("run-1")
        busy = await second.acquire("run-2")

        assert held.acquired
        assert busy.busy
        assert busy.handle is None
        assert busy.holder is not None
        assert busy.holder.holder_id == "run-1:host-a:1"

    async def test_release_frees_lock(self, lock_manager: InMemoryLockManager) -> None:
        result = await lock_manager.acquire("run-1")
        assert await lock_manager.release(result.handle) is True

        assert await lock_manager.current_holder() is None
        assert not await lock_manager.is_held()
        assert (await lock_manager.acquire("run-2")).acquired

    async def test_release_by_non_owner_is_refused(self, lock_table: InMemoryLockTable) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")
        handle = (await first.acquire("run-1")).handle

        stranger = replace(handle, holder_id="run-1:host-b:1")
        assert await second.release(stranger) is False
        assert (await first.current_holder()).holder_id == handle.holder_id

    async def test_separate_lock_names_do_not_conflict(
        self, lock_table: InMemoryLockTable
    ) -> None:
        a = make_manager(lock_table, "host-a", lock_name="lock-a")
        b = make_manager(lock_table, "host-b", lock_name="lock-b")
        assert (await a.acquire("run-1")).acquired
        assert (await b.acquire("run-2")).acquired

    def test_rejects_invalid_options(self) -> None:
        with pytest.raises(ValueError):
            InMemoryLockManager(ttl_seconds=0)
        with pytest.raises(ValueError):
            InMemoryLockManager(retry_interval=-1)
        with pytest.raises(ValueError):
            InMemoryLockManager(max_error_retries=-1)


class TestConcurrentAcquirers:
    """Two acquirers racing for the same lock."""

    async def test_exactly_one_wins(self, lock_table: InMemoryLockTable) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")

        results = await asyncio.gather(first.acquire("run-1"), second.acquire("run-2"))

        assert sorted(r.status.value for r in results) == ["acquired", "busy"]
        winner = next(r for r in results if r.acquired)
        loser = next(r for r in results if r.busy)
        assert loser.holder.holder_id == winner.handle.holder_id

    async def test_loser_succeeds_after_release(self, lock_table: InMemoryLockTable) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")

        winner = await first.acquire("run-1")
        assert (await second.acquire("run-2")).busy

        await first.release(winner.handle)
        retry = await second.acquire("run-2")
        assert retry.acquired
        assert retry.handle.run_id == "run-2"

    async def test_waiting_acquirer_gets_lock_when_released(
        self, lock_table: InMemoryLockTable
    ) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b", retry_interval=0.01)
        winner = await first.acquire("run-1")

        async def release_later() -> None:
            await asyncio.sleep(0.05)
            await first.release(winner.handle)

        releaser = asyncio.create_task(release_later())
        result = await second.acquire("run-2", timeout=2.0)
        await releaser

        assert result.acquired
        assert result.attempts > 1

    async def test_many_acquirers_single_winner(self, lock_table: InMemoryLockTable) -> None:
        managers = [make_manager(lock_table, f"host-{i}") for i in range(10)]
        results = await asyncio.gather(
            *(m.acquire(f"run-{i}") for i, m in enumerate(managers))
        )
        assert sum(1 for r in results if r.acquired) == 1
        assert sum(1 for r in results if r.busy) == 9


class TestStaleAndTakeover:
    """Tests for expired records and same-run takeover."""

    async def test_expired_lock_is_reclaimed(
        self, lock_table: InMemoryLockTable, caplog: pytest.LogCaptureFixture
    ) -> None:
        crashed = make_manager(lock_table, "host-a")
        survivor = make_manager(lock_table, "host-b")
        await crashed.acquire("run-1")

        record = lock_table.records[crashed.lock_name]
        lock_table.records[crashed.lock_name] = replace(
            record, expires_at=utc_now() - timedelta(seconds=1)
        )
        assert await survivor.current_holder() is None

        with caplog.at_level("WARNING"):
            result = await survivor.acquire("run-2")

        assert result.acquired
        assert lock_table.records[survivor.lock_name].run_id == "run-2"
        assert "Reclaimed stale lock" in caplog.text

    async def test_short_ttl_expires(self, lock_table: InMemoryLockTable) -> None:
        crashed = make_manager(lock_table, "host-a", ttl_seconds=0.01)
        survivor = make_manager(lock_table, "host-b")
        await crashed.acquire("run-1")
        await asyncio.sleep(0.03)

        assert (await survivor.acquire("run-2")).acquired

    async def test_same_run_takes_over_its_own_lock(
        self, lock_table: InMemoryLockTable, caplog: pytest.LogCaptureFixture
    ) -> None:
        before_restart = make_manager(lock_table, "host-a")
        after_restart = make_manager(lock_table, "host-b")
        old = (await before_restart.acquire("run-1")).handle

        with caplog.at_level("WARNING"):
            result = await after_restart.acquire("run-1", takeover=True)

        assert result.acquired
        assert result.handle.holder_id == "run-1:host-b:1"
        assert "took over its own lock" in caplog.text
        with pytest.raises(LockLostError):
            await before_restart.heartbeat(old)

    async def test_same_run_without_takeover_is_busy(self, lock_table: InMemoryLockTable) -> None:
        running = make_manager(lock_table, "host-a")
        second_start = make_manager(lock_table, "host-b")
        held = (await running.acquire("run-1")).handle

        result = await second_start.acquire("run-1")

        assert result.busy
        assert result.holder.holder_id == "run-1:host-a:1"
        assert await running.is_held(held)
        await running.heartbeat(held)

    async def test_takeover_never_replaces_another_run(
        self, lock_table: InMemoryLockTable
    ) -> None:
        running = make_manager(lock_table, "host-a")
        other = make_manager(lock_table, "host-b")
        await running.acquire("run-1")

        assert (await other.acquire("run-2", takeover=True)).busy


class FlakyLockManager(InMemoryLockManager):
    """Raises from the backend a fixed number of times before delegating."""

    def __init__(self, *args, failures: int, error: BaseException, contention: bool, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.error = error
        self.contention = contention
        self.calls = 0

    async def _try_acquire(
        self, candidate: LockRecord, now: datetime, takeover: bool
    ) -> AcquireAttempt:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return await super()._try_acquire(candidate, now, takeover)

    def _is_contention_error(self, error: BaseException) -> bool:
        return self.contention


class TestBackendErrors:
    """Tests for contention versus error handling."""

    async def test_contention_is_retried_until_success(self) -> None:
        manager = FlakyLockManager(
            failures=3,
            error=RuntimeError("database is locked"),
            contention=True,
            retry_interval=0.0,
            enable_tracing=False,
        )
        result = await manager.acquire("run-1", timeout=5.0)
        assert result.acquired
        assert result.attempts == 4

    async def test_contention_past_deadline_is_busy(self) -> None:
        manager = FlakyLockManager(
            failures=100,
            error=RuntimeError("database is locked"),
            contention=True,
            retry_interval=0.0,
            enable_tracing=False,
        )
        result = await manager.acquire("run-1", timeout=0.0)
        assert result.busy
        assert result.holder is None

    async def test_transient_errors_recover_within_retry_budget(self) -> None:
        manager = FlakyLockManager(
            failures=2,
            error=ConnectionError("reset"),
            contention=False,
            retry_interval=0.0,
            max_error_retries=3,
            enable_tracing=False,
        )
        result = await manager.acquire("run-1", timeout=0.0)
        assert result.acquired
        assert result.attempts == 3

    async def test_persistent_errors_give_error_result(self) -> None:
        manager = FlakyLockManager(
            failures=100,
            error=ConnectionError("reset"),
            contention=False,
            retry_interval=0.0,
            max_error_retries=2,
            enable_tracing=False,
        )
        result = await manager.acquire("run-1", timeout=10.0)

        assert result.status is AcquireStatus.ERROR
        assert result.error == "reset"
        assert result.classification is not None
        assert result.classification.error_code == "LOCK_BACKEND_ERROR"
        assert manager.calls == 3


class TestHeartbeat:
    """Tests for heartbeat and lock loss."""

    async def test_heartbeat_extends_expiry(
        self, lock_manager: InMemoryLockManager, lock_table: InMemoryLockTable
    ) -> None:
        handle = (await lock_manager.acquire("run-1")).handle
        await asyncio.sleep(0.01)

        refreshed = await lock_manager.heartbeat(handle)

        assert refreshed.expires_at > handle.expires_at
        assert lock_table.records[lock_manager.lock_name].expires_at == refreshed.expires_at

    async def test_heartbeat_after_reclaim_raises_lock_lost(
        self, lock_table: InMemoryLockTable
    ) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")
        handle = (await first.acquire("run-1")).handle

        record = lock_table.records[first.lock_name]
        lock_table.records[first.lock_name] = replace(
            record, expires_at=utc_now() - timedelta(seconds=1)
        )
        assert (await second.acquire("run-2")).acquired

        with pytest.raises(LockLostError) as exc_info:
            await first.heartbeat(handle)
        assert exc_info.value.holder_id == handle.holder_id
        assert exc_info.value.run_id == "run-1"
        assert not await first.is_held(handle)

    async def test_heartbeat_after_release_raises(
        self, lock_manager: InMemoryLockManager
    ) -> None:
        handle = (await lock_manager.acquire("run-1")).handle
        await lock_manager.release(handle)
        with pytest.raises(LockLostError):
            await lock_manager.heartbeat(handle)


class TestHoldAndDryRun:
    async def test_hold_releases_on_exit(self, lock_manager: InMemoryLockManager) -> None:
        async with lock_manager.hold("run-1") as handle:
            assert await lock_manager.is_held(handle)
        assert not await lock_manager.is_held()

    async def test_hold_releases_on_error(self, lock_manager: InMemoryLockManager) -> None:
        with pytest.raises(RuntimeError):
            async with lock_manager.hold("run-1"):
                raise RuntimeError("boom")
        assert not await lock_manager.is_held()

    async def test_hold_busy_raises(self, lock_table: InMemoryLockTable) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")
        await first.acquire("run-1")

        with pytest.raises(LockAcquisitionError) as exc_info:
            async with second.hold("run-2"):
                pass
        assert exc_info.value.busy
        assert exc_info.value.holder_id == "run-1:host-a:1"

    async def test_dry_run_never_touches_the_table(
        self, lock_table: InMemoryLockTable
    ) -> None:
        first = make_manager(lock_table, "host-a")
        second = make_manager(lock_table, "host-b")
        await first.acquire("run-1")

        result = await second.acquire("run-2", LockMode.DRY_RUN)

        assert result.acquired
        assert result.handle.is_noop
        assert result.attempts == 0
        assert lock_table.records[first.lock_name].run_id == "run-1"
        assert await second.heartbeat(result.handle) is result.handle
        assert await second.release(result.handle) is True
        assert lock_table.records[first.lock_name].run_id == "run-1"

    async def test_acquire_is_traced(self, lock_table: InMemoryLockTable) -> None:
        tracer = MockTracer()
        manager = make_manager(lock_table, "host-a", tracer=tracer)
        handle = (await manager.acquire("run-1")).handle
        await manager.heartbeat(handle)
        await manager.release(handle)

        assert tracer.span_names == [
            "assetmigrate.lock_manager.acquire",
            "assetmigrate.lock_manager.heartbeat",
            "assetmigrate.lock_manager.release",
        ]

    def test_lock_record_serializes(self) -> None:
        now = utc_now()
        record = LockRecord("lock", "run-1", "run-1:h:1", LockMode.EXCLUSIVE, now, now, now)
        assert record.to_dict()["mode"] == "exclusive"
        assert record.is_expired(now)
