"""
Unit tests for the RollbackExecutor.

Tests cover:
- Migrate then roll back leaves no net change (copy and move)
- No net change when a move found its destination already present, or a
  sequence claim failed transiently in the middle of an item
- Re-running a rollback is idempotent
- Refusal while a run is RUNNING or the lock is held elsewhere
- Dry-run plans, phase filters and partial rollbacks to a sequence
- Modified destinations, continue_on_error and resuming from the
  rollback checkpoint
- Irreversible deletes
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace

import pytest

from assetmigrate.locks.in_memory import InMemoryLockManager, InMemoryLockTable
from assetmigrate.migration.changelog import ChangeLog
from assetmigrate.migration.exceptions import RollbackRefusedError, RunNotFoundError
from assetmigrate.migration.models import (
    ChangeLogEntry,
    ChangeType,
    FilesystemSwitch,
    MigrationConfig,
    MigrationRun,
    RunPhase,
    RunStatus,
    TransformPolicy,
)
from assetmigrate.migration.orchestrator import MigrationOrchestrator
from assetmigrate.migration.rollback import RollbackExecutor, is_irreversible, rollback_id
from assetmigrate.records import InMemoryRecordStore, Record
from assetmigrate.repositories.changelog import InMemoryChangeLogRepository
from assetmigrate.repositories.checkpoint import InMemoryCheckpointStore
from assetmigrate.repositories.run import InMemoryRunRepository
from assetmigrate.storage import InMemoryStorageProvider
from tests.fixtures import asset_content, asset_path, record_id

MakeOrchestrator = Callable[..., MigrationOrchestrator]


class TestNoNetChange:
    """Migrate, then roll back."""

    async def test_copy_run(
        self,
        orchestrator: MigrationOrchestrator,
        source: InMemoryStorageProvider,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
        run_repo: InMemoryRunRepository,
        lock_manager: InMemoryLockManager,
    ) -> None:
        source_before = source.snapshot()
        records_before = await records.query()
        await orchestrator.start(run_id="run-1")

        result = await orchestrator.rollback("run-1")

        assert result.success
        assert result.complete
        assert result.reversed == 50
        assert result.failed == 0
        assert source.snapshot() == source_before
        assert destination.snapshot() == {}
        assert await records.query() == records_before

        run = await run_repo.get("run-1")
        assert run.status is RunStatus.ROLLED_BACK
        assert run.phase is RunPhase.ROLLBACK
        assert await lock_manager.current_holder() is None

    async def test_move_run(
        self,
        make_orchestrator: MakeOrchestrator,
        migration_config: MigrationConfig,
        source: InMemoryStorageProvider,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
    ) -> None:
        orchestrator = make_orchestrator(config=replace(migration_config, delete_source=True))
        source_before = source.snapshot()
        records_before = await records.query()
        await orchestrator.start(run_id="run-1")
        assert source.snapshot() == {}

        result = await orchestrator.rollback("run-1")

        assert result.complete
        assert source.snapshot() == source_before
        assert destination.snapshot() == {}
        assert await records.query() == records_before

    async def test_rerun_is_idempotent(
        self,
        orchestrator: MigrationOrchestrator,
        checkpoint_store: InMemoryCheckpointStore,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        await orchestrator.rollback("run-1")
        mutations = destination.mutation_count
        updates = records.update_count

        # the rollback checkpoint says everything is done
        again = await orchestrator.rollback("run-1")
        assert again.success
        assert again.reversed == 0

        # without it, every inverse finds its target state already in place
        await checkpoint_store.delete(rollback_id("run-1"))
        replay = await orchestrator.rollback("run-1")
        assert replay.success
        assert replay.reversed == 0
        assert replay.already_reversed == 50

        assert destination.mutation_count == mutations
        assert records.update_count == updates


class SequenceOutage(InMemoryChangeLogRepository):
    """Fails the chosen sequence claims with a transient error."""

    def __init__(self, failing_claims: set[int]) -> None:
        super().__init__(enable_tracing=False)
        self.failing_claims = failing_claims
        self.claims = 0

    async def claim_sequences(self, count: int = 1) -> int:
        self.claims += 1
        if self.claims in self.failing_claims:
            raise TimeoutError("sequence counter unavailable")
        return await super().claim_sequences(count)


class TestNoNetChangeAfterRecoveredProblems:
    """Runs that recovered from an unexpected state still roll back fully."""

    async def test_move_onto_existing_destination(
        self,
        make_orchestrator: MakeOrchestrator,
        migration_config: MigrationConfig,
        source: InMemoryStorageProvider,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
        changelog_repo: InMemoryChangeLogRepository,
    ) -> None:
        await destination.write(asset_path(1), asset_content(1))
        source_before = source.snapshot()
        records_before = await records.query()
        orchestrator = make_orchestrator(config=replace(migration_config, delete_source=True))

        result = await orchestrator.start(run_id="run-1")
        assert result.status is RunStatus.COMPLETED
        assert source.snapshot() == {}
        entries = [e for e in await changelog_repo.read_after(0) if e.item_id == record_id(1)]
        assert [e.change_type for e in entries] == [
            ChangeType.FILE_DELETED,
            ChangeType.RECORD_UPDATED,
        ]
        deleted = entries[0]
        assert deleted.payload["restore_storage"] == "destination"
        assert deleted.payload["restore_path"] == asset_path(1)

        rollback = await orchestrator.rollback("run-1")

        assert rollback.complete
        assert rollback.failed == 0
        assert source.snapshot() == source_before
        assert await records.query() == records_before
        # the object that was there before the run stays
        assert destination.snapshot() == {asset_path(1): asset_content(1)}

    @pytest.mark.parametrize("failing_claim", [1, 2, 7])
    async def test_transient_sequence_claim_failure(
        self,
        make_orchestrator: MakeOrchestrator,
        source: InMemoryStorageProvider,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
        failing_claim: int,
    ) -> None:
        repo = SequenceOutage({failing_claim})
        orchestrator = make_orchestrator(changelog_repository=repo)
        source_before = source.snapshot()
        records_before = await records.query()

        result = await orchestrator.start(run_id="run-1")
        assert result.status is RunStatus.COMPLETED
        assert result.failed == 0
        assert repo.claims > failing_claim

        rollback = await orchestrator.rollback("run-1")

        assert rollback.complete
        assert rollback.failed == 0
        assert destination.snapshot() == {}
        assert source.snapshot() == source_before
        assert await records.query() == records_before


class TestRefusal:
    """Rollback preconditions."""

    async def test_unknown_run(self, orchestrator: MigrationOrchestrator) -> None:
        with pytest.raises(RunNotFoundError):
            await orchestrator.rollback("ghost")

    async def test_running_run_is_refused(
        self,
        orchestrator: MigrationOrchestrator,
        run_repo: InMemoryRunRepository,
    ) -> None:
        await run_repo.create(MigrationRun(run_id="run-1", phase=RunPhase.TRANSFER))
        with pytest.raises(RollbackRefusedError, match="still running"):
            await orchestrator.rollback("run-1")

    async def test_refused_while_lock_is_held(
        self,
        orchestrator: MigrationOrchestrator,
        lock_table: InMemoryLockTable,
        destination: InMemoryStorageProvider,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        other = InMemoryLockManager(
            lock_table, acquire_timeout=0.0, holder_suffix="other:2", enable_tracing=False
        )
        held = await other.acquire("run-2")
        mutations = destination.mutation_count

        with pytest.raises(RollbackRefusedError, match="run-2:other:2"):
            await orchestrator.rollback("run-1")
        assert destination.mutation_count == mutations

        await other.release(held.handle)
        assert (await orchestrator.rollback("run-1")).complete

    async def test_rollback_takes_the_migration_lock(
        self,
        orchestrator: MigrationOrchestrator,
        lock_table: InMemoryLockTable,
        records: InMemoryRecordStore,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        holders: list[str] = []
        original_update = records.update

        async def spy(record_id: str, fields):
            record = lock_table.records.get("asset_migration")
            holders.append(record.run_id if record else "")
            return await original_update(record_id, fields)

        records.update = spy  # type: ignore[method-assign]
        await orchestrator.rollback("run-1")

        assert holders
        assert set(holders) == {rollback_id("run-1")}


class TestPlan:
    """Dry-run plans."""

    async def test_dry_run_plan_mutates_nothing(
        self,
        orchestrator: MigrationOrchestrator,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        snapshot = destination.snapshot()
        updates = records.update_count

        result = await orchestrator.rollback("run-1", dry_run=True)

        assert result.dry_run
        assert result.success
        assert not result.complete
        plan = result.plan
        assert plan.total_entries == 50
        assert plan.from_sequence == 50
        assert plan.by_change_type == {"file_copied": 25, "record_updated": 25}
        assert plan.by_phase == {"transfer": 50}
        assert plan.irreversible == 0
        assert plan.estimated_seconds > 0
        assert destination.snapshot() == snapshot
        assert records.update_count == updates

    async def test_plan_counts_irreversible_deletes(
        self,
        make_orchestrator: MakeOrchestrator,
        migration_config: MigrationConfig,
        source: InMemoryStorageProvider,
        records: InMemoryRecordStore,
    ) -> None:
        await source.write("assets/_thumbs/t.png", b"thumb")
        records.add(Record("r-thumb", {"path": "assets/_thumbs/t.png", "location": "source"}))
        config = replace(migration_config, transform_policy=TransformPolicy.DELETE_SOURCE)
        orchestrator = make_orchestrator(config=config)
        await orchestrator.start(run_id="run-1")

        plan = (await orchestrator.rollback("run-1", dry_run=True)).plan

        assert plan.irreversible == 1
        assert plan.by_change_type["file_deleted"] == 1


class TestPartialRollback:
    """Phase filters and sequence bounds."""

    async def test_to_sequence(
        self,
        orchestrator: MigrationOrchestrator,
        changelog_repo: InMemoryChangeLogRepository,
        run_repo: InMemoryRunRepository,
    ) -> None:
        await orchestrator.start(run_id="run-1")

        result = await orchestrator.rollback("run-1", to_sequence=40)

        assert result.success
        assert not result.complete
        assert result.reversed == 10
        assert result.last_reversed_sequence == 41
        assert (await run_repo.get("run-1")).status is RunStatus.COMPLETED

        # the rest, resuming below sequence 41
        rest = await orchestrator.rollback("run-1")
        assert rest.complete
        assert rest.reversed == 40

    async def test_phase_filter(
        self,
        orchestrator: MigrationOrchestrator,
        migration_config: MigrationConfig,
        records: InMemoryRecordStore,
        destination: InMemoryStorageProvider,
    ) -> None:
        records.add(Record("settings", {"storage_backend": "local"}))
        config = replace(
            migration_config,
            filesystem_switches=(FilesystemSwitch("settings", "storage_backend", "s3"),),
        )
        await orchestrator.start(run_id="run-1", config=config)

        result = await orchestrator.rollback("run-1", phases=[RunPhase.FINALIZE])

        assert result.success
        assert not result.complete
        assert result.reversed == 1
        assert result.skipped == 50
        assert (await records.get("settings")).get("storage_backend") == "local"
        assert len(destination.snapshot()) == 25

        # phase-filtered rollbacks never move the resume point
        full = await orchestrator.rollback("run-1")
        assert full.complete
        assert full.reversed == 50
        assert full.already_reversed == 1


class TestInverseFailures:
    """Entries whose inverse cannot be applied."""

    async def test_modified_destination_stops_rollback(
        self,
        orchestrator: MigrationOrchestrator,
        destination: InMemoryStorageProvider,
        run_repo: InMemoryRunRepository,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        await destination.write(asset_path(20), b"edited by a user")

        result = await orchestrator.rollback("run-1")

        assert not result.success
        assert not result.complete
        assert result.failed == 1
        assert "modified after the copy" in result.errors[0]
        assert await destination.read(asset_path(20)) == b"edited by a user"
        # items after 20 were reversed before the failure; earlier ones were not
        assert not await destination.exists(asset_path(25))
        assert await destination.exists(asset_path(1))
        assert (await run_repo.get("run-1")).status is RunStatus.COMPLETED

    async def test_continue_on_error(
        self,
        orchestrator: MigrationOrchestrator,
        destination: InMemoryStorageProvider,
        records: InMemoryRecordStore,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        await destination.write(asset_path(20), b"edited by a user")

        result = await orchestrator.rollback("run-1", continue_on_error=True)

        assert result.failed == 1
        assert result.reversed == 49
        assert destination.snapshot() == {asset_path(20): b"edited by a user"}
        assert (await records.get(record_id(1))).get("location") == "source"

    async def test_resume_after_fixing_the_cause(
        self,
        orchestrator: MigrationOrchestrator,
        destination: InMemoryStorageProvider,
        checkpoint_store: InMemoryCheckpointStore,
    ) -> None:
        await orchestrator.start(run_id="run-1")
        await destination.write(asset_path(20), b"edited by a user")
        first = await orchestrator.rollback("run-1")
        assert first.failed == 1
        progress = await checkpoint_store.load(rollback_id("run-1"))
        assert progress.phase is RunPhase.ROLLBACK

        await destination.write(asset_path(20), asset_content(20))
        second = await orchestrator.rollback("run-1")

        assert second.complete
        assert second.reversed + first.reversed == 50
        assert destination.snapshot() == {}

    async def test_resume_clears_rollback_progress(
        self,
        orchestrator: MigrationOrchestrator,
        migration_config: MigrationConfig,
        records: InMemoryRecordStore,
        checkpoint_store: InMemoryCheckpointStore,
    ) -> None:
        # the switch record is missing, so the run fails in FINALIZE
        config = replace(
            migration_config,
            filesystem_switches=(FilesystemSwitch("settings", "storage_backend", "s3"),),
        )
        failed = await orchestrator.start(run_id="run-1", config=config)
        assert failed.status is RunStatus.FAILED
        await orchestrator.rollback("run-1", to_sequence=40)
        assert await checkpoint_store.load(rollback_id("run-1")) is not None

        records.add(Record("settings", {"storage_backend": "local"}))
        result = await orchestrator.resume("run-1")

        assert result.status is RunStatus.COMPLETED
        assert await checkpoint_store.load(rollback_id("run-1")) is None


class TestIrreversible:
    """FILE_DELETED without a restore copy."""

    def test_is_irreversible(self) -> None:
        entry = ChangeLogEntry(
            sequence=1,
            run_id="run-1",
            change_type=ChangeType.FILE_DELETED,
            phase=RunPhase.TRANSFER,
            payload={"storage": "source", "path": "a", "restore_path": None},
        )
        restorable = entry.model_copy(
            update={"payload": {"storage": "source", "path": "a", "restore_path": "b"}}
        )
        assert is_irreversible(entry)
        assert not is_irreversible(restorable)

    async def test_deleted_transform_is_skipped(
        self,
        make_orchestrator: MakeOrchestrator,
        migration_config: MigrationConfig,
        source: InMemoryStorageProvider,
        records: InMemoryRecordStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await source.write("assets/_thumbs/t.png", b"thumb")
        records.add(Record("r-thumb", {"path": "assets/_thumbs/t.png", "location": "source"}))
        config = replace(migration_config, transform_policy=TransformPolicy.DELETE_SOURCE)
        orchestrator = make_orchestrator(config=config)
        await orchestrator.start(run_id="run-1")

        with caplog.at_level("WARNING"):
            result = await orchestrator.rollback("run-1")

        assert result.success
        assert result.skipped == 1
        assert "cannot be reversed" in caplog.text
        assert not await source.exists("assets/_thumbs/t.png")


class TestExecutorDirect:
    """The executor used without an orchestrator."""

    async def test_restore_from_destination_copy(self) -> None:
        source = InMemoryStorageProvider("source")
        destination = InMemoryStorageProvider("destination", {"kept/a.bin": b"data"})
        records = InMemoryRecordStore()
        changelog = InMemoryChangeLogRepository(enable_tracing=False)
        runs = InMemoryRunRepository(enable_tracing=False)
        run = MigrationRun(run_id="run-1", phase=RunPhase.TRANSFER)
        await runs.create(run)
        run.transition_to(RunPhase.FAILED)
        await runs.save(run)

        log = ChangeLog(changelog, "run-1", phase=RunPhase.TRANSFER, enable_tracing=False)
        await log.append(
            ChangeType.FILE_DELETED,
            {
                "storage": "source",
                "path": "a.bin",
                "restore_storage": "destination",
                "restore_path": "kept/a.bin",
            },
            item_id="a",
        )
        await log.flush()

        executor = RollbackExecutor(
            source,
            destination,
            records,
            InMemoryLockManager(acquire_timeout=0.0, enable_tracing=False),
            InMemoryCheckpointStore(enable_tracing=False),
            changelog,
            runs,
            enable_tracing=False,
        )
        result = await executor.rollback("run-1")

        assert result.complete
        assert result.reversed == 1
        assert await source.read("a.bin") == b"data"
        assert (await runs.get("run-1")).status is RunStatus.ROLLED_BACK

    def test_checkpoint_every_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="checkpoint_every"):
            RollbackExecutor(
                InMemoryStorageProvider(),
                InMemoryStorageProvider(),
                InMemoryRecordStore(),
                InMemoryLockManager(enable_tracing=False),
                InMemoryCheckpointStore(enable_tracing=False),
                InMemoryChangeLogRepository(enable_tracing=False),
                InMemoryRunRepository(enable_tracing=False),
                checkpoint_every=0,
                enable_tracing=False,
            )
