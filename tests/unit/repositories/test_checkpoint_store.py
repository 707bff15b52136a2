"""
Unit tests for checkpoint stores.

Tests cover:
- InMemoryCheckpointStore save/load/delete/list/prune
- FileCheckpointStore atomic replace, durability and crash safety
- Run id validation on every store
"""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from assetmigrate.migration.exceptions import CheckpointWriteError, InvalidRunIdError
from assetmigrate.migration.models import Checkpoint, RunPhase, utc_now
from assetmigrate.observability import MockTracer
from assetmigrate.repositories.checkpoint import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)


class SimulatedCrash(BaseException):
    """Process death in the middle of a save."""


def checkpoint(run_id: str = "run-1", offset: int = 0, **kwargs) -> Checkpoint:
    return Checkpoint(
        run_id=run_id,
        phase=RunPhase.TRANSFER,
        batch_offset=offset,
        batches_completed=offset // 100,
        processed=offset,
        succeeded=offset,
        last_sequence=offset * 2,
        **kwargs,
    )


@pytest.fixture
def file_store(tmp_path: Path) -> FileCheckpointStore:
    return FileCheckpointStore(tmp_path / "checkpoints", enable_tracing=False)


class TestInMemoryCheckpointStore:
    """Tests for InMemoryCheckpointStore."""

    def test_implements_protocol(self, checkpoint_store: InMemoryCheckpointStore) -> None:
        assert isinstance(checkpoint_store, CheckpointStore)

    async def test_save_and_load(self, checkpoint_store: InMemoryCheckpointStore) -> None:
        assert await checkpoint_store.load("run-1") is None
        await checkpoint_store.save(checkpoint(offset=100))
        await checkpoint_store.save(checkpoint(offset=200))

        loaded = await checkpoint_store.load("run-1")
        assert loaded is not None
        assert loaded.batch_offset == 200
        assert checkpoint_store.save_count == 2

    async def test_delete_and_list(self, checkpoint_store: InMemoryCheckpointStore) -> None:
        await checkpoint_store.save(checkpoint("run-b"))
        await checkpoint_store.save(checkpoint("run-a"))

        assert [c.run_id for c in await checkpoint_store.list_checkpoints()] == ["run-a", "run-b"]
        assert await checkpoint_store.delete("run-a") is True
        assert await checkpoint_store.delete("run-a") is False
        assert [c.run_id for c in await checkpoint_store.list_checkpoints()] == ["run-b"]

    async def test_prune_expired(self, checkpoint_store: InMemoryCheckpointStore) -> None:
        now = utc_now()
        await checkpoint_store.save(checkpoint("old", retention_until=now - timedelta(hours=1)))
        await checkpoint_store.save(checkpoint("new", retention_until=now + timedelta(hours=1)))

        assert await checkpoint_store.prune() == 1
        assert await checkpoint_store.load("old") is None
        assert await checkpoint_store.load("new") is not None
        assert await checkpoint_store.prune(now + timedelta(hours=2)) == 1

    async def test_rejects_invalid_run_id(
        self, checkpoint_store: InMemoryCheckpointStore
    ) -> None:
        with pytest.raises(InvalidRunIdError):
            await checkpoint_store.save(checkpoint("bad/id"))
        with pytest.raises(InvalidRunIdError):
            await checkpoint_store.load("../etc")

    async def test_save_is_traced(self) -> None:
        tracer = MockTracer()
        store = InMemoryCheckpointStore(tracer=tracer)
        await store.save(checkpoint())
        assert tracer.span_names == ["assetmigrate.checkpoint.save"]


class TestFileCheckpointStore:
    """Tests for FileCheckpointStore."""

    def test_implements_protocol(self, file_store: FileCheckpointStore) -> None:
        assert isinstance(file_store, CheckpointStore)

    async def test_round_trip(self, file_store: FileCheckpointStore) -> None:
        original = checkpoint(offset=400, failed_item_ids=("r-0001", "r-0002"))
        await file_store.save(original)

        assert await file_store.load("run-1") == original
        data = json.loads((file_store.directory / "run-1.json").read_text())
        assert data["batch_offset"] == 400
        assert data["phase"] == "transfer"

    async def test_load_missing(self, file_store: FileCheckpointStore) -> None:
        assert await file_store.load("run-1") is None

    async def test_save_leaves_no_staging_file(self, file_store: FileCheckpointStore) -> None:
        await file_store.save(checkpoint(offset=100))
        await file_store.save(checkpoint(offset=200))

        names = sorted(p.name for p in file_store.directory.iterdir())
        assert names == ["run-1.json", "run-1.lock"]

    async def test_failed_replace_raises_and_keeps_old_checkpoint(
        self, file_store: FileCheckpointStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await file_store.save(checkpoint(offset=100))

        def failing_replace(src: object, dst: object) -> None:
            raise OSError("no space left on device")

        monkeypatch.setattr("assetmigrate.repositories.checkpoint.os.replace", failing_replace)
        with pytest.raises(CheckpointWriteError) as exc_info:
            await file_store.save(checkpoint(offset=200))

        assert isinstance(exc_info.value.cause, OSError)
        assert exc_info.value.run_id == "run-1"
        monkeypatch.undo()
        assert (await file_store.load("run-1")).batch_offset == 100

    async def test_crash_before_rename_leaves_old_checkpoint(
        self, file_store: FileCheckpointStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await file_store.save(checkpoint(offset=100))

        def crash(src: object, dst: object) -> None:
            raise SimulatedCrash()

        monkeypatch.setattr("assetmigrate.repositories.checkpoint.os.replace", crash)
        with pytest.raises(SimulatedCrash):
            await file_store.save(checkpoint(offset=200))
        monkeypatch.undo()

        # the staging file holds the new state but is never read
        assert (file_store.directory / "run-1.json.tmp").exists()
        restarted = FileCheckpointStore(file_store.directory, enable_tracing=False)
        assert (await restarted.load("run-1")).batch_offset == 100
        assert [c.run_id for c in await restarted.list_checkpoints()] == ["run-1"]

        await restarted.save(checkpoint(offset=200))
        assert (await restarted.load("run-1")).batch_offset == 200

    async def test_crash_after_rename_leaves_new_checkpoint(
        self, file_store: FileCheckpointStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await file_store.save(checkpoint(offset=100))

        def crash() -> None:
            raise SimulatedCrash()

        monkeypatch.setattr(file_store, "_fsync_directory", crash)
        with pytest.raises(SimulatedCrash):
            await file_store.save(checkpoint(offset=200))
        monkeypatch.undo()

        restarted = FileCheckpointStore(file_store.directory, enable_tracing=False)
        assert (await restarted.load("run-1")).batch_offset == 200

    async def test_crash_during_staging_write_leaves_old_checkpoint(
        self, file_store: FileCheckpointStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await file_store.save(checkpoint(offset=100))

        def crash(fd: int) -> None:
            raise SimulatedCrash()

        monkeypatch.setattr("assetmigrate.repositories.checkpoint.os.fsync", crash)
        with pytest.raises(SimulatedCrash):
            await file_store.save(checkpoint(offset=200))
        monkeypatch.undo()

        assert (await file_store.load("run-1")).batch_offset == 100

    async def test_delete_removes_auxiliary_files(self, file_store: FileCheckpointStore) -> None:
        await file_store.save(checkpoint())
        assert await file_store.delete("run-1") is True
        assert list(file_store.directory.iterdir()) == []
        assert await file_store.delete("run-1") is False

    async def test_prune(self, file_store: FileCheckpointStore) -> None:
        now = utc_now()
        await file_store.save(checkpoint("old", retention_until=now - timedelta(minutes=1)))
        await file_store.save(checkpoint("new", retention_until=now + timedelta(hours=1)))

        assert await file_store.prune() == 1
        assert [c.run_id for c in await file_store.list_checkpoints()] == ["new"]

    async def test_rejects_path_traversal(self, file_store: FileCheckpointStore) -> None:
        with pytest.raises(InvalidRunIdError):
            await file_store.load("../../etc/passwd")
        with pytest.raises(InvalidRunIdError):
            await file_store.save(checkpoint("a.b"))
