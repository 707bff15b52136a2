"""
RollbackExecutor - undoes a run by replaying its change log in reverse.

Entries are read from the highest sequence down to, but excluding,
``to_sequence`` and each one is inverted:

    FILE_COPIED          delete the destination copy
    FILE_MOVED           restore the source from the destination, then
                         delete the destination copy
    FILE_DELETED         restore from the recorded restore location;
                         irreversible (skipped) without one
    RECORD_UPDATED       restore the previous field values
    FILESYSTEM_SWITCHED  restore the previous setting

Every inverse first checks whether its target state already holds and
skips the entry if so, which makes re-running a rollback safe. Progress is
checkpointed under ``<run_id>_rollback`` so that an interrupted rollback
continues where it stopped.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from enum import Enum

from assetmigrate.locks.interface import LockHandle, LockManager, LockMode
from assetmigrate.migration.changelog import ChangeLog
from assetmigrate.migration.exceptions import (
    InverseOperationError,
    RollbackError,
    RollbackRefusedError,
    RunNotFoundError,
)
from assetmigrate.migration.models import (
    ChangeLogEntry,
    ChangeType,
    Checkpoint,
    MigrationRun,
    RollbackPlan,
    RollbackResult,
    RunPhase,
    RunStatus,
    utc_now,
)
from assetmigrate.observability import (
    ATTR_ENTRY_COUNT,
    ATTR_RUN_ID,
    ATTR_TO_SEQUENCE,
    Tracer,
    create_tracer,
)
from assetmigrate.records.interface import RecordStore
from assetmigrate.repositories.changelog import ChangeLogRepository
from assetmigrate.repositories.checkpoint import CheckpointStore
from assetmigrate.repositories.run import RunRepository
from assetmigrate.storage.interface import StorageProvider

logger = logging.getLogger(__name__)

ROLLBACK_SUFFIX = "_rollback"

# Rough cost of one inverse operation, for plan estimates.
ESTIMATED_SECONDS_PER_ENTRY = 0.05


def rollback_id(run_id: str) -> str:
    """Checkpoint and lock holder id used by the rollback of ``run_id``."""
    return f"{run_id}{ROLLBACK_SUFFIX}"


class InverseOutcome(Enum):
    REVERSED = "reversed"
    ALREADY_REVERSED = "already_reversed"
    IRREVERSIBLE = "irreversible"


def is_irreversible(entry: ChangeLogEntry) -> bool:
    return entry.change_type is ChangeType.FILE_DELETED and not entry.payload.get("restore_path")


class RollbackExecutor:
    """
    Reverses the mutations of a run.

    Args:
        source: Source storage of the run.
        destination: Destination storage of the run.
        records: Record store of the run.
        lock_manager: System-wide migration lock.
        checkpoints: Checkpoint store for rollback progress.
        changelog_repository: Change-log storage to replay.
        runs: Run repository.
        checkpoint_every: Entries reversed between checkpoint saves.
        lock_timeout: Seconds to wait for the lock; the lock manager's
            default when None.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer if none is given.

    Example:
        >>> executor = RollbackExecutor(source, destination, records, locks,
        ...                             checkpoints, changelog_repo, runs)
        >>> result = await executor.rollback("run-1")
        >>> result.complete
        True
    """

    def __init__(
        self,
        source: StorageProvider,
        destination: StorageProvider,
        records: RecordStore,
        lock_manager: LockManager,
        checkpoints: CheckpointStore,
        changelog_repository: ChangeLogRepository,
        runs: RunRepository,
        *,
        checkpoint_every: int = 100,
        lock_timeout: float | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if checkpoint_every < 1:
            raise ValueError(f"checkpoint_every must be >= 1, got {checkpoint_every}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._destination = destination
        self._records = records
        self._lock_manager = lock_manager
        self._checkpoints = checkpoints
        self._changelog_repository = changelog_repository
        self._runs = runs
        self._checkpoint_every = checkpoint_every
        self._lock_timeout = lock_timeout

    async def plan(
        self,
        run_id: str,
        to_sequence: int | None = None,
        *,
        phases: Collection[RunPhase] | None = None,
    ) -> RollbackPlan:
        """
        Describe what ``rollback`` would reverse, without mutating anything.
        """
        run = await self._get_run(run_id)
        to_sequence = to_sequence or 0
        start = await self._resume_point(run.run_id) if phases is None else None
        by_change_type: dict[str, int] = {}
        by_phase: dict[str, int] = {}
        from_sequence = 0
        total = 0
        irreversible = 0

        async for entry in self._changelog(run.run_id).stream_reverse(start, to_sequence):
            if phases is not None and entry.phase not in phases:
                continue
            from_sequence = max(from_sequence, entry.sequence)
            total += 1
            by_change_type[entry.change_type.value] = (
                by_change_type.get(entry.change_type.value, 0) + 1
            )
            by_phase[entry.phase.value] = by_phase.get(entry.phase.value, 0) + 1
            if is_irreversible(entry):
                irreversible += 1

        return RollbackPlan(
            run_id=run.run_id,
            from_sequence=from_sequence,
            to_sequence=to_sequence,
            total_entries=total,
            by_change_type=by_change_type,
            by_phase=by_phase,
            irreversible=irreversible,
            estimated_seconds=total * ESTIMATED_SECONDS_PER_ENTRY,
        )

    async def rollback(
        self,
        run_id: str,
        to_sequence: int | None = None,
        *,
        dry_run: bool = False,
        phases: Collection[RunPhase] | None = None,
        continue_on_error: bool = False,
        handle: LockHandle | None = None,
    ) -> RollbackResult:
        """
        Roll back a run.

        Args:
            run_id: Run to roll back.
            to_sequence: Stop before this sequence; None rolls back the
                whole run.
            dry_run: Only compute the plan.
            phases: Reverse only entries recorded in these phases.
            continue_on_error: Keep going after a failed inverse instead of
                stopping at it.
            handle: Lock handle already held by the caller (automatic
                rollback from the orchestrator). Without one, the executor
                acquires the lock itself and refuses to run while the run
                is RUNNING.

        Raises:
            RunNotFoundError: If the run is unknown.
            RollbackRefusedError: If the run is active or another holder
                has the lock.
            LockLostError: If the lock was lost during the rollback.
        """
        with self._tracer.span(
            "assetmigrate.rollback.execute",
            {ATTR_RUN_ID: run_id, ATTR_TO_SEQUENCE: to_sequence or 0},
        ) as span:
            run = await self._get_run(run_id)
            if dry_run:
                plan = await self.plan(run_id, to_sequence, phases=phases)
                return RollbackResult(
                    run_id=run_id,
                    success=True,
                    to_sequence=plan.to_sequence,
                    dry_run=True,
                    plan=plan,
                )

            if handle is not None:
                result = await self._execute(run, to_sequence or 0, phases, continue_on_error, handle)
            else:
                if run.status is RunStatus.RUNNING:
                    raise RollbackRefusedError(
                        f"Run {run_id} is still running; cancel it before rolling back",
                        run_id=run_id,
                        operation="rollback",
                    )
                handle = await self._acquire(run_id)
                try:
                    result = await self._execute(
                        run, to_sequence or 0, phases, continue_on_error, handle
                    )
                finally:
                    await self._lock_manager.release(handle)

            if span is not None:
                span.set_attribute(ATTR_ENTRY_COUNT, result.reversed + result.already_reversed)
            return result

    async def _acquire(self, run_id: str) -> LockHandle:
        result = await self._lock_manager.acquire(
            rollback_id(run_id), LockMode.EXCLUSIVE, timeout=self._lock_timeout
        )
        if result.handle is not None:
            return result.handle
        if result.busy:
            holder = result.holder.holder_id if result.holder else "unknown"
            raise RollbackRefusedError(
                f"Migration lock is held by {holder}",
                run_id=run_id,
                operation="rollback",
            )
        raise RollbackError(
            f"Failed to acquire the migration lock: {result.error}",
            run_id=run_id,
            operation="rollback",
        )

    async def _execute(
        self,
        run: MigrationRun,
        to_sequence: int,
        phases: Collection[RunPhase] | None,
        continue_on_error: bool,
        handle: LockHandle,
    ) -> RollbackResult:
        run_id = run.run_id
        checkpoint_id = rollback_id(run_id)
        # Phase-filtered rollbacks leave entries behind, so they never move
        # the resume point.
        resumable = phases is None
        existing = await self._checkpoints.load(checkpoint_id) if resumable else None
        start = existing.last_sequence - 1 if existing and existing.last_sequence else None
        if start is not None:
            logger.info("Resuming rollback of run %s below sequence %d", run_id, start + 1)

        checkpoint = existing or Checkpoint(run_id=checkpoint_id, phase=RunPhase.ROLLBACK)
        checkpoint = checkpoint.advance(retention_until=utc_now() + run.config.retention)
        reversed_count = 0
        already = 0
        skipped = 0
        failed = 0
        errors: list[str] = []
        since_checkpoint = 0
        # Lowest sequence below which every selected entry was handled.
        committed: int | None = None

        if start is None or start > to_sequence:
            async for entry in self._changelog(run_id).stream_reverse(start, to_sequence):
                if phases is not None and entry.phase not in phases:
                    skipped += 1
                    continue
                try:
                    outcome = await self._invert(run_id, entry)
                except InverseOperationError as e:
                    failed += 1
                    errors.append(str(e))
                    logger.error("Rollback of run %s: %s", run_id, e)
                    if not continue_on_error:
                        break
                    continue

                if outcome is InverseOutcome.REVERSED:
                    reversed_count += 1
                elif outcome is InverseOutcome.ALREADY_REVERSED:
                    already += 1
                else:
                    skipped += 1
                    logger.warning(
                        "Change-log entry %d of run %s (%s) cannot be reversed",
                        entry.sequence,
                        run_id,
                        entry.change_type.value,
                    )

                if failed == 0 and resumable:
                    committed = entry.sequence
                    since_checkpoint += 1
                    if since_checkpoint >= self._checkpoint_every:
                        checkpoint = await self._save_progress(checkpoint, committed, handle)
                        since_checkpoint = 0

        if committed is not None:
            checkpoint = await self._save_progress(checkpoint, committed, handle)

        success = failed == 0
        complete = success and to_sequence == 0 and phases is None
        if complete:
            now = utc_now()
            run.status = RunStatus.ROLLED_BACK
            run.phase = RunPhase.ROLLBACK
            run.updated_at = now
            run.finished_at = now
            await self._runs.save(run)

        logger.info(
            "Rollback of run %s %s: %d reversed, %d already reversed, %d skipped, %d failed",
            run_id,
            "completed" if success else "stopped",
            reversed_count,
            already,
            skipped,
            failed,
        )
        return RollbackResult(
            run_id=run_id,
            success=success,
            to_sequence=to_sequence,
            last_reversed_sequence=checkpoint.last_sequence or None,
            reversed=reversed_count,
            already_reversed=already,
            skipped=skipped,
            failed=failed,
            errors=tuple(errors),
            complete=complete,
        )

    async def _save_progress(
        self, checkpoint: Checkpoint, sequence: int, handle: LockHandle
    ) -> Checkpoint:
        await self._lock_manager.heartbeat(handle)
        checkpoint = checkpoint.advance(last_sequence=sequence)
        await self._checkpoints.save(checkpoint)
        return checkpoint

    async def _invert(self, run_id: str, entry: ChangeLogEntry) -> InverseOutcome:
        try:
            if entry.change_type is ChangeType.FILE_COPIED:
                return await self._undo_copy(entry)
            if entry.change_type is ChangeType.FILE_MOVED:
                return await self._undo_move(entry)
            if entry.change_type is ChangeType.FILE_DELETED:
                return await self._undo_delete(entry)
            if entry.change_type in (ChangeType.RECORD_UPDATED, ChangeType.FILESYSTEM_SWITCHED):
                return await self._restore_fields(entry)
        except InverseOperationError:
            raise
        except Exception as e:
            raise InverseOperationError(run_id, entry.sequence, str(e), cause=e) from e
        raise InverseOperationError(
            run_id, entry.sequence, f"unknown change type {entry.change_type.value}"
        )

    async def _undo_copy(self, entry: ChangeLogEntry) -> InverseOutcome:
        path = entry.payload["destination_path"]
        info = await self._destination.stat(path)
        if info is None:
            return InverseOutcome.ALREADY_REVERSED
        expected = entry.payload.get("content_hash")
        if expected is not None and info.content_hash != expected:
            raise InverseOperationError(
                entry.run_id,
                entry.sequence,
                f"destination '{path}' was modified after the copy",
            )
        await self._destination.delete(path)
        return InverseOutcome.REVERSED

    async def _undo_move(self, entry: ChangeLogEntry) -> InverseOutcome:
        source_path = entry.payload["source_path"]
        destination_path = entry.payload["destination_path"]
        source_exists = await self._source.exists(source_path)
        destination_exists = await self._destination.exists(destination_path)
        if source_exists and not destination_exists:
            return InverseOutcome.ALREADY_REVERSED
        if not source_exists:
            if not destination_exists:
                raise InverseOperationError(
                    entry.run_id,
                    entry.sequence,
                    f"neither source '{source_path}' nor destination "
                    f"'{destination_path}' exists",
                )
            data = await self._destination.read(destination_path)
            await self._source.write(source_path, data)
        await self._destination.delete(destination_path)
        return InverseOutcome.REVERSED

    async def _undo_delete(self, entry: ChangeLogEntry) -> InverseOutcome:
        if is_irreversible(entry):
            return InverseOutcome.IRREVERSIBLE
        target = self._provider(entry.payload["storage"])
        path = entry.payload["path"]
        if await target.exists(path):
            return InverseOutcome.ALREADY_REVERSED
        origin = self._provider(entry.payload.get("restore_storage") or "destination")
        data = await origin.read(entry.payload["restore_path"])
        await target.write(path, data)
        return InverseOutcome.REVERSED

    async def _restore_fields(self, entry: ChangeLogEntry) -> InverseOutcome:
        payload = entry.payload
        if entry.change_type is ChangeType.FILESYSTEM_SWITCHED:
            previous = {payload["field"]: payload["previous"]}
        else:
            previous = dict(payload["previous"])
        record_id = payload["record_id"]
        record = await self._records.get(record_id)
        if record is None:
            raise InverseOperationError(
                entry.run_id, entry.sequence, f"record {record_id} no longer exists"
            )
        if all(record.get(name) == value for name, value in previous.items()):
            return InverseOutcome.ALREADY_REVERSED
        await self._records.update(record_id, previous)
        return InverseOutcome.REVERSED

    def _provider(self, name: str) -> StorageProvider:
        if name == "source":
            return self._source
        if name == "destination":
            return self._destination
        raise ValueError(f"Unknown storage '{name}'")

    async def _get_run(self, run_id: str) -> MigrationRun:
        run = await self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _resume_point(self, run_id: str) -> int | None:
        checkpoint = await self._checkpoints.load(rollback_id(run_id))
        if checkpoint is None or not checkpoint.last_sequence:
            return None
        return checkpoint.last_sequence - 1

    def _changelog(self, run_id: str) -> ChangeLog:
        return ChangeLog(
            self._changelog_repository,
            run_id,
            phase=RunPhase.ROLLBACK,
            tracer=self._tracer,
        )


__all__ = [
    "RollbackExecutor",
    "InverseOutcome",
    "ROLLBACK_SUFFIX",
    "rollback_id",
    "is_irreversible",
]
