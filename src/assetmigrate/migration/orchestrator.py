"""
MigrationOrchestrator - drives a migration run through its phases.

The orchestrator is the entry point of the engine. It holds the
system-wide lock for the duration of a live run and sequences:

    DISCOVER -> CATEGORIZE -> TRANSFER (batches) -> VERIFY -> FINALIZE

Responsibilities:
    - Run lifecycle (start, resume, cancel, rollback, status)
    - Phase transitions validated against the run state machine
    - Bounded-parallel item transfer with per-item retries
    - Error budget enforcement
    - Checkpoints at batch boundaries and change-log flushing before each
    - Cancellation at batch boundaries
    - Read-only dry runs

Usage:
    >>> orchestrator = MigrationOrchestrator(
    ...     source=source,
    ...     destination=destination,
    ...     records=records,
    ...     lock_manager=InMemoryLockManager(),
    ...     checkpoints=InMemoryCheckpointStore(),
    ...     changelog_repository=InMemoryChangeLogRepository(),
    ...     runs=InMemoryRunRepository(),
    ...     config=MigrationConfig(batch_size=100),
    ... )
    >>> result = await orchestrator.start()
    >>> result.status
    <RunStatus.COMPLETED: 'completed'>
    >>>
    >>> # After a crash, failure or cancellation
    >>> result = await orchestrator.resume(result.run_id)
    >>>
    >>> # Undo everything the run did
    >>> await orchestrator.rollback(result.run_id)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from assetmigrate.locks.interface import LockHandle, LockManager, LockMode
from assetmigrate.migration.categorizer import (
    Categorizer,
    count_by_action,
    count_by_category,
    discover,
)
from assetmigrate.migration.changelog import ChangeLog
from assetmigrate.migration.error_budget import ErrorBudget
from assetmigrate.migration.exceptions import (
    ChangeLogFlushError,
    ErrorHandler,
    LockAcquisitionError,
    MigrationAlreadyRunningError,
    RollbackRefusedError,
    RunNotFoundError,
    RunStateError,
    classify_exception,
)
from assetmigrate.migration.models import (
    ChangeType,
    Checkpoint,
    DryRunReport,
    ItemAction,
    ItemOutcome,
    MigrationConfig,
    MigrationRun,
    RollbackResult,
    RunMode,
    RunPhase,
    RunResult,
    RunStatus,
    RunStatusSnapshot,
    VerifyMode,
    WorkItem,
    utc_now,
    validate_run_id,
)
from assetmigrate.migration.rollback import RollbackExecutor, rollback_id
from assetmigrate.migration.transfer import (
    ItemResult,
    ItemTransfer,
    RateLimiter,
    completed_item_ids,
)
from assetmigrate.migration.verifier import Verifier
from assetmigrate.observability import (
    ATTR_BATCH_OFFSET,
    ATTR_BATCH_SIZE,
    ATTR_ITEMS_FAILED,
    ATTR_ITEMS_PROCESSED,
    ATTR_RUN_ID,
    ATTR_RUN_MODE,
    ATTR_RUN_PHASE,
    ATTR_RUN_STATUS,
    Tracer,
    create_tracer,
)
from assetmigrate.records.in_memory import ReadOnlyRecordView
from assetmigrate.records.interface import RecordNotFoundError, RecordStore
from assetmigrate.repositories.changelog import ChangeLogRepository
from assetmigrate.repositories.checkpoint import CheckpointStore
from assetmigrate.repositories.run import RunRepository
from assetmigrate.storage.interface import StorageProvider
from assetmigrate.storage.read_only import ReadOnlyStorageView

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    """Generate a sortable, unique run id."""
    return f"run-{utc_now():%Y%m%d%H%M%S}-{uuid4().hex[:8]}"


@dataclass
class _ActiveRun:
    """Per-invocation state of a live run."""

    run: MigrationRun
    handle: LockHandle
    changelog: ChangeLog
    checkpoint: Checkpoint
    budget: ErrorBudget
    manifest: list[WorkItem] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    # Items with a completion entry after the checkpoint
    completed: set[str] = field(default_factory=set)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    fatal_error: BaseException | None = None


class MigrationOrchestrator:
    """
    Orchestrates migration runs.

    Live runs hold the exclusive migration lock from start to their
    terminal state; at most one live run exists system-wide. Dry runs take
    no lock and work against read-only views of the storage providers and
    record store.

    Args:
        source: Storage the assets are moved from.
        destination: Storage the assets are moved to.
        records: Record store referencing the assets.
        lock_manager: System-wide migration lock.
        checkpoints: Checkpoint store.
        changelog_repository: Durable change-log storage.
        runs: Run repository.
        config: Default configuration for new runs.
        error_handler: Retry executor for items; built per run from
            ``config.item_retry`` when not given.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
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
        config: MigrationConfig | None = None,
        *,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._destination = destination
        self._records = records
        self._lock_manager = lock_manager
        self._checkpoints = checkpoints
        self._changelog_repository = changelog_repository
        self._runs = runs
        self._config = config or MigrationConfig()
        self._error_handler = error_handler

        # Runs executing in this process, by run_id
        self._active: dict[str, _ActiveRun] = {}

        self._rollback = RollbackExecutor(
            source,
            destination,
            records,
            lock_manager,
            checkpoints,
            changelog_repository,
            runs,
            checkpoint_every=self._config.batch_size,
            lock_timeout=self._config.lock_timeout,
            tracer=self._tracer,
        )

    @property
    def config(self) -> MigrationConfig:
        return self._config

    @property
    def rollback_executor(self) -> RollbackExecutor:
        return self._rollback

    # -- control surface ----------------------------------------------------

    async def start(
        self,
        mode: RunMode = RunMode.LIVE,
        run_id: str | None = None,
        *,
        config: MigrationConfig | None = None,
    ) -> RunResult:
        """
        Start a new run and drive it to a terminal state.

        Args:
            mode: LIVE or DRY_RUN.
            run_id: Run identifier; generated when None.
            config: Configuration for this run; the orchestrator default
                when None.

        Returns:
            RunResult with the terminal status.

        Raises:
            InvalidRunIdError: If ``run_id`` has invalid characters.
            RunStateError: If a run with ``run_id`` already exists.
            MigrationAlreadyRunningError: If another run holds the lock.
            LockAcquisitionError: If the lock backend failed.
        """
        run_id = validate_run_id(run_id or new_run_id())
        config = config or self._config

        with self._tracer.span(
            "assetmigrate.orchestrator.start",
            {ATTR_RUN_ID: run_id, ATTR_RUN_MODE: mode.value},
        ):
            existing = await self._runs.get(run_id)
            if existing is not None:
                raise RunStateError(
                    f"Run {run_id} already exists; resume it instead",
                    run_id=run_id,
                    status=existing.status,
                    operation="start",
                )
            if mode is RunMode.DRY_RUN:
                return await self._dry_run(run_id, config)

            handle = await self._acquire(run_id, config)
            try:
                run = MigrationRun(run_id=run_id, mode=mode, config=config)
                await self._runs.create(run)
                logger.info(
                    "Started migration run %s (batch_size=%d, concurrency=%d)",
                    run_id,
                    config.batch_size,
                    config.max_concurrency,
                )
                active = self._activate(run, handle, checkpoint=None)
                return await self._drive(active)
            finally:
                self._active.pop(run_id, None)
                await self._lock_manager.release(handle)

    async def resume(self, run_id: str) -> RunResult:
        """
        Resume a crashed, failed or cancelled run from its checkpoint.

        Items after the checkpoint are processed again; the transfer finds
        the work already done for items whose completion the change log
        records, and those count as succeeded rather than skipped. A live
        lock left behind by this run is taken over.

        Raises:
            RunNotFoundError: If the run is unknown.
            RunStateError: If the run completed, was rolled back, is a dry
                run, or is already executing in this process.
            MigrationAlreadyRunningError: If another run holds the lock.
        """
        with self._tracer.span("assetmigrate.orchestrator.resume", {ATTR_RUN_ID: run_id}):
            run = await self._get_run(run_id)
            if run.is_dry_run:
                raise RunStateError(
                    f"Run {run_id} is a dry run; start a new one instead",
                    run_id=run_id,
                    status=run.status,
                    operation="resume",
                )
            if run.status in (RunStatus.COMPLETED, RunStatus.ROLLED_BACK):
                raise RunStateError(
                    f"Run {run_id} is {run.status.value} and cannot be resumed",
                    run_id=run_id,
                    status=run.status,
                    operation="resume",
                )
            if run_id in self._active:
                raise RunStateError(
                    f"Run {run_id} is already executing",
                    run_id=run_id,
                    status=run.status,
                    operation="resume",
                )

            handle = await self._acquire(run_id, run.config, takeover=True)
            try:
                await self._runs.clear_cancel(run_id)
                await self._checkpoints.delete(rollback_id(run_id))
                checkpoint = await self._checkpoints.load(run_id)
                phase = checkpoint.phase if checkpoint else RunPhase.DISCOVER
                run.resume(phase)
                if checkpoint is not None:
                    run.apply_checkpoint(checkpoint)
                else:
                    run.processed = run.succeeded = run.failed = run.skipped = 0
                await self._runs.save(run)

                active = self._activate(run, handle, checkpoint)
                if phase not in (RunPhase.DISCOVER, RunPhase.CATEGORIZE):
                    active.manifest = await self._runs.load_manifest(run_id)
                    run.items_total = len(active.manifest)
                if phase is RunPhase.TRANSFER and checkpoint is not None:
                    active.completed = await self._completed_since(active, checkpoint)

                logger.info(
                    "Resuming run %s in phase %s at offset %d (%d items already complete)",
                    run_id,
                    phase.value,
                    active.checkpoint.batch_offset,
                    len(active.completed),
                )
                return await self._drive(active)
            finally:
                self._active.pop(run_id, None)
                await self._lock_manager.release(handle)

    async def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a run.

        A run executing in this process stops at its next batch boundary.
        A run executing elsewhere sees the persisted flag at its next batch
        boundary. A RUNNING run that nobody executes (its process crashed
        and no live lock is held for it) is marked CANCELLED directly.

        Returns:
            False if the run already reached a terminal status.
        """
        run = await self._get_run(run_id)
        if run.is_terminal:
            return False

        await self._runs.request_cancel(run_id)
        active = self._active.get(run_id)
        if active is not None:
            active.cancel_event.set()
            logger.info("Cancellation requested for run %s", run_id)
            return True

        holder = await self._lock_manager.current_holder()
        if holder is None or holder.run_id != run_id:
            run.transition_to(RunPhase.CANCELLED)
            run.cancel_requested = True
            await self._runs.save(run)
            logger.warning("Run %s was not executing; marked cancelled", run_id)
        else:
            logger.info("Cancellation requested for run %s (held by %s)", run_id, holder.holder_id)
        return True

    async def status(self, run_id: str) -> RunStatusSnapshot:
        """
        Read-only status of a run: run record, checkpoint counters and the
        latest change-log sequence.
        """
        run = await self._get_run(run_id)
        checkpoint = await self._checkpoints.load(run_id)
        last_sequence = await self._changelog_repository.latest_sequence(run_id)
        counters = checkpoint if checkpoint is not None and not run.is_terminal else run
        return RunStatusSnapshot(
            run_id=run.run_id,
            status=run.status,
            phase=run.phase,
            mode=run.mode,
            items_total=run.items_total,
            processed=counters.processed,
            succeeded=counters.succeeded,
            failed=counters.failed,
            skipped=counters.skipped,
            batch_offset=checkpoint.batch_offset if checkpoint else 0,
            last_sequence=last_sequence,
            started_at=run.started_at,
            updated_at=run.updated_at,
            checkpoint_at=checkpoint.updated_at if checkpoint else None,
            cancel_requested=run.cancel_requested,
            error_message=run.error_message,
        )

    async def list_active_runs(self) -> list[RunStatusSnapshot]:
        """Status of every RUNNING run."""
        return [await self.status(run.run_id) for run in await self._runs.list_active()]

    async def rollback(
        self,
        run_id: str,
        to_sequence: int | None = None,
        *,
        dry_run: bool = False,
        phases: Collection[RunPhase] | None = None,
        continue_on_error: bool = False,
    ) -> RollbackResult:
        """
        Roll back a run. See RollbackExecutor.rollback.

        Raises:
            RollbackRefusedError: If the run is executing or the lock is held.
        """
        if run_id in self._active:
            raise RollbackRefusedError(
                f"Run {run_id} is executing in this process",
                run_id=run_id,
                operation="rollback",
            )
        return await self._rollback.rollback(
            run_id,
            to_sequence,
            dry_run=dry_run,
            phases=phases,
            continue_on_error=continue_on_error,
        )

    async def prune_checkpoints(self, now: datetime | None = None) -> int:
        """Delete checkpoints whose retention window has elapsed."""
        pruned = await self._checkpoints.prune(now or utc_now())
        if pruned:
            logger.info("Pruned %d expired checkpoints", pruned)
        return pruned

    async def prune_changelog(self, run_id: str) -> int:
        """
        Delete a run's change log.

        Only allowed for completed runs whose verification found no
        mismatches; afterwards the run can no longer be rolled back.

        Raises:
            RunStateError: If the run is not completed and verified.
        """
        run = await self._get_run(run_id)
        if run.status is not RunStatus.COMPLETED:
            raise RunStateError(
                f"Run {run_id} is {run.status.value}; only completed runs can be pruned",
                run_id=run_id,
                status=run.status,
                operation="prune_changelog",
            )
        if run.verification is None or not run.verification.is_consistent:
            raise RunStateError(
                f"Run {run_id} has no consistent verification report",
                run_id=run_id,
                status=run.status,
                operation="prune_changelog",
            )
        deleted = await self._changelog_repository.delete_run(run_id)
        logger.info("Pruned %d change-log entries of run %s", deleted, run_id)
        return deleted

    # -- run driver ---------------------------------------------------------

    async def _acquire(
        self, run_id: str, config: MigrationConfig, *, takeover: bool = False
    ) -> LockHandle:
        result = await self._lock_manager.acquire(
            run_id, LockMode.EXCLUSIVE, timeout=config.lock_timeout, takeover=takeover
        )
        if result.handle is not None:
            return result.handle
        if result.busy:
            raise MigrationAlreadyRunningError(
                run_id, result.holder.holder_id if result.holder else None
            )
        raise LockAcquisitionError(
            self._lock_manager.lock_name,
            result.error or "lock backend error",
            run_id=run_id,
        )

    def _activate(
        self,
        run: MigrationRun,
        handle: LockHandle,
        checkpoint: Checkpoint | None,
    ) -> _ActiveRun:
        config = run.config
        checkpoint = checkpoint or Checkpoint(
            run_id=run.run_id,
            phase=run.phase,
            retention_until=utc_now() + config.retention,
        )
        active = _ActiveRun(
            run=run,
            handle=handle,
            changelog=ChangeLog(
                self._changelog_repository,
                run.run_id,
                flush_every=config.changelog_flush_every,
                phase=run.phase,
                tracer=self._tracer,
            ),
            checkpoint=checkpoint,
            budget=ErrorBudget.from_checkpoint(config.error_budget, checkpoint),
            failed_ids=list(checkpoint.failed_item_ids),
        )
        self._active[run.run_id] = active
        return active

    async def _drive(self, active: _ActiveRun) -> RunResult:
        run = active.run
        config = run.config
        with self._tracer.span(
            "assetmigrate.orchestrator.run",
            {ATTR_RUN_ID: run.run_id, ATTR_RUN_PHASE: run.phase.value},
        ) as span:
            try:
                if run.phase is RunPhase.PENDING:
                    await self._advance(active, RunPhase.DISCOVER)

                if run.phase in (RunPhase.DISCOVER, RunPhase.CATEGORIZE):
                    await self._discover_and_categorize(active)

                if run.phase is RunPhase.TRANSFER:
                    if not await self._transfer(active):
                        await self._advance(active, RunPhase.CANCELLED)
                        logger.info(
                            "Run %s cancelled at offset %d",
                            run.run_id,
                            active.checkpoint.batch_offset,
                        )
                        return await self._result(active)
                    next_phase = (
                        RunPhase.FINALIZE
                        if config.verify_mode is VerifyMode.NONE
                        else RunPhase.VERIFY
                    )
                    await self._advance(active, next_phase)
                    await self._save_checkpoint(active)

                if run.phase is RunPhase.VERIFY:
                    if not await self._verify(active):
                        return await self._result(active)
                    await self._advance(active, RunPhase.FINALIZE)
                    await self._save_checkpoint(active)

                if run.phase is RunPhase.FINALIZE:
                    await self._finalize(active)
                    await self._advance(active, RunPhase.COMPLETED)
                    logger.info(
                        "Run %s completed: %d succeeded, %d failed, %d skipped",
                        run.run_id,
                        run.succeeded,
                        run.failed,
                        run.skipped,
                    )
            except Exception as e:
                await self._fail(active, e)

            if span is not None:
                span.set_attribute(ATTR_RUN_STATUS, active.run.status.value)
                span.set_attribute(ATTR_ITEMS_PROCESSED, active.run.processed)
                span.set_attribute(ATTR_ITEMS_FAILED, active.run.failed)
            return await self._result(active)

    async def _advance(self, active: _ActiveRun, phase: RunPhase) -> None:
        run = active.run
        previous = run.phase
        run.transition_to(phase)
        await active.changelog.set_phase(phase)
        await self._runs.save(run)
        logger.info("Run %s: %s -> %s", run.run_id, previous.value, phase.value)

    async def _discover_and_categorize(self, active: _ActiveRun) -> None:
        run = active.run
        with self._tracer.span("assetmigrate.orchestrator.discover", {ATTR_RUN_ID: run.run_id}):
            discovery = await discover(self._records, self._source, run.config)
        if run.phase is RunPhase.DISCOVER:
            await self._advance(active, RunPhase.CATEGORIZE)

        manifest = Categorizer(run.config).categorize(discovery.assets)
        await self._runs.save_manifest(run.run_id, manifest)
        active.manifest = manifest
        run.items_total = len(manifest)
        await self._advance(active, RunPhase.TRANSFER)
        await self._save_checkpoint(active, batch_offset=0, batches_completed=0)

    async def _completed_since(self, active: _ActiveRun, checkpoint: Checkpoint) -> set[str]:
        remaining = active.manifest[checkpoint.batch_offset :]
        entries = [e async for e in active.changelog.stream_since(checkpoint.last_sequence)]
        return completed_item_ids(remaining, entries)

    async def _cancel_requested(self, active: _ActiveRun) -> bool:
        if active.cancel_event.is_set():
            return True
        return await self._runs.is_cancel_requested(active.run.run_id)

    async def _transfer(self, active: _ActiveRun) -> bool:
        """
        Run the remaining transfer batches.

        Returns:
            False if the run was cancelled at a batch boundary.

        Raises:
            ErrorBudgetExceededError: When the budget ran out.
            MigrationError: For run-fatal item errors.
        """
        run = active.run
        config = run.config
        transfer = ItemTransfer(
            self._source,
            self._destination,
            self._records,
            config,
            active.changelog,
            run_id=run.run_id,
            error_handler=self._error_handler,
            tracer=self._tracer,
        )
        limiter = RateLimiter(config.max_items_per_second)
        offset = active.checkpoint.batch_offset
        batches = active.checkpoint.batches_completed
        since_checkpoint = 0

        while offset < len(active.manifest):
            if await self._cancel_requested(active):
                if since_checkpoint:
                    await self._save_checkpoint(
                        active, batch_offset=offset, batches_completed=batches
                    )
                return False
            active.handle = await self._lock_manager.heartbeat(active.handle)

            batch = active.manifest[offset : offset + config.batch_size]
            with self._tracer.span(
                "assetmigrate.orchestrator.batch",
                {
                    ATTR_RUN_ID: run.run_id,
                    ATTR_BATCH_OFFSET: offset,
                    ATTR_BATCH_SIZE: len(batch),
                },
            ):
                await self._run_batch(active, transfer, limiter, batch)

            if active.fatal_error is not None:
                raise active.fatal_error
            if active.budget.exhausted:
                raise active.budget.to_error()

            offset += len(batch)
            batches += 1
            since_checkpoint += 1
            if since_checkpoint >= config.checkpoint_every_batches or offset >= len(
                active.manifest
            ):
                await self._save_checkpoint(
                    active, batch_offset=offset, batches_completed=batches
                )
                since_checkpoint = 0
            await self._runs.save(run)
            logger.debug(
                "Run %s: batch %d done, %d/%d items processed",
                run.run_id,
                batches,
                run.processed,
                run.items_total,
            )
        return True

    async def _run_batch(
        self,
        active: _ActiveRun,
        transfer: ItemTransfer,
        limiter: RateLimiter,
        batch: list[WorkItem],
    ) -> None:
        """
        Process one batch with at most ``max_concurrency`` items in flight.

        Items are started in manifest order and nothing new starts once the
        budget is exhausted or a run-fatal error was seen; items already in
        flight finish normally.
        """
        semaphore = asyncio.Semaphore(active.run.config.max_concurrency)
        tasks: list[asyncio.Task[None]] = []
        try:
            for item in batch:
                await semaphore.acquire()
                if active.budget.exhausted or active.fatal_error is not None:
                    semaphore.release()
                    break
                await limiter.wait()
                tasks.append(
                    asyncio.create_task(
                        self._process(active, transfer, item, semaphore),
                        name=f"transfer_{item.item_id}",
                    )
                )
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _process(
        self,
        active: _ActiveRun,
        transfer: ItemTransfer,
        item: WorkItem,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            result = await transfer.process(item)
            self._record(active, item, result)
        finally:
            semaphore.release()

    def _record(self, active: _ActiveRun, item: WorkItem, result: ItemResult) -> None:
        run = active.run
        outcome = result.outcome
        if outcome is ItemOutcome.SKIPPED and item.item_id in active.completed:
            # finished by this run before it was interrupted
            outcome = ItemOutcome.SUCCEEDED
        run.processed += 1
        if outcome is ItemOutcome.SUCCEEDED:
            run.succeeded += 1
        elif outcome is ItemOutcome.SKIPPED:
            run.skipped += 1
        else:
            run.failed += 1
            active.failed_ids.append(item.item_id)
            logger.warning(
                "Item %s of run %s failed after %d attempts: %s",
                item.item_id,
                run.run_id,
                result.attempts,
                result.error,
            )
            if result.is_run_fatal and active.fatal_error is None:
                active.fatal_error = result.error
        active.budget.record(outcome)

    async def _save_checkpoint(self, active: _ActiveRun, **changes: object) -> None:
        """Flush the change log, then durably save progress."""
        run = active.run
        await active.changelog.flush()
        last_sequence = await active.changelog.latest_sequence()
        checkpoint = active.checkpoint.advance(
            phase=run.phase,
            processed=run.processed,
            succeeded=run.succeeded,
            failed=run.failed,
            skipped=run.skipped,
            last_sequence=last_sequence,
            consecutive_failures=active.budget.consecutive_failures,
            failed_item_ids=tuple(active.failed_ids),
            retention_until=utc_now() + run.config.retention,
            **changes,
        )
        await self._checkpoints.save(checkpoint)
        active.checkpoint = checkpoint
        logger.debug(
            "Checkpoint for run %s: phase=%s offset=%d sequence=%d",
            run.run_id,
            checkpoint.phase.value,
            checkpoint.batch_offset,
            checkpoint.last_sequence,
        )

    async def _verify(self, active: _ActiveRun) -> bool:
        """
        Run the verify phase.

        Returns:
            False if the run was rolled back by the automatic rollback policy.
        """
        run = active.run
        verifier = Verifier(self._source, self._destination, run.config, tracer=self._tracer)
        report = await verifier.verify(run.run_id, active.manifest, set(active.failed_ids))
        run.verification = report
        await self._runs.save(run)

        if report.is_consistent or not run.config.rollback_on_verification_failure:
            if not report.is_consistent:
                logger.warning(
                    "Run %s has %d verification mismatches; leaving them for operator review",
                    run.run_id,
                    len(report.mismatches),
                )
            return True

        logger.warning(
            "Run %s failed verification; rolling back automatically", run.run_id
        )
        await self._advance(active, RunPhase.ROLLBACK)
        await active.changelog.flush()
        result = await self._rollback.rollback(run.run_id, handle=active.handle)
        refreshed = await self._get_run(run.run_id)
        active.run = refreshed
        if not result.complete:
            refreshed.error_code = "ROLLBACK_FAILED"
            refreshed.error_message = "; ".join(result.errors) or "automatic rollback incomplete"
            refreshed.transition_to(RunPhase.FAILED)
            await self._runs.save(refreshed)
        return False

    async def _finalize(self, active: _ActiveRun) -> None:
        run = active.run
        for switch in run.config.filesystem_switches:
            record = await self._records.get(switch.record_id)
            if record is None:
                raise RecordNotFoundError(switch.record_id)
            previous = record.get(switch.field)
            if previous == switch.value:
                continue
            await self._records.update(switch.record_id, {switch.field: switch.value})
            await active.changelog.append(
                ChangeType.FILESYSTEM_SWITCHED,
                {
                    "record_id": switch.record_id,
                    "field": switch.field,
                    "previous": previous,
                    "value": switch.value,
                },
            )
            logger.info(
                "Switched %s.%s from %r to %r", switch.record_id, switch.field, previous, switch.value
            )
        await self._save_checkpoint(active)

    async def _fail(self, active: _ActiveRun, error: Exception) -> None:
        run = active.run
        classification = classify_exception(error)
        logger.error(
            "Run %s failed in phase %s: %s [code=%s]",
            run.run_id,
            run.phase.value,
            error,
            classification.error_code,
        )
        try:
            await active.changelog.flush()
        except ChangeLogFlushError as flush_error:
            logger.error(
                "Run %s: %d change-log entries could not be persisted: %s",
                run.run_id,
                active.changelog.pending_count,
                flush_error,
            )
        run.error_code = classification.error_code
        run.error_message = str(error)
        if not run.phase.is_terminal:
            run.transition_to(RunPhase.FAILED)
        await self._runs.save(run)

    async def _result(self, active: _ActiveRun) -> RunResult:
        last_sequence = await active.changelog.latest_sequence()
        return RunResult.from_run(active.run, last_sequence=last_sequence)

    # -- dry run ------------------------------------------------------------

    async def _dry_run(self, run_id: str, config: MigrationConfig) -> RunResult:
        """
        Discover, categorize and simulate the transfer without mutating.

        Storage and records are wrapped in read-only views, so any write
        attempt fails the run instead of changing state.
        """
        source = ReadOnlyStorageView(self._source)
        destination = ReadOnlyStorageView(self._destination)
        records = ReadOnlyRecordView(self._records)
        run = MigrationRun(run_id=run_id, mode=RunMode.DRY_RUN, config=config)
        await self._runs.create(run)
        report: DryRunReport | None = None

        try:
            run.transition_to(RunPhase.DISCOVER)
            discovery = await discover(records, source, config)
            run.transition_to(RunPhase.CATEGORIZE)
            manifest = Categorizer(config).categorize(discovery.assets)
            run.items_total = len(manifest)
            run.transition_to(RunPhase.TRANSFER)

            would_transfer = would_skip = would_conflict = total_bytes = 0
            for item in manifest:
                run.processed += 1
                if item.action is ItemAction.SKIP:
                    would_skip += 1
                    run.skipped += 1
                    continue
                if item.action is ItemAction.DELETE_SOURCE:
                    run.succeeded += 1
                    continue
                source_info = await source.stat(item.source_path)
                existing = await destination.stat(item.destination_path)
                if source_info is None and existing is None:
                    # Source vanished since discovery
                    run.failed += 1
                elif existing is None:
                    would_transfer += 1
                    total_bytes += source_info.size
                    run.succeeded += 1
                elif source_info is None or existing.content_hash == source_info.content_hash:
                    would_skip += 1
                    run.skipped += 1
                else:
                    would_conflict += 1
                    run.failed += 1

            report = DryRunReport(
                items_total=len(manifest),
                by_category=count_by_category(manifest),
                by_action=count_by_action(manifest),
                would_transfer=would_transfer,
                would_skip=would_skip,
                would_conflict=would_conflict,
                total_bytes=total_bytes,
                missing_sources=tuple(discovery.missing_sources),
            )
            run.transition_to(RunPhase.FINALIZE)
            run.transition_to(RunPhase.COMPLETED)
            logger.info(
                "Dry run %s: %d items, %d would transfer (%d bytes), %d would skip, "
                "%d conflicts",
                run_id,
                report.items_total,
                would_transfer,
                total_bytes,
                would_skip,
                would_conflict,
            )
        except Exception as e:
            classification = classify_exception(e)
            logger.error("Dry run %s failed: %s [code=%s]", run_id, e, classification.error_code)
            run.error_code = classification.error_code
            run.error_message = str(e)
            run.transition_to(RunPhase.FAILED)

        await self._runs.save(run)
        return RunResult.from_run(run, dry_run_report=report)

    async def _get_run(self, run_id: str) -> MigrationRun:
        run = await self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run


__all__ = ["MigrationOrchestrator", "new_run_id"]
