"""
System-wide migration lock.

The lock is a single durable record with owner, acquisition time and
expiry. Every acquisition attempt is one compare-and-swap against the
backing store: a concurrent acquirer either finds no live record and
writes its own, or finds a live record and loses. Backends implement the
swap; this module implements everything around it (the bounded retry
loop with jittered backoff, stale-lock reclaim logging, contention versus
error handling, heartbeat, release).

Usage:
    >>> manager = InMemoryLockManager()
    >>> result = await manager.acquire("run-1", LockMode.EXCLUSIVE, timeout=3.0)
    >>> if result.acquired:
    ...     try:
    ...         await manager.heartbeat(result.handle)
    ...     finally:
    ...         await manager.release(result.handle)
    >>>
    >>> async with manager.hold("run-1") as handle:
    ...     ...
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from assetmigrate.migration.exceptions import (
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    FailureKind,
    LockAcquisitionError,
    LockLostError,
)
from assetmigrate.migration.models import utc_now
from assetmigrate.observability import (
    ATTR_LOCK_ATTEMPTS,
    ATTR_LOCK_HOLDER,
    ATTR_LOCK_MODE,
    ATTR_LOCK_NAME,
    ATTR_LOCK_STATUS,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "asset_migration"


class LockMode(Enum):
    """Requested lock mode."""

    EXCLUSIVE = "exclusive"
    """Required by every state-mutating run."""

    DRY_RUN = "dry_run"
    """Exempt from locking; acquisition never touches the backing store."""


class AcquireStatus(Enum):
    ACQUIRED = "acquired"
    BUSY = "busy"
    ERROR = "error"


@dataclass(frozen=True)
class LockRecord:
    """
    The durable lock record.

    Attributes:
        lock_name: Name of the lock (one record per name).
        run_id: Run holding the lock.
        holder_id: ``run_id:host:pid`` of the holding process.
        mode: Lock mode.
        acquired_at: When the lock was acquired.
        heartbeat_at: Last heartbeat.
        expires_at: The lock is stale after this instant.
    """

    lock_name: str
    run_id: str
    holder_id: str
    mode: LockMode
    acquired_at: datetime
    heartbeat_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "lock_name": self.lock_name,
            "run_id": self.run_id,
            "holder_id": self.holder_id,
            "mode": self.mode.value,
            "acquired_at": self.acquired_at.isoformat(),
            "heartbeat_at": self.heartbeat_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class LockHandle:
    """
    What a holder keeps after acquiring the lock.

    Dry-run handles are no-ops: they were never written to the backing store.
    """

    lock_name: str
    run_id: str
    holder_id: str
    mode: LockMode
    acquired_at: datetime
    expires_at: datetime

    @property
    def is_noop(self) -> bool:
        return self.mode is LockMode.DRY_RUN


@dataclass(frozen=True)
class AcquireAttempt:
    """
    Result of one compare-and-swap attempt by a backend.

    Attributes:
        acquired: True if the candidate record was written.
        current: The record that holds the lock after the attempt.
        reclaimed: The stale record that was replaced, if any.
        taken_over: The live record of the same run that was replaced, if any.
    """

    acquired: bool
    current: LockRecord | None
    reclaimed: LockRecord | None = None
    taken_over: LockRecord | None = None


@dataclass(frozen=True)
class LockAcquireResult:
    """
    Result of ``LockManager.acquire``: a handle, Busy, or Error.

    Attributes:
        status: ACQUIRED, BUSY or ERROR.
        handle: The handle when acquired.
        holder: The current holder's record when busy.
        error: Error message when status is ERROR.
        classification: Classification of the error.
        attempts: Attempts made.
    """

    status: AcquireStatus
    handle: LockHandle | None = None
    holder: LockRecord | None = None
    error: str | None = None
    classification: ErrorClassification | None = None
    attempts: int = 1

    @property
    def acquired(self) -> bool:
        return self.status is AcquireStatus.ACQUIRED

    @property
    def busy(self) -> bool:
        return self.status is AcquireStatus.BUSY


LOCK_ERROR_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.ERROR,
    recoverability=ErrorRecoverability.FATAL,
    error_code="LOCK_BACKEND_ERROR",
    category="lock",
    suggested_action="Check the lock table's database",
    kind=FailureKind.RUN_FATAL,
)


def default_holder_suffix() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class LockManager(ABC):
    """
    Base class for migration lock managers.

    Subclasses implement the atomic primitives against their backing store:
    ``_try_acquire``, ``_refresh``, ``_delete``, ``_read`` and
    ``_is_contention_error``.

    Args:
        lock_name: Name of the system-wide lock.
        ttl_seconds: Lifetime of a lock without heartbeats.
        retry_interval: Base sleep between attempts; jittered.
        max_error_retries: Attempts allowed for non-contention errors.
        acquire_timeout: Default time to wait for a busy lock.
        holder_suffix: ``host:pid`` part of the holder id.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer if none is given.
    """

    def __init__(
        self,
        *,
        lock_name: str = DEFAULT_LOCK_NAME,
        ttl_seconds: float = 3600.0,
        retry_interval: float = 0.5,
        max_error_retries: int = 3,
        acquire_timeout: float = 3.0,
        holder_suffix: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")
        if retry_interval < 0:
            raise ValueError(f"retry_interval must be >= 0, got {retry_interval}")
        if max_error_retries < 0:
            raise ValueError(f"max_error_retries must be >= 0, got {max_error_retries}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.lock_name = lock_name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.retry_interval = retry_interval
        self.max_error_retries = max_error_retries
        self.acquire_timeout = acquire_timeout
        self._holder_suffix = holder_suffix or default_holder_suffix()

    def holder_id_for(self, run_id: str) -> str:
        return f"{run_id}:{self._holder_suffix}"

    # -- backend primitives -------------------------------------------------

    @abstractmethod
    async def _try_acquire(
        self, candidate: LockRecord, now: datetime, takeover: bool
    ) -> AcquireAttempt:
        """
        Atomically write ``candidate`` unless a live record exists.

        Must be a single transaction: no read-then-write race. Replaces a
        record that is expired at ``now``, or, when ``takeover`` is set, a
        live record that belongs to ``candidate.run_id``.
        """
        ...

    @abstractmethod
    async def _refresh(self, holder_id: str, now: datetime, expires_at: datetime) -> bool:
        """Extend the record owned by ``holder_id``; False if not the owner."""
        ...

    @abstractmethod
    async def _delete(self, holder_id: str) -> bool:
        """Delete the record if owned by ``holder_id``."""
        ...

    @abstractmethod
    async def _read(self) -> LockRecord | None:
        """Read the lock record, live or expired."""
        ...

    def _is_contention_error(self, error: BaseException) -> bool:
        """True if ``error`` is the backing store's own lock conflict."""
        return False

    # -- public API ---------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        base = self.retry_interval * min(attempt, 4)
        return base * (0.5 + random.random())  # nosec B311 - backoff jitter, not security

    async def acquire(
        self,
        run_id: str,
        mode: LockMode = LockMode.EXCLUSIVE,
        timeout: float | None = None,
        *,
        takeover: bool = False,
    ) -> LockAcquireResult:
        """
        Acquire the lock for ``run_id``.

        Dry-run mode returns a no-op handle immediately. Exclusive mode
        retries with jittered backoff until ``timeout`` elapses:
        - an expired record is reclaimed, with a warning;
        - a live record of another holder is Busy, even for the same run,
          unless ``takeover`` is set (resume after restart), in which case
          a live record of the same run is replaced;
        - contention errors from the backing store are retried until the deadline;
        - other errors are retried ``max_error_retries`` times, then Error.

        Args:
            run_id: Run requesting the lock.
            mode: EXCLUSIVE or DRY_RUN.
            timeout: Seconds to wait; defaults to ``acquire_timeout``.
            takeover: Replace a live record held by the same run.

        Returns:
            LockAcquireResult with status ACQUIRED, BUSY or ERROR.
        """
        holder_id = self.holder_id_for(run_id)
        if mode is LockMode.DRY_RUN:
            now = utc_now()
            return LockAcquireResult(
                status=AcquireStatus.ACQUIRED,
                handle=LockHandle(
                    lock_name=self.lock_name,
                    run_id=run_id,
                    holder_id=holder_id,
                    mode=mode,
                    acquired_at=now,
                    expires_at=now + self.ttl,
                ),
                attempts=0,
            )

        timeout = self.acquire_timeout if timeout is None else timeout
        with self._tracer.span(
            "assetmigrate.lock_manager.acquire",
            {
                ATTR_LOCK_NAME: self.lock_name,
                ATTR_RUN_ID: run_id,
                ATTR_LOCK_HOLDER: holder_id,
                ATTR_LOCK_MODE: mode.value,
            },
        ) as span:
            result = await self._acquire_loop(run_id, holder_id, mode, timeout, takeover)
            if span is not None:
                span.set_attribute(ATTR_LOCK_STATUS, result.status.value)
                span.set_attribute(ATTR_LOCK_ATTEMPTS, result.attempts)
            return result

    async def _acquire_loop(
        self,
        run_id: str,
        holder_id: str,
        mode: LockMode,
        timeout: float,
        takeover: bool,
    ) -> LockAcquireResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempts = 0
        error_attempts = 0
        last_holder: LockRecord | None = None

        while True:
            attempts += 1
            now = utc_now()
            candidate = LockRecord(
                lock_name=self.lock_name,
                run_id=run_id,
                holder_id=holder_id,
                mode=mode,
                acquired_at=now,
                heartbeat_at=now,
                expires_at=now + self.ttl,
            )
            try:
                attempt = await self._try_acquire(candidate, now, takeover)
            except Exception as e:
                if self._is_contention_error(e):
                    logger.debug(
                        "Lock '%s' contention on attempt %d for %s: %s",
                        self.lock_name,
                        attempts,
                        holder_id,
                        e,
                    )
                else:
                    error_attempts += 1
                    if error_attempts > self.max_error_retries:
                        logger.error(
                            "Giving up on lock '%s' for %s after %d errors: %s",
                            self.lock_name,
                            holder_id,
                            error_attempts,
                            e,
                        )
                        return LockAcquireResult(
                            status=AcquireStatus.ERROR,
                            error=str(e),
                            classification=LOCK_ERROR_CLASSIFICATION,
                            attempts=attempts,
                        )
                    logger.warning(
                        "Error acquiring lock '%s' (attempt %d/%d): %s",
                        self.lock_name,
                        error_attempts,
                        self.max_error_retries,
                        e,
                    )
                    await asyncio.sleep(self._backoff(error_attempts))
                    continue
            else:
                if attempt.acquired:
                    return self._acquired(candidate, attempt, attempts)
                last_holder = attempt.current
                logger.debug(
                    "Lock '%s' busy, held by %s (attempt %d)",
                    self.lock_name,
                    last_holder.holder_id if last_holder else "unknown",
                    attempts,
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                return LockAcquireResult(
                    status=AcquireStatus.BUSY,
                    holder=last_holder,
                    attempts=attempts,
                )
            await asyncio.sleep(min(self._backoff(attempts), remaining))

    def _acquired(
        self,
        record: LockRecord,
        attempt: AcquireAttempt,
        attempts: int,
    ) -> LockAcquireResult:
        if attempt.reclaimed is not None:
            logger.warning(
                "Reclaimed stale lock '%s' from %s (expired at %s) for %s",
                self.lock_name,
                attempt.reclaimed.holder_id,
                attempt.reclaimed.expires_at.isoformat(),
                record.holder_id,
            )
        elif attempt.taken_over is not None:
            logger.warning(
                "Run %s took over its own lock '%s' from %s",
                record.run_id,
                self.lock_name,
                attempt.taken_over.holder_id,
            )
        logger.info("Acquired lock '%s' for %s", self.lock_name, record.holder_id)
        return LockAcquireResult(
            status=AcquireStatus.ACQUIRED,
            handle=LockHandle(
                lock_name=record.lock_name,
                run_id=record.run_id,
                holder_id=record.holder_id,
                mode=record.mode,
                acquired_at=record.acquired_at,
                expires_at=record.expires_at,
            ),
            attempts=attempts,
        )

    async def release(self, handle: LockHandle) -> bool:
        """
        Release the lock held through ``handle``.

        Returns:
            True if a record owned by the handle was deleted.
        """
        if handle.is_noop:
            return True
        with self._tracer.span(
            "assetmigrate.lock_manager.release",
            {ATTR_LOCK_NAME: self.lock_name, ATTR_LOCK_HOLDER: handle.holder_id},
        ):
            deleted = await self._delete(handle.holder_id)
            if deleted:
                logger.info("Released lock '%s' held by %s", self.lock_name, handle.holder_id)
            else:
                logger.warning(
                    "Lock '%s' was not held by %s at release",
                    self.lock_name,
                    handle.holder_id,
                )
            return deleted

    async def heartbeat(self, handle: LockHandle) -> LockHandle:
        """
        Extend the lock's expiry by the TTL.

        Returns:
            The handle with the new expiry.

        Raises:
            LockLostError: If the record no longer belongs to the handle.
        """
        if handle.is_noop:
            return handle
        with self._tracer.span(
            "assetmigrate.lock_manager.heartbeat",
            {ATTR_LOCK_NAME: self.lock_name, ATTR_LOCK_HOLDER: handle.holder_id},
        ):
            now = utc_now()
            expires_at = now + self.ttl
            if not await self._refresh(handle.holder_id, now, expires_at):
                raise LockLostError(self.lock_name, handle.holder_id, run_id=handle.run_id)
            logger.debug("Heartbeat for lock '%s' by %s", self.lock_name, handle.holder_id)
            return replace(handle, expires_at=expires_at)

    async def current_holder(self) -> LockRecord | None:
        """The live lock record, or None if the lock is free or stale."""
        record = await self._read()
        if record is None or record.is_expired():
            return None
        return record

    async def is_held(self, handle: LockHandle | None = None) -> bool:
        """
        Check the lock.

        Args:
            handle: If given, check that this handle still owns the lock.
                Otherwise check whether anyone holds a live lock.
        """
        record = await self.current_holder()
        if record is None:
            return False
        if handle is None:
            return True
        return record.holder_id == handle.holder_id

    @asynccontextmanager
    async def hold(
        self,
        run_id: str,
        mode: LockMode = LockMode.EXCLUSIVE,
        timeout: float | None = None,
    ) -> AsyncIterator[LockHandle]:
        """
        Acquire the lock as a context manager; always released on exit.

        Raises:
            LockAcquisitionError: If the lock is busy or acquisition errored.
        """
        result = await self.acquire(run_id, mode, timeout)
        if result.handle is None:
            if result.busy:
                raise LockAcquisitionError(
                    self.lock_name,
                    "held by another run",
                    run_id=run_id,
                    holder_id=result.holder.holder_id if result.holder else None,
                    busy=True,
                )
            raise LockAcquisitionError(self.lock_name, result.error or "error", run_id=run_id)
        try:
            yield result.handle
        finally:
            await self.release(result.handle)


__all__ = [
    "DEFAULT_LOCK_NAME",
    "LockMode",
    "AcquireStatus",
    "LockRecord",
    "LockHandle",
    "AcquireAttempt",
    "LockAcquireResult",
    "LockManager",
    "LOCK_ERROR_CLASSIFICATION",
    "default_holder_suffix",
]
