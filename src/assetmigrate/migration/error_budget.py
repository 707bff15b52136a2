"""
Error budget for one migration run.

Counts item outcomes and decides when failures are frequent enough to
abort the run. Individual item retries happen before an outcome reaches
the budget; the budget only ever sees final outcomes.
"""

from __future__ import annotations

import logging

from assetmigrate.migration.exceptions import ErrorBudgetExceededError
from assetmigrate.migration.models import Checkpoint, ErrorBudgetConfig, ItemOutcome

logger = logging.getLogger(__name__)


class ErrorBudget:
    """
    Consecutive-failure and failure-ratio thresholds.

    The budget is exhausted when:
    - ``consecutive_failures >= max_consecutive_failures``, or
    - at least ``ratio_min_items`` items were processed and
      ``failed / processed > max_failure_ratio``, or
    - ``max_total_failures`` is set and reached.

    A succeeded or skipped item resets the consecutive count.

    Outcomes are recorded from coroutines on one event loop without awaiting
    in between, so no lock is needed.

    Example:
        >>> budget = ErrorBudget(ErrorBudgetConfig(max_consecutive_failures=5), "run-1")
        >>> for _ in range(5):
        ...     budget.record(ItemOutcome.FAILED)
        >>> budget.exhausted
        True
    """

    def __init__(
        self,
        config: ErrorBudgetConfig,
        run_id: str,
        *,
        consecutive_failures: int = 0,
        failed: int = 0,
        processed: int = 0,
    ) -> None:
        self.config = config
        self.run_id = run_id
        self._consecutive = consecutive_failures
        self._failed = failed
        self._processed = processed
        self._exhausted_reason: str | None = None
        self._evaluate()

    @classmethod
    def from_checkpoint(
        cls,
        config: ErrorBudgetConfig,
        checkpoint: Checkpoint,
    ) -> ErrorBudget:
        """Restore budget state saved in a checkpoint."""
        return cls(
            config,
            checkpoint.run_id,
            consecutive_failures=checkpoint.consecutive_failures,
            failed=checkpoint.failed,
            processed=checkpoint.processed,
        )

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def failure_ratio(self) -> float:
        if self._processed == 0:
            return 0.0
        return self._failed / self._processed

    @property
    def exhausted(self) -> bool:
        return self._exhausted_reason is not None

    @property
    def reason(self) -> str | None:
        return self._exhausted_reason

    def record(self, outcome: ItemOutcome) -> bool:
        """
        Record one final item outcome.

        Returns:
            True if this outcome exhausted the budget.
        """
        was_exhausted = self.exhausted
        self._processed += 1
        if outcome is ItemOutcome.FAILED:
            self._failed += 1
            self._consecutive += 1
        else:
            self._consecutive = 0
        self._evaluate()

        if self.exhausted and not was_exhausted:
            logger.error(
                "Error budget exhausted for run %s: %s",
                self.run_id,
                self._exhausted_reason,
            )
            return True
        return False

    def _evaluate(self) -> None:
        if self._exhausted_reason is not None:
            return
        cfg = self.config
        if self._consecutive >= cfg.max_consecutive_failures:
            self._exhausted_reason = (
                f"{self._consecutive} consecutive failures "
                f"(limit {cfg.max_consecutive_failures})"
            )
        elif (
            self._processed >= cfg.ratio_min_items
            and self.failure_ratio > cfg.max_failure_ratio
        ):
            self._exhausted_reason = (
                f"failure ratio {self.failure_ratio:.2f} exceeds {cfg.max_failure_ratio:.2f} "
                f"after {self._processed} items"
            )
        elif cfg.max_total_failures is not None and self._failed >= cfg.max_total_failures:
            self._exhausted_reason = (
                f"{self._failed} failed items (limit {cfg.max_total_failures})"
            )

    def to_error(self) -> ErrorBudgetExceededError:
        return ErrorBudgetExceededError(
            self.run_id,
            self._exhausted_reason or "budget exhausted",
            consecutive_failures=self._consecutive,
            failed=self._failed,
            processed=self._processed,
        )


__all__ = ["ErrorBudget"]
