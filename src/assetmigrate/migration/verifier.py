"""
Verify phase.

Compares destination objects against their sources by size and, when
``verify_hash`` is set, SHA-256. Mismatches are reported, never
corrected; items that failed during transfer are excluded.

Modes:
    - NONE: nothing is checked
    - SAMPLE: a deterministic sample of ``verify_sample_size`` items,
      seeded by the run id so repeated verification checks the same items
    - FULL: every transferred item
"""

from __future__ import annotations

import logging
import random
from collections.abc import Collection, Sequence

from assetmigrate.migration.models import (
    ItemAction,
    ItemMismatch,
    MigrationConfig,
    VerificationReport,
    VerifyMode,
    WorkItem,
)
from assetmigrate.observability import (
    ATTR_ITEM_COUNT,
    ATTR_ITEM_ID,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
    traced,
)
from assetmigrate.storage.interface import StorageProvider

logger = logging.getLogger(__name__)


class Verifier:
    """
    Checks destination objects of a run.

    Example:
        >>> verifier = Verifier(source, destination, config)
        >>> report = await verifier.verify("run-1", manifest, failed_ids)
        >>> report.is_consistent
        True
    """

    def __init__(
        self,
        source: StorageProvider,
        destination: StorageProvider,
        config: MigrationConfig,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._destination = destination
        self._config = config

    def select(
        self,
        run_id: str,
        items: Sequence[WorkItem],
        failed_item_ids: Collection[str] = (),
    ) -> tuple[list[WorkItem], int]:
        """
        Choose the items to check.

        Returns:
            The selected items in manifest order, and the number of
            transferable items excluded because they failed.
        """
        transferable = [i for i in items if i.action is ItemAction.TRANSFER]
        candidates = [i for i in transferable if i.item_id not in failed_item_ids]
        excluded = len(transferable) - len(candidates)
        mode = self._config.verify_mode
        if mode is VerifyMode.NONE:
            return [], excluded
        if mode is VerifyMode.FULL or len(candidates) <= self._config.verify_sample_size:
            return candidates, excluded
        rng = random.Random(run_id)  # nosec B311 - sampling, not security
        chosen = set(rng.sample(range(len(candidates)), self._config.verify_sample_size))
        return [item for index, item in enumerate(candidates) if index in chosen], excluded

    async def verify(
        self,
        run_id: str,
        items: Sequence[WorkItem],
        failed_item_ids: Collection[str] = (),
    ) -> VerificationReport:
        """
        Verify the run's destination objects.

        Args:
            run_id: Run identifier; seeds the sample.
            items: The run's manifest.
            failed_item_ids: Items to exclude.
        """
        selected, excluded = self.select(run_id, items, failed_item_ids)
        with self._tracer.span(
            "assetmigrate.verifier.verify",
            {ATTR_RUN_ID: run_id, ATTR_ITEM_COUNT: len(selected)},
        ):
            mismatches: list[ItemMismatch] = []
            for item in selected:
                mismatch = await self._check(item)
                if mismatch is not None:
                    mismatches.append(mismatch)

            report = VerificationReport(
                mode=self._config.verify_mode,
                checked=len(selected),
                matched=len(selected) - len(mismatches),
                mismatches=tuple(mismatches),
                excluded_failed=excluded,
            )
            if report.is_consistent:
                logger.info(
                    "Verification of run %s passed: %d items checked (%s)",
                    run_id,
                    report.checked,
                    report.mode.value,
                )
            else:
                logger.warning(
                    "Verification of run %s found %d mismatches in %d items (%d missing)",
                    run_id,
                    len(mismatches),
                    report.checked,
                    len(report.missing),
                )
            return report

    @traced(
        "assetmigrate.verifier.check_item",
        attributes_from=lambda item: {ATTR_ITEM_ID: item.item_id},
    )
    async def _check(self, item: WorkItem) -> ItemMismatch | None:
        actual = await self._destination.stat(item.destination_path)
        if actual is None:
            return ItemMismatch(
                item_id=item.item_id,
                destination_path=item.destination_path,
                reason="missing",
            )

        expected = await self._source.stat(item.source_path)
        expected_size = expected.size if expected else item.size
        expected_hash = expected.content_hash if expected else item.content_hash

        if expected_size is not None and expected_size != actual.size:
            return ItemMismatch(
                item_id=item.item_id,
                destination_path=item.destination_path,
                reason="size",
                expected=expected_size,
                actual=actual.size,
            )
        if (
            self._config.verify_hash
            and expected_hash is not None
            and expected_hash != actual.content_hash
        ):
            return ItemMismatch(
                item_id=item.item_id,
                destination_path=item.destination_path,
                reason="hash",
                expected=expected_hash,
                actual=actual.content_hash,
            )
        return None


__all__ = ["Verifier"]
