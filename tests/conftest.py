"""
Shared pytest fixtures for the assetmigrate tests.

This module provides:
- Storage and record fixtures (source, destination, records)
- Lock fixtures (lock_table, lock_manager) with zero backoff
- Repository fixtures (checkpoint_store, changelog_repo, run_repo)
- Configuration fixtures (fast_retry, migration_config)
- Orchestrator factory fixture
- SQLite fixtures (sqlite_connection, sqlite_database_path)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from assetmigrate.locks.in_memory import InMemoryLockManager, InMemoryLockTable
from assetmigrate.migration.exceptions import RetryConfig
from assetmigrate.migration.models import MigrationConfig, VerifyMode
from assetmigrate.migration.orchestrator import MigrationOrchestrator
from assetmigrate.records.in_memory import InMemoryRecordStore
from assetmigrate.repositories.changelog import InMemoryChangeLogRepository
from assetmigrate.repositories.checkpoint import InMemoryCheckpointStore
from assetmigrate.repositories.run import InMemoryRunRepository
from assetmigrate.schemas import get_schema
from assetmigrate.storage.in_memory import InMemoryStorageProvider
from tests.fixtures import build_assets

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite

    AIOSQLITE_AVAILABLE = True
except ImportError:
    aiosqlite = None  # type: ignore[assignment]


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")
    config.addinivalue_line("markers", "postgres: marks tests of the PostgreSQL backends")
    config.addinivalue_line("markers", "slow: marks tests that move many items")


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")


# ============================================================================
# Configuration Fixtures
# ============================================================================

FAST_RETRY = RetryConfig(max_attempts=3, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0)


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy without delays."""
    return FAST_RETRY


@pytest.fixture
def migration_config() -> MigrationConfig:
    """
    Small-batch configuration for orchestrator tests.

    Full verification, no retry delays and no lock waiting.
    """
    return MigrationConfig(
        batch_size=10,
        max_concurrency=4,
        item_retry=FAST_RETRY,
        verify_mode=VerifyMode.FULL,
        lock_timeout=0.0,
    )


# ============================================================================
# Storage and Record Fixtures
# ============================================================================


@pytest.fixture
def destination() -> InMemoryStorageProvider:
    """An empty destination storage."""
    return InMemoryStorageProvider("destination")


@pytest.fixture
def assets() -> tuple[InMemoryStorageProvider, InMemoryRecordStore]:
    """Source storage and record store holding 25 linked assets."""
    return build_assets(25)


@pytest.fixture
def source(assets: tuple[InMemoryStorageProvider, InMemoryRecordStore]) -> InMemoryStorageProvider:
    return assets[0]


@pytest.fixture
def records(assets: tuple[InMemoryStorageProvider, InMemoryRecordStore]) -> InMemoryRecordStore:
    return assets[1]


# ============================================================================
# Lock Fixtures
# ============================================================================


@pytest.fixture
def lock_table() -> InMemoryLockTable:
    """A lock table shared by every manager of a test."""
    return InMemoryLockTable()


@pytest.fixture
def lock_manager(lock_table: InMemoryLockTable) -> InMemoryLockManager:
    """Lock manager that never sleeps between attempts."""
    return InMemoryLockManager(
        lock_table,
        retry_interval=0.0,
        acquire_timeout=0.0,
        holder_suffix="test-host:1",
        enable_tracing=False,
    )


# ============================================================================
# Repository Fixtures
# ============================================================================


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore(enable_tracing=False)


@pytest.fixture
def changelog_repo() -> InMemoryChangeLogRepository:
    return InMemoryChangeLogRepository(enable_tracing=False)


@pytest.fixture
def run_repo() -> InMemoryRunRepository:
    return InMemoryRunRepository(enable_tracing=False)


# ============================================================================
# Orchestrator Fixtures
# ============================================================================


@pytest.fixture
def make_orchestrator(
    source: InMemoryStorageProvider,
    destination: InMemoryStorageProvider,
    records: InMemoryRecordStore,
    lock_manager: InMemoryLockManager,
    checkpoint_store: InMemoryCheckpointStore,
    changelog_repo: InMemoryChangeLogRepository,
    run_repo: InMemoryRunRepository,
    migration_config: MigrationConfig,
) -> Callable[..., MigrationOrchestrator]:
    """
    Factory for orchestrators wired to the test fixtures.

    Keyword arguments override individual collaborators, e.g.
    ``make_orchestrator(checkpoints=CrashingCheckpointStore())``.
    """

    def _make(**overrides: Any) -> MigrationOrchestrator:
        wiring: dict[str, Any] = {
            "source": source,
            "destination": destination,
            "records": records,
            "lock_manager": lock_manager,
            "checkpoints": checkpoint_store,
            "changelog_repository": changelog_repo,
            "runs": run_repo,
            "config": migration_config,
            "enable_tracing": False,
        }
        wiring.update(overrides)
        return MigrationOrchestrator(**wiring)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., MigrationOrchestrator]) -> MigrationOrchestrator:
    return make_orchestrator()


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[Any, None]:
    """
    Provide an aiosqlite connection to an in-memory database with every
    engine table created.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    conn = await aiosqlite.connect(":memory:")
    await conn.executescript(get_schema("all", backend="sqlite"))
    await conn.commit()

    yield conn

    await conn.close()


@pytest.fixture
def sqlite_database_path(tmp_path: Path) -> str:
    """Path of a SQLite file shared by several connections."""
    return str(tmp_path / "migration.db")
