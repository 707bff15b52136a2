"""
Database schema support for assetmigrate.

SQL templates for the tables used by the durable backends of the lock
manager, checkpoint store, change log and run repository.

Tables:
    - migration_locks: The system-wide migration lock record
    - migration_checkpoints: Latest checkpoint per run (and per rollback)
    - changelog_sequences: Durable monotonic sequence counter
    - changelog_entries: Append-only change log
    - migration_runs / migration_work_items: Run state and the persisted
      work-item manifest used for resume

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from assetmigrate.schemas import get_schema

    locks_sql = get_schema("locks")
    all_sql = get_schema("all", backend="sqlite")

    async with aiosqlite.connect(path) as db:
        await db.executescript(get_schema("all", backend="sqlite"))
"""

from pathlib import Path
from typing import Literal

SchemaName = Literal[
    "locks",
    "checkpoints",
    "changelog",
    "runs",
    "all",
]

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"

# Order matters for "all": runs are referenced by work items.
_SCHEMA_ORDER: tuple[str, ...] = ("locks", "checkpoints", "changelog", "runs")


def get_template_path(name: SchemaName, backend: BackendName = "postgresql") -> Path:
    """
    Get the path to a SQL template file.

    Args:
        name: The schema name (locks, checkpoints, changelog, runs)
        backend: The database backend. Defaults to postgresql.

    Returns:
        Path to the SQL template file

    Raises:
        ValueError: If the schema is not available for the backend
    """
    path = _TEMPLATES_DIR / backend / f"{name}.sql"
    if not path.exists():
        raise ValueError(
            f"Schema '{name}' is not available for backend '{backend}'. "
            f"Available schemas: {list_schemas(backend)}"
        )
    return path


def get_schema(name: SchemaName, backend: BackendName = "postgresql") -> str:
    """
    Load a SQL schema template by name and backend.

    ``"all"`` concatenates every table definition of the backend in
    dependency order.

    Raises:
        ValueError: If the schema is not available for the backend
    """
    if name == "all":
        return "\n".join(get_template_path(n, backend).read_text() for n in _SCHEMA_ORDER)  # type: ignore[arg-type]
    return get_template_path(name, backend).read_text()


def list_schemas(backend: BackendName = "postgresql") -> list[str]:
    """List schema names available for a backend (excluding "all")."""
    directory = _TEMPLATES_DIR / backend
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob("*.sql"))


__all__ = [
    "BackendName",
    "SchemaName",
    "get_schema",
    "get_template_path",
    "list_schemas",
]
