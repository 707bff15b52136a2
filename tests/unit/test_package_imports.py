"""
Import-order tests.

Each module is imported first thing in a fresh interpreter, so a circular
import between packages fails here regardless of the order other tests
happen to import things in.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[2] / "src"


def import_in_fresh_interpreter(module: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(SRC_DIR), env.get("PYTHONPATH", "")) if p
    )
    return subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
    )


class TestPackageImports:
    """Every public module imports cleanly on its own."""

    @pytest.mark.parametrize(
        "module",
        [
            "assetmigrate",
            "assetmigrate.locks",
            "assetmigrate.locks.interface",
            "assetmigrate.migration",
            "assetmigrate.migration.exceptions",
            "assetmigrate.migration.orchestrator",
            "assetmigrate.migration.rollback",
            "assetmigrate.migration.transfer",
            "assetmigrate.repositories",
        ],
    )
    def test_module_imports_first(self, module: str) -> None:
        result = import_in_fresh_interpreter(module)

        assert result.returncode == 0, result.stderr
