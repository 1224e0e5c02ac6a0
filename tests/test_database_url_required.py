from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

ERROR_MESSAGE = "DATABASE_URL is required"
ROOT = Path(__file__).resolve().parents[1]


def _base_env() -> dict[str, str]:
    env = os.environ.copy()
    env.pop("DATABASE_URL", None)
    env["PYTHONPATH"] = os.pathsep.join([str(ROOT / "packages" / "socialcore"), str(ROOT)])
    return env


def _run(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, *args],
        capture_output=True,
        text=True,
        env=_base_env(),
        cwd=ROOT,
    )


def test_socialcore_db_imports_without_database_url() -> None:
    result = _run("-c", "import socialcore.db")

    assert result.returncode == 0


def test_socialcore_db_session_fails_without_database_url() -> None:
    result = _run("-c", "from socialcore.db import SessionLocal; SessionLocal()")

    assert result.returncode != 0
    assert ERROR_MESSAGE in result.stderr


def test_worker_stops_without_database_url() -> None:
    result = _run("-m", "apps.worker.scheduler", "--once")

    assert result.returncode != 0
    assert ERROR_MESSAGE in result.stderr


def test_migration_stops_without_database_url() -> None:
    result = _run("-m", "alembic", "-c", "apps/api/alembic.ini", "upgrade", "head")

    assert result.returncode != 0
    assert ERROR_MESSAGE in result.stderr
