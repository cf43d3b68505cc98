from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = ROOT / "scripts" / "db_migrate.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        capture_output=True,
        text=True,
    )


def test_list_prints_migrations_in_order() -> None:
    completed = _run_script("--list")
    assert completed.returncode == 0
    names = completed.stdout.split()
    assert names == sorted(path.name for path in (ROOT / "migrations").glob("*.sql"))
    assert "0001_pipeline.sql" in names


def test_apply_requires_database_url() -> None:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH)],
        capture_output=True,
        text=True,
        env={key: value for key, value in os.environ.items() if key != "RUNOPS_DATABASE_URL"},
    )
    assert completed.returncode == 2
    assert "RUNOPS_DATABASE_URL" in completed.stderr


def test_schema_declares_every_pipeline_table() -> None:
    sql = (ROOT / "migrations" / "0001_pipeline.sql").read_text(encoding="utf-8")
    for table in (
        "clients",
        "airwork_locations",
        "jobs",
        "job_postings",
        "job_revisions",
        "runs",
        "run_items",
        "airwork_fields",
        "airwork_codes",
        "todos",
        "audit_logs",
    ):
        assert f"create table if not exists {table} (" in sql
