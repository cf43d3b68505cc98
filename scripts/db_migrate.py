#!/usr/bin/env python3
"""Apply SQL migrations from ``migrations/`` in filename order."""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path

import asyncpg

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

LEDGER_SQL = """
create table if not exists schema_migrations (
  name text primary key,
  applied_at timestamptz not null default now()
)
"""


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    return sorted(path for path in directory.glob("*.sql") if path.is_file())


async def apply_migrations(database_url: str, migrations: list[Path]) -> list[str]:
    applied: list[str] = []
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(LEDGER_SQL)
        done = {row["name"] for row in await conn.fetch("select name from schema_migrations")}
        for path in migrations:
            if path.name in done:
                continue
            async with conn.transaction():
                await conn.execute(path.read_text(encoding="utf-8"))
                await conn.execute("insert into schema_migrations (name) values ($1)", path.name)
            applied.append(path.name)
    finally:
        await conn.close()
    return applied


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply pipeline SQL migrations.")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("RUNOPS_DATABASE_URL"),
        help="Postgres DSN (defaults to RUNOPS_DATABASE_URL)",
    )
    parser.add_argument(
        "--dir",
        type=Path,
        default=MIGRATIONS_DIR,
        help="Directory holding *.sql migration files",
    )
    parser.add_argument("--list", action="store_true", help="Print migration files without applying them")
    args = parser.parse_args()

    migrations = discover_migrations(args.dir)
    if args.list:
        for path in migrations:
            print(path.name)
        return

    if not args.database_url:
        parser.error("--database-url or RUNOPS_DATABASE_URL is required")

    applied = asyncio.run(apply_migrations(args.database_url, migrations))
    if applied:
        for name in applied:
            print(f"applied {name}")
    else:
        print("no pending migrations")


if __name__ == "__main__":
    main()
