"""Apply the SQL files in ``backend/migrations`` in version order.

Run with ``python -m firebird.infra.migrations``. Versions are the filename
prefix before the first underscore and are recorded in ``schema_migrations``.
"""

from __future__ import annotations

import asyncio
import logging
import pathlib
from typing import List

import asyncpg

from firebird.infra import postgres
from firebird.obs import logging as obs_logging

LOGGER = logging.getLogger(__name__)

MIGRATIONS_DIR = pathlib.Path(__file__).resolve().parents[2] / "migrations"


def migration_files(directory: pathlib.Path = MIGRATIONS_DIR) -> List[pathlib.Path]:
	return sorted(directory.glob("*.sql"))


def version_of(path: pathlib.Path) -> str:
	return path.name.split("_", 1)[0]


async def apply_migrations(pool: asyncpg.Pool, directory: pathlib.Path = MIGRATIONS_DIR) -> List[str]:
	"""Apply pending migrations, each in its own transaction. Returns applied versions."""
	paths = migration_files(directory)
	if not paths:
		raise SystemExit("no migration files found")
	applied: List[str] = []
	async with pool.acquire() as conn:
		await conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS schema_migrations (
				version TEXT PRIMARY KEY,
				applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
			)
			"""
		)
		done = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}
		for path in paths:
			version = version_of(path)
			if version in done:
				continue
			async with conn.transaction():
				await conn.execute(path.read_text())
				await conn.execute("INSERT INTO schema_migrations (version) VALUES ($1)", version)
			LOGGER.info("migration_applied", extra={"version": version, "file": path.name})
			applied.append(version)
	return applied


async def _main() -> None:
	obs_logging.configure_logging()
	pool = await postgres.init_pool()
	try:
		await apply_migrations(pool)
	finally:
		await postgres.close_pool()


if __name__ == "__main__":
	asyncio.run(_main())
