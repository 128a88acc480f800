"""
Database migration runner.

Applies migrations/NNN_name.sql in numeric order. Each file runs in its own
transaction and is recorded in schema_migrations, so a failed migration rolls
back alone and earlier ones stay applied.

Migrations must be additive: code may run against a schema one version old.
"""
import logging
import re
from pathlib import Path
from typing import List, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_MIGRATION_NAME = re.compile(r"^(\d+)_(.+)\.sql$")


async def ensure_migrations_table(conn: asyncpg.Connection):
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """
    Migration files sorted by numeric version.

    Returns:
        [(version, path), ...]; files not matching NNN_name.sql are skipped with a warning
    """
    if not directory.exists():
        logger.warning(f"Migrations directory not found: {directory}")
        return []

    found = []
    for file_path in directory.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            found.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Numeric, not lexicographic: 010 after 009, 1000 after 999
    found.sort(key=lambda item: int(item[0]))
    return found


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """
    Execute one migration file and record its version. Caller owns the transaction.
    """
    sql_content = migration_path.read_text(encoding="utf-8")
    if not sql_content.strip():
        logger.warning(f"Migration {version} is empty, recording as applied")
    else:
        logger.info(f"Applying migration {version}: {migration_path.name}")
        # asyncpg runs multi-statement scripts when no arguments are passed
        await conn.execute(sql_content)

    await conn.execute(
        "INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
        version,
    )
    logger.info(f"Migration {version} applied successfully")


async def run_migrations(conn: asyncpg.Connection) -> bool:
    """
    Apply every pending migration.

    Returns:
        True if the schema is up to date, False if a migration failed.
    """
    await ensure_migrations_table(conn)
    applied = await get_applied_migrations(conn)
    migration_files = get_migration_files()

    if not migration_files:
        logger.warning("No migration files found")
        return True

    pending = [(v, p) for v, p in migration_files if v not in applied]
    logger.info(f"Migrations: {len(migration_files)} found, {len(pending)} pending")

    for version, migration_path in pending:
        try:
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"CRITICAL: Migration {version} ({migration_path.name}) FAILED: {e}")
            logger.error("Database initialization stopped. Fix the migration and restart.")
            return False

    return True


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """Run migrations on a connection borrowed from `pool`."""
    async with pool.acquire() as conn:
        return await run_migrations(conn)
