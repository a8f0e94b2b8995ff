"""
Database Migration System

Versioned schema migrations for the subscription ledger.
Each migration file runs in its own transaction and is recorded in the
schema_migrations table, so init_db() can run on every start.
"""
import re
import logging
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
MIGRATION_FILE_PATTERN = re.compile(r'^(\d+)_(.+)\.sql$')


async def ensure_migrations_table(conn: asyncpg.Connection):
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(migrations_dir: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """
    List migration files sorted by numeric version.

    Files must be named NNN_description.sql; anything else is skipped with a warning.
    """
    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return []

    migrations = []
    for file_path in migrations_dir.glob("*.sql"):
        match = MIGRATION_FILE_PATTERN.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Numeric order, not lexicographic ("10" after "9")
    migrations.sort(key=lambda x: int(x[0]))
    return migrations


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> bool:
    """
    Apply one migration. The caller owns the transaction.

    Raises:
        Exception: SQL errors are re-raised after logging so the transaction rolls back
    """
    sql_content = migration_path.read_text(encoding='utf-8')
    if not sql_content.strip():
        logger.warning(f"Migration {version} is empty, skipping")
        return True

    try:
        logger.info(f"Applying migration {version}: {migration_path.name}")
        await conn.execute(sql_content)
        await conn.execute(
            "INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
            version
        )
        logger.info(f"Migration {version} applied successfully")
        return True
    except Exception as e:
        logger.error(f"CRITICAL: Failed to apply migration {version} ({migration_path.name})")
        logger.exception(f"Error details: {e}")
        raise


async def run_migrations(conn: asyncpg.Connection) -> bool:
    """
    Apply every pending migration, each in its own transaction.

    Returns:
        True when the schema is up to date, False when a migration failed
    """
    try:
        await ensure_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        logger.info(f"Applied migrations: {sorted(applied)}")

        migration_files = get_migration_files()
        if not migration_files:
            logger.warning("No migration files found")
            return True

        for version, migration_path in migration_files:
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)

        logger.info("All migrations applied successfully")
        return True

    except Exception as e:
        logger.exception(f"Error running migrations: {e}")
        return False


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    async with pool.acquire() as conn:
        return await run_migrations(conn)
