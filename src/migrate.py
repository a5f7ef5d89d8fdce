from pathlib import Path
import logging
from typing import List, Optional
from .db import Database

logger = logging.getLogger(__name__)

# Arbitrary constant shared by every worker that runs migrations.
MIGRATION_LOCK_KEY = 724_118_301

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def list_migration_files(migrations_dir: Optional[Path] = None) -> List[Path]:
    directory = migrations_dir or MIGRATIONS_DIR
    if not directory.exists():
        return []
    return sorted(p for p in directory.glob("*.sql"))


async def run_migrations(db: Database, migrations_dir: Optional[Path] = None) -> List[str]:
    """
    Apply pending SQL migrations in filename order.

    Several workers may boot at once, so the whole run is serialized with a
    Postgres advisory lock and each file is applied in its own transaction.
    Returns the names applied by this call.
    """
    migration_files = list_migration_files(migrations_dir)
    if not migration_files:
        logger.warning("No migrations found; skipping")
        return []

    applied_now: List[str] = []
    async with db.connection() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    name TEXT PRIMARY KEY,
                    applied_at TIMESTAMPTZ DEFAULT NOW()
                )
                """
            )
            rows = await conn.fetch("SELECT name FROM schema_migrations")
            applied = {row["name"] for row in rows}

            for path in migration_files:
                if path.name in applied:
                    continue
                logger.info(f"Applying migration {path.name}")
                async with conn.transaction():
                    await conn.execute(path.read_text())
                    await conn.execute(
                        "INSERT INTO schema_migrations (name) VALUES ($1)",
                        path.name
                    )
                applied_now.append(path.name)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    return applied_now
