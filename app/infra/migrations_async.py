# app/infra/migrations_async.py
"""
SQL migrations (asyncpg) and the startup schema check.

Migrations are plain ``.sql`` files in ``app/infra/sql`` applied in name
order and recorded in ``schema_migrations``.  The HTTP app never applies
them; it only verifies at startup that the newest applied file is the one
this build expects (``settings.expected_schema_version``).
"""
from __future__ import annotations
from pathlib import Path

from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATIONS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations(
  version text PRIMARY KEY,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""

_RUN_HINT = "Run migrations first: python -m app.infra.migrate"


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    """Migration files in apply order."""
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply every migration not yet recorded, in one transaction.

    Returns:
        {"ok": True, "applied": [filenames applied now], "count": int}
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(_MIGRATIONS_TABLE_DDL)

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        already = {row["version"] for row in rows}

        applied_now = []
        for path in files:
            if path.name in already:
                logger.debug(f"Migration {path.name} already applied, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def _migrations_table_exists(conn) -> bool:
    return bool(await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL"))


async def validate_schema_version() -> dict:
    """
    Check that the newest applied migration matches the expected version.

    Raises:
        RuntimeError: schema missing, empty or at another version.
    """
    expected = settings.expected_schema_version

    async with db_conn() as conn:
        if not await _migrations_table_exists(conn):
            error = f"Schema migrations table not found. {_RUN_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not latest:
        error = f"No migrations have been applied. {_RUN_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current = latest["version"]
    if current != expected:
        error = f"Schema version mismatch: expected {expected}, found {current}. {_RUN_HINT}"
        logger.critical(error, extra={"expected": expected, "current": current})
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current}")
    return {"ok": True, "current_version": current, "expected_version": expected}


async def get_schema_info() -> dict:
    """Schema state for the detailed health endpoint."""
    async with db_conn() as conn:
        if not await _migrations_table_exists(conn):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch("SELECT version, applied_at FROM schema_migrations ORDER BY version")

    versions = [row["version"] for row in rows]
    latest = versions[-1] if versions else None
    return {
        "initialized": True,
        "migrations_applied": len(versions),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
