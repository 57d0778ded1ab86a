#!/usr/bin/env python3
# app/infra/migrate.py
"""
Standalone migration runner.

    python -m app.infra.migrate

Run it before starting the API (CI/CD step, init container or by hand).
The API validates the schema version at startup but never migrates.
"""
import asyncio
import sys

from app.config import settings
from app.infra.db_async import close_pool, init_pool
from app.infra.logging_config import get_logger, setup_logging
from app.infra.migrations_async import apply_migrations

setup_logging(level="INFO", use_json=settings.is_production)
logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Migration runner: env={settings.app_env}")
    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for version in result["applied"]:
            logger.info(f"  applied {version}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
