import asyncio
import os

from alembic import command
from alembic.config import Config
from loguru import logger


async def run_alembic_migrations(database_dsn: str) -> None:
    """
    Runs Alembic migrations programmatically using the configured DSN.
    The migration environment drives an async engine, so it runs in a worker
    thread with its own event loop.
    """
    base_dir = os.path.dirname(os.path.abspath(__file__))
    # Points to: services/relay_service/app/db/migrations/alembic.ini
    alembic_ini_path = os.path.join(base_dir, "db", "migrations", "alembic.ini")

    if not os.path.exists(alembic_ini_path):
        logger.warning(f"Alembic config not found at {alembic_ini_path}, skipping migrations.")
        return

    alembic_cfg = Config(alembic_ini_path)
    alembic_cfg.set_main_option("sqlalchemy.url", database_dsn)

    logger.info("🚀 Running Alembic migrations...")
    try:
        await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
    except Exception as e:
        logger.error(f"❌ Alembic migration failed: {e}")
        raise
    logger.info("✅ Alembic migrations applied successfully.")
