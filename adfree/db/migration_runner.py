"""
Migration Runner - Runs Alembic migrations at application startup.

alembic/env.py drives an async engine with asyncio.run(), so callers inside a
running event loop must invoke run_migrations() from a worker thread.
"""

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from adfree.config import settings

logger = logging.getLogger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI_PATH.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url.replace("%", "%%"))
    return alembic_cfg


def run_migrations() -> None:
    """
    Upgrade the database schema to head.

    Upgrading an up-to-date database is a no-op.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning(f"Alembic config not found at {ALEMBIC_INI_PATH}, skipping migrations")
        return

    try:
        logger.info("Running database migrations to head")
        command.upgrade(_alembic_config(), "head")
        logger.info("Database migrations complete")
    except Exception as e:
        logger.error(f"Migration failed: {e}")
        raise RuntimeError(f"Database migration failed: {e}") from e
