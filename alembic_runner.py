"""
Alembic migration runner for application startup.
This module provides functions to run Alembic migrations programmatically.
"""
import logging
from pathlib import Path
from typing import Optional
from sqlalchemy.exc import OperationalError
from alembic import command
from alembic.config import Config
from database import DATABASE_URL

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parent / "alembic.ini"


def _alembic_config(database_url: Optional[str] = None) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url or DATABASE_URL)
    # Keep the application's logging configuration intact
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def run_migrations(database_url: Optional[str] = None) -> None:
    """
    Run Alembic migrations to head.
    Called during application startup to ensure the database is up to date.
    """
    try:
        logger.info("Running Alembic migrations...")
        command.upgrade(_alembic_config(database_url), "head")
        logger.info("Alembic migrations completed successfully")
    except OperationalError as e:
        logger.error(f"Failed to connect to database during migrations: {e}")
        logger.warning("Migrations will be retried on next startup")
        raise


def get_current_revision(database_url: Optional[str] = None) -> str:
    """
    Get the current database revision.
    Returns the revision string or 'None' if no migrations have been applied.
    """
    from sqlalchemy import create_engine
    from alembic.runtime.migration import MigrationContext

    engine = create_engine(database_url or DATABASE_URL)
    try:
        with engine.connect() as connection:
            current_rev = MigrationContext.configure(connection).get_current_revision()
            return current_rev if current_rev else 'None'
    finally:
        engine.dispose()
