"""Database migration helpers.

Runs the Alembic scripts shipped inside the package without an alembic.ini,
so ``signvault db upgrade`` works from a source checkout and from an
installed wheel alike.
"""

import logging
import sqlite3
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = "/app/data/signvault.db"


def get_alembic_config(database_path: str | Path | None = None) -> Config:
    """
    Build an Alembic Config pointing at the packaged migration scripts.

    Args:
        database_path: Path to SQLite database file (default: /app/data/signvault.db)
    """
    script_location = Path(__file__).parent / "alembic"

    config = Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("path_separator", "os")

    db_path = Path(database_path or DEFAULT_DATABASE_PATH).resolve()
    config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")

    logger.debug(f"Alembic script location: {script_location}")
    logger.debug(f"Database: {db_path}")
    return config


def upgrade_database(
    database_path: str | Path | None = None, revision: str = "head"
) -> None:
    config = get_alembic_config(database_path)
    logger.info(f"Upgrading database to revision: {revision}")
    command.upgrade(config, revision)
    logger.info("Database upgrade completed successfully")


def get_current_revision(database_path: str | Path | None = None) -> str | None:
    """
    Read the current revision straight from the alembic_version table.

    Returns:
        Revision id, or None if the database does not exist or is unversioned
    """
    db_path = Path(database_path or DEFAULT_DATABASE_PATH).resolve()
    if not db_path.exists():
        logger.debug(f"Database does not exist: {db_path}")
        return None

    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='alembic_version'"
        )
        if cursor.fetchone() is None:
            return None
        row = conn.execute("SELECT version_num FROM alembic_version").fetchone()
        return row[0] if row else None
    finally:
        conn.close()


def stamp_database(
    database_path: str | Path | None = None, revision: str = "head"
) -> None:
    """
    Mark a database created by ``VaultStorage.initialize()`` as being at a
    revision without running the migration scripts.
    """
    config = get_alembic_config(database_path)
    logger.info(f"Stamping database with revision: {revision}")
    command.stamp(config, revision)
    logger.info("Database stamped successfully")
