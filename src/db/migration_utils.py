"""
Database initialization utilities.
This is called once on application startup.
"""

import logging
from pathlib import Path

from .database_service import DatabaseService

logger = logging.getLogger(__name__)


def initialize_database(data_dir: str = "data") -> DatabaseService:
    """
    Initialize the database, running any pending schema migrations.

    Args:
        data_dir: Directory holding database.db

    Returns:
        DatabaseService: Configured database service instance
    """
    data_path = Path(data_dir)
    db_path = data_path / "database.db"

    logger.info(f"Initializing database at {db_path}")

    db_service = DatabaseService(str(db_path))

    logger.info("Database ready")
    return db_service
