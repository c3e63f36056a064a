"""
Database Infrastructure Package for NutriChat

Exports database utilities.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    async_database_url,
    create_session_factory,
    get_db_manager,
    get_session_factory,
    unit_of_work,
    init_db,
    close_db,
)


__all__ = [
    "DatabaseManager",
    "async_database_url",
    "create_session_factory",
    "get_db_manager",
    "get_session_factory",
    "unit_of_work",
    "init_db",
    "close_db",
]
