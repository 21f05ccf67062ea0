"""
Database layer: engine/session management for the billing tables.

Models live in ``db.models`` and data access in ``db.repositories``.
"""

from billing_engine.infrastructure.db.database import (
    DatabaseManager,
    async_database_url,
    close_db,
    get_db_manager,
    get_session_context,
    init_db,
)


__all__ = [
    "DatabaseManager",
    "async_database_url",
    "close_db",
    "get_db_manager",
    "get_session_context",
    "init_db",
]
