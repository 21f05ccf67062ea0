"""
Database Configuration for the Billing Engine

Async SQLAlchemy engine and session management.

``get_session_context()`` is the unit of work: everything issued inside one
``async with`` block commits together or rolls back together. Gateway calls
are never made while such a block is open.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy import text
from sqlmodel import SQLModel

from billing_engine.config.settings import settings


ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite:///": "sqlite+aiosqlite:///",
}


def async_database_url(database_url: str) -> str:
    """Rewrite a plain DATABASE_URL to use the async driver for its dialect."""
    for prefix, replacement in ASYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url


class DatabaseManager:
    """
    Manages async database connections and sessions.

    Implements Singleton pattern for connection pooling efficiency.
    """

    _instance: Optional["DatabaseManager"] = None
    _engine: Optional[AsyncEngine] = None
    _session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    _database_url: Optional[str] = None

    def __new__(cls) -> "DatabaseManager":
        """Singleton pattern ensures single connection pool."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async engine with connection pooling."""
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create session factory."""
        if self._session_factory is None:
            self._initialize_engine()
        return self._session_factory

    def configure(self, database_url: str) -> None:
        """
        Point the manager at a different database.

        Used by scripts and the test suite; the engine is created lazily on
        next access.
        """
        self._database_url = database_url
        self._engine = None
        self._session_factory = None

    def _initialize_engine(self) -> None:
        """Initialize async engine with pooling configuration."""
        database_url = self._get_database_url()

        if database_url.startswith("sqlite"):
            # aiosqlite: no pool sizing, single file shared across sessions
            self._engine = create_async_engine(
                database_url,
                echo=settings.database_echo,
                connect_args={"timeout": 30},
            )
        else:
            self._engine = create_async_engine(
                database_url,
                echo=settings.database_echo,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_pre_ping=True,  # Verify connections before use
            )

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def _get_database_url(self) -> str:
        return async_database_url(self._database_url or settings.database_url)

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        # Registers every table on SQLModel.metadata
        import billing_engine.infrastructure.db.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        """Close engine and dispose of connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


# Global instance (lazy initialization)
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create the database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Unit of work for services, scans and workers.

    Usage:
        async with get_session_context() as session:
            result = await session.execute(query)
    """
    db = get_db_manager()
    async with db.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database connection pool (called on app startup)."""
    db = get_db_manager()
    # Verify connection works
    async with db.session_factory() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    """Close database connection pool (called on app shutdown)."""
    db = get_db_manager()
    await db.close()
