"""
Database Configuration for NutriChat Billing

Async SQLAlchemy engine and session management following SOLID principles:
- Single Responsibility: Only handles database connection and session lifecycle
- Open/Closed: Configurable via Settings without code changes
- Dependency Inversion: Depends on abstractions (Settings), not concretions
"""

import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import quote_plus

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from app.config.settings import Settings, settings
from app.infrastructure.exceptions import DatabaseError


logger = logging.getLogger(__name__)


def async_database_url(config: Settings) -> str:
    """
    Async connection URL for the ledger database.

    DATABASE_URL wins when set (plain postgres:// schemes get the asyncpg
    driver); otherwise the direct Supabase connection is derived from
    SUPABASE_URL + SUPABASE_PASSWORD. Alembic migrates through the same URL.
    """
    if config.database_url:
        url = config.database_url
        for scheme in ("postgresql://", "postgres://"):
            if url.startswith(scheme):
                return "postgresql+asyncpg://" + url[len(scheme):]
        return url

    if not config.supabase_url or not config.supabase_password:
        raise ValueError(
            "Either DATABASE_URL or (SUPABASE_URL + SUPABASE_PASSWORD) is required. "
            "Add SUPABASE_PASSWORD to your .env file."
        )

    match = re.match(r"https?://([^.]+)\.supabase\.co", config.supabase_url)
    if not match:
        raise ValueError(f"Invalid SUPABASE_URL format: {config.supabase_url}")

    # Direct database connection (not the pooler)
    return (
        f"postgresql+asyncpg://postgres:{quote_plus(config.supabase_password)}"
        f"@db.{match.group(1)}.supabase.co:5432/postgres"
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the services (they own their transactions)."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class DatabaseManager:
    """
    Manages async database connections and sessions.

    Implements Singleton pattern for connection pooling efficiency.
    """

    _instance: Optional["DatabaseManager"] = None
    _engine: Optional[AsyncEngine] = None
    _session_factory: Optional[async_sessionmaker[AsyncSession]] = None

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

    def _initialize_engine(self) -> None:
        """Initialize async engine with the pool settings from Settings."""
        database_url = self._get_database_url()

        if database_url.startswith("sqlite"):
            # Local development without PostgreSQL
            self._engine = create_async_engine(database_url, echo=settings.database_echo)
        else:
            self._engine = create_async_engine(
                database_url,
                echo=settings.database_echo,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_pre_ping=True,  # Verify connections before use
            )

        self._session_factory = create_session_factory(self._engine)

    def _get_database_url(self) -> str:
        return async_database_url(settings)

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        import app.infrastructure.db.models  # noqa: F401

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


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the shared session factory."""
    return get_db_manager().session_factory


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
) -> AsyncGenerator[AsyncSession, None]:
    """
    One transaction: committed when the block exits normally, rolled back
    on any exception. Driver errors surface as DatabaseError.

    Usage:
        async with unit_of_work(factory, "apply_event") as session:
            ...
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except SQLAlchemyError as e:
        logger.error(f"Database operation {operation} failed: {e}")
        raise DatabaseError(
            f"Database operation failed: {operation}",
            operation=operation,
            original_error=e,
        ) from e


async def init_db() -> None:
    """Initialize database connection pool (called on app startup)."""
    db = get_db_manager()
    # Verify connection works
    async with db.session_factory() as session:
        await session.execute(text("SELECT 1"))

    if db.engine.dialect.name == "sqlite":
        # Local development runs without migrations
        await db.create_tables()
        logger.info("SQLite schema created from metadata")


async def close_db() -> None:
    """Close database connection pool (called on app shutdown)."""
    db = get_db_manager()
    await db.close()
