"""
Base Repository for NutriChat Billing

Generic async repository for primary-key access plus the dialect-aware INSERT
construct used by the upsert paths.
Follows SOLID principles:
- Single Responsibility: Only handles data access logic
- Open/Closed: Extensible via inheritance
- Dependency Inversion: Depends on SQLModel abstractions
"""

from typing import Any, TypeVar, Generic, Optional, Type

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from app.infrastructure.exceptions import DatabaseError


# Type variable for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)


def dialect_insert(session: AsyncSession, model: Type[SQLModel]) -> Any:
    """
    INSERT construct supporting ON CONFLICT for the session's dialect.

    PostgreSQL in production, SQLite in tests. Both expose
    on_conflict_do_nothing / on_conflict_do_update and .excluded.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise DatabaseError(
        f"Upserts are not supported on dialect {dialect!r}",
        operation="insert",
        table=model.__tablename__,
    )


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository.

    Repositories never commit: the caller (a service) owns the transaction
    and decides when the unit of work is complete.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Returns:
            Model instance or None if not found
        """
        return await self._session.get(self._model, id)

    async def add(self, db_obj: ModelType) -> ModelType:
        """Stage a new record and flush it so database defaults are visible."""
        self._session.add(db_obj)
        await self._session.flush()
        return db_obj

