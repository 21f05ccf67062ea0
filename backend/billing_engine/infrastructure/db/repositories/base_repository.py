"""
Base Repository for the Billing Engine

Generic async repository bound to one session (one unit of work).
Repositories never commit; the caller's ``get_session_context()`` does.
"""

from typing import TypeVar, Generic, List, Optional, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


# Type variable for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with the operations every table needs.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    async def get_by_id(self, id: int) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Args:
            id: Integer primary key

        Returns:
            Model instance or None if not found
        """
        return await self._session.get(self._model, id)

    async def get_for_update(self, id: int) -> Optional[ModelType]:
        """
        Get a record and lock its row until the unit of work ends.

        Falls back to a plain read where the dialect has no row locks.
        """
        stmt = (
            select(self._model)
            .where(self._model.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, db_obj: ModelType) -> ModelType:
        """
        Insert a new record and flush to obtain its id.

        Args:
            db_obj: Unsaved model instance

        Returns:
            The same instance with its primary key populated
        """
        self._session.add(db_obj)
        await self._session.flush()
        return db_obj

    async def add_all(self, db_objects: List[ModelType]) -> List[ModelType]:
        """Bulk insert multiple records."""
        self._session.add_all(db_objects)
        await self._session.flush()
        return db_objects

    async def save(self, db_obj: ModelType) -> ModelType:
        """Flush pending changes to an already persistent record."""
        self._session.add(db_obj)
        await self._session.flush()
        return db_obj
