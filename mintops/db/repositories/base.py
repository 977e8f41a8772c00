"""
Base repository for the ledger tables.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, func, select

from mintops.infrastructure.database import Base, get_session

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Generic async repository for SQLAlchemy models."""

    def __init__(self, model: Type[T]):
        self.model = model

    def _filtered(self, stmt: Select, filters: dict[str, Any] | None) -> Select:
        if filters:
            for key, value in filters.items():
                if value is not None and hasattr(self.model, key):
                    stmt = stmt.where(getattr(self.model, key) == value)
        return stmt

    async def find_one(self, **filters: Any) -> Optional[T]:
        """Get the first record matching every filter."""
        async with get_session() as session:
            stmt = self._filtered(select(self.model), filters).limit(1)
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list(
        self,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> Sequence[T]:
        """List records with optional filters, ordering, and pagination.

        ``order_by`` takes a column name, prefixed with ``-`` for descending.
        """
        async with get_session() as session:
            stmt = self._filtered(select(self.model), filters)

            if order_by and hasattr(self.model, order_by.lstrip("-")):
                col = getattr(self.model, order_by.lstrip("-"))
                stmt = stmt.order_by(col.desc() if order_by.startswith("-") else col)
                # Stable order for rows sharing a timestamp
                stmt = stmt.order_by(self.model.id.desc() if order_by.startswith("-") else self.model.id)

            if offset:
                stmt = stmt.offset(offset)
            if limit:
                stmt = stmt.limit(limit)

            result = await session.execute(stmt)
            return result.scalars().all()

    async def count(self, filters: dict[str, Any] | None = None) -> int:
        """Count records matching filters."""
        async with get_session() as session:
            stmt = self._filtered(select(func.count()).select_from(self.model), filters)
            result = await session.execute(stmt)
            return result.scalar_one()
