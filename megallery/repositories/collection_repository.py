"""Collection repository."""
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.models.database import Collection
from megallery.repositories.base import BaseRepository


class CollectionRepository(BaseRepository[Collection]):
    """Repository for collection operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(Collection, db)

    async def get_by_name(self, name: str) -> Optional[Collection]:
        """
        Get collection by name.

        Args:
            name: Collection name

        Returns:
            Collection or None
        """
        result = await self.db.execute(
            select(Collection).where(Collection.name == name)
        )
        return result.scalars().first()

    async def get_all_ordered(self, skip: int = 0, limit: int = 100) -> List[Collection]:
        """Get collections ordered by creation time."""
        result = await self.db.execute(
            select(Collection)
            .order_by(Collection.created_at, Collection.id)
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_stale(self, id: UUID) -> Optional[Collection]:
        """Clear the embedding validity marker without leaving the finalized state."""
        return await self.update(id, {"embedding_valid": False})
