"""Image repository."""
from typing import Iterable, List
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.models.database import Image
from megallery.repositories.base import BaseRepository


class ImageRepository(BaseRepository[Image]):
    """Repository for image operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(Image, db)

    async def get_by_collection(
        self,
        collection_id: UUID,
        skip: int = 0,
        limit: int = 100
    ) -> List[Image]:
        """
        Get images by collection.

        Args:
            collection_id: Collection UUID
            skip: Number of records to skip
            limit: Maximum number of records

        Returns:
            List of images
        """
        result = await self.db.execute(
            select(Image)
            .where(Image.collection_id == collection_id)
            .order_by(Image.created_at, Image.id)
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_all_by_collection(self, collection_id: UUID) -> List[Image]:
        """Get every image of a collection (used when embedding)."""
        result = await self.db.execute(
            select(Image)
            .where(Image.collection_id == collection_id)
            .order_by(Image.id)
        )
        return list(result.scalars().all())

    async def get_by_ids(self, ids: Iterable[UUID]) -> List[Image]:
        """Get the images among a list of ids, in no particular order."""
        ids = list(ids)
        if not ids:
            return []
        result = await self.db.execute(select(Image).where(Image.id.in_(ids)))
        return list(result.scalars().all())

    async def count_by_collection(self, collection_id: UUID) -> int:
        """
        Count images in collection.

        Args:
            collection_id: Collection UUID

        Returns:
            Image count
        """
        result = await self.db.execute(
            select(func.count())
            .select_from(Image)
            .where(Image.collection_id == collection_id)
        )
        return result.scalar_one()

    async def set_features(self, id: UUID, features: dict) -> None:
        """Store an extracted feature vector in one statement."""
        await self.update(id, {"features": features})
