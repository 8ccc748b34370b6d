"""Derivative repository."""
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.models.database import Derivative
from megallery.models.domain import DerivativeKind
from megallery.repositories.base import BaseRepository


class DerivativeRepository(BaseRepository[Derivative]):
    """Repository for derivative records."""

    def __init__(self, db: AsyncSession):
        super().__init__(Derivative, db)

    async def get_by_key(
        self,
        image_id: UUID,
        width: int,
        height: int,
        kind: DerivativeKind
    ) -> Optional[Derivative]:
        """Get the derivative record for a (image, width, height, kind) key."""
        result = await self.db.execute(
            select(Derivative).where(
                Derivative.image_id == image_id,
                Derivative.width == width,
                Derivative.height == height,
                Derivative.kind == kind.code,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_image(self, image_id: UUID) -> List[Derivative]:
        result = await self.db.execute(
            select(Derivative).where(Derivative.image_id == image_id)
        )
        return list(result.scalars().all())

    async def get_largest_within(
        self,
        image_id: UUID,
        max_width: int,
        max_height: int
    ) -> Optional[Derivative]:
        """Largest stored file of an image that fits inside a box."""
        result = await self.db.execute(
            select(Derivative)
            .where(
                Derivative.image_id == image_id,
                Derivative.width <= max_width,
                Derivative.height <= max_height,
            )
            .order_by(Derivative.width.desc(), Derivative.height.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        image_id: UUID,
        width: int,
        height: int,
        kind: DerivativeKind,
        extension: str,
        file_path: str,
        byte_size: int
    ) -> Derivative:
        """Insert a derivative record unless the key is already recorded."""
        existing = await self.get_by_key(image_id, width, height, kind)
        if existing:
            return existing

        return await self.create(Derivative(
            image_id=image_id,
            width=width,
            height=height,
            kind=kind.code,
            extension=extension,
            file_path=file_path,
            byte_size=byte_size,
        ))

    async def delete_for_image(self, image_id: UUID) -> int:
        """Delete every derivative record of an image."""
        result = await self.db.execute(
            delete(Derivative).where(Derivative.image_id == image_id)
        )
        await self.db.flush()
        return result.rowcount
