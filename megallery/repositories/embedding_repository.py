"""Embedding repository."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.models.database import Embedding
from megallery.models.domain import CollectionEmbedding, TsneParams
from megallery.repositories.base import BaseRepository


class EmbeddingRepository(BaseRepository[Embedding]):
    """Repository for published embedding generations."""

    def __init__(self, db: AsyncSession):
        super().__init__(Embedding, db)

    async def get_latest(self, collection_id: UUID) -> Optional[Embedding]:
        """Get the highest generation stored for a collection."""
        result = await self.db.execute(
            select(Embedding)
            .where(Embedding.collection_id == collection_id)
            .order_by(Embedding.generation.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_max_generation(self, collection_id: UUID) -> int:
        result = await self.db.execute(
            select(func.max(Embedding.generation))
            .where(Embedding.collection_id == collection_id)
        )
        return result.scalar_one() or 0

    async def delete_for_collection(self, collection_id: UUID) -> int:
        result = await self.db.execute(
            delete(Embedding).where(Embedding.collection_id == collection_id)
        )
        await self.db.flush()
        return result.rowcount

    async def save(self, embedding: CollectionEmbedding) -> Embedding:
        """Persist a published generation."""
        return await self.create(Embedding(
            collection_id=embedding.collection_id,
            generation=embedding.generation,
            seed=embedding.seed,
            metric=embedding.metric,
            params=embedding.params.to_dict(),
            coordinates={str(k): [x, y] for k, (x, y) in embedding.coordinates.items()},
            excluded=[str(i) for i in embedding.excluded],
            created_at=embedding.created_at,
        ))

    @staticmethod
    def to_domain(row: Embedding) -> CollectionEmbedding:
        return CollectionEmbedding(
            collection_id=row.collection_id,
            generation=row.generation,
            seed=row.seed,
            params=TsneParams(**row.params),
            metric=row.metric,
            coordinates={UUID(k): (float(v[0]), float(v[1])) for k, v in row.coordinates.items()},
            excluded=[UUID(i) for i in row.excluded],
            created_at=row.created_at,
        )
