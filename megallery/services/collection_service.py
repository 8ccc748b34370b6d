"""
Collection service.

Owns the collection state machine::

    new ──finalize──▶ finalized (embedding_valid)
                          │  membership change / invalidate
                          ▼
                      finalized (stale) ──finalize(force_recompute)──▶ next generation

Embedding runs go through the materialization cache keyed by collection id,
so racing finalize calls share one computation. A run is published from its
own database session, making it independent of the request that started it.
"""
import asyncio
import logging
import threading
from functools import partial
from typing import AsyncContextManager, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from megallery.core.config import Settings, settings
from megallery.core.database import get_db_context, utcnow
from megallery.core.exceptions import AlreadyFinalized, NotFoundException, ValidationException
from megallery.core.workers import WorkerPools
from megallery.embedding import BaseMetric, embed, get_metric
from megallery.models.database import Collection, Image
from megallery.models.domain import (
    CollectionEmbedding,
    EmbeddingKey,
    EmbeddingResult,
    FeatureVector,
    TsneParams,
)
from megallery.models.schemas.common import PaginationParams
from megallery.repositories import CollectionRepository, EmbeddingRepository, ImageRepository
from megallery.services.cache_service import CacheService
from megallery.services.derivative_service import ImageRef
from megallery.services.image_service import ImageService
from megallery.services.materialization_cache import MaterializationCache

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class CollectionService:
    """Service for collection operations and the finalize state machine."""

    def __init__(
        self,
        db: AsyncSession,
        images: ImageService,
        materialization: MaterializationCache,
        cache: CacheService,
        pools: WorkerPools,
        session_factory: SessionFactory = get_db_context,
        config: Settings = settings
    ):
        """
        Initialize collection service.

        Args:
            db: Request database session
            images: Image service sharing the request session
            materialization: Shared materialization cache
            cache: Layout metadata cache
            pools: Worker pools; embedding runs use the dedicated pool
            session_factory: Opens the session an embedding run publishes with
            config: Settings providing t-SNE and metric defaults
        """
        self.db = db
        self.images = images
        self.materialization = materialization
        self.cache = cache
        self.pools = pools
        self.session_factory = session_factory
        self.config = config
        self.repo = CollectionRepository(db)
        self.image_repo = ImageRepository(db)
        self.embedding_repo = EmbeddingRepository(db)

    # CRUD

    async def create_collection(self, name: str) -> Collection:
        return await self.repo.create(Collection(name=name))

    async def get_collection(self, collection_id: UUID) -> Collection:
        """
        Get collection by ID.

        Raises:
            NotFoundException: If collection not found
        """
        return await self.repo.get_by_id_or_fail(collection_id)

    async def list_collections(
        self,
        pagination: PaginationParams
    ) -> Tuple[List[Collection], int]:
        skip = (pagination.page - 1) * pagination.page_size
        collections = await self.repo.get_all_ordered(skip=skip, limit=pagination.page_size)
        total = await self.repo.count()
        return collections, total

    async def count_images(self, collection_id: UUID) -> int:
        return await self.image_repo.count_by_collection(collection_id)

    async def delete_collection(self, collection_id: UUID) -> bool:
        """
        Delete a collection, its images and every embedding generation.

        Raises:
            NotFoundException: If collection not found
        """
        await self.repo.get_by_id_or_fail(collection_id)
        self.materialization.cancel(EmbeddingKey(collection_id))

        for image in await self.image_repo.get_all_by_collection(collection_id):
            await self.images.delete_image(image.id)

        await self.embedding_repo.delete_for_collection(collection_id)
        deleted = await self.repo.delete(collection_id)

        self.materialization.invalidate_prefix(collection_id)
        await self.cache.invalidate_collection(collection_id)
        for path in self.images.storage.atlas_paths(collection_id):
            self.images.storage.delete_file(path)
        logger.info(f"Deleted collection {collection_id}")
        return deleted

    # Membership

    async def add_image(
        self,
        collection_id: UUID,
        name: str,
        raw_bytes: bytes,
        metadata: Optional[dict] = None
    ) -> Image:
        """
        Ingest an image into a collection.

        Adding to a finalized collection marks its embedding stale; the layout
        changes only after finalize(force_recompute=True).

        Raises:
            NotFoundException: Unknown collection
            UnsupportedFormat / CorruptImage: Payload rejected, nothing stored
        """
        collection = await self.repo.get_by_id_or_fail(collection_id)
        image = await self.images.ingest(collection, name, raw_bytes, metadata)
        await self._membership_changed(collection)
        return image

    async def remove_image(self, image_id: UUID) -> Image:
        """
        Delete an image and update its collection's state.

        Raises:
            NotFoundException: Unknown image
        """
        image = await self.images.delete_image(image_id)
        collection = await self.repo.get_by_id(image.collection_id)
        if collection is not None:
            await self._membership_changed(collection)
        return image

    async def _membership_changed(self, collection: Collection):
        if collection.finalized and collection.embedding_valid:
            logger.info(f"Membership of finalized collection {collection.id} changed; embedding is stale")
            await self.repo.mark_stale(collection.id)
        await self.cache.invalidate_collection(collection.id)

    async def invalidate(self, collection_id: UUID) -> Collection:
        """
        Mark the current embedding stale without leaving the finalized state.

        Raises:
            NotFoundException: If collection not found
        """
        collection = await self.repo.get_by_id_or_fail(collection_id)
        if collection.embedding_valid:
            collection = await self.repo.mark_stale(collection_id)
        await self.cache.invalidate_collection(collection_id)
        return collection

    # Finalize

    def default_params(self) -> TsneParams:
        return TsneParams(
            perplexity=self.config.tsne_perplexity,
            iterations=self.config.tsne_iterations,
            learning_rate=self.config.tsne_learning_rate,
            theta=self.config.tsne_theta,
        )

    async def finalize(
        self,
        collection_id: UUID,
        force_recompute: bool = False,
        seed: Optional[int] = None,
        params: Optional[TsneParams] = None,
        metric: Optional[str] = None
    ) -> CollectionEmbedding:
        """
        Finalize a collection, computing its embedding if needed.

        Args:
            collection_id: Collection UUID
            force_recompute: Compute a new generation even if one is published
            seed: Seed of the run (settings default if None)
            params: t-SNE parameters (settings defaults if None)
            metric: Distance metric name (settings default if None)

        Returns:
            The published embedding generation

        Raises:
            NotFoundException: Unknown collection
            AlreadyFinalized: Embedding is stale and force_recompute was not given
            InsufficientData: Fewer than 2 images with features; state unchanged
            Cancelled: The run was cancelled; the previous generation stays
        """
        collection = await self.repo.get_by_id_or_fail(collection_id)

        if collection.finalized and not force_recompute:
            if not collection.embedding_valid:
                raise AlreadyFinalized(str(collection_id))
            current = await self.get_embedding(collection_id)
            if current is not None:
                return current
            logger.warning(f"Collection {collection_id} is finalized without an embedding; recomputing")

        try:
            metric_impl = get_metric(metric or self.config.embedding_metric)
        except ValueError as e:
            raise ValidationException(str(e))

        seed = self.config.embedding_default_seed if seed is None else seed
        params = params or self.default_params()

        compute = partial(self._compute_generation, collection_id, seed, params, metric_impl)
        embedding = await self.materialization.recompute(
            EmbeddingKey(collection_id), compute, detached=True, publish=self._publish_generation
        )

        await self.db.refresh(collection)
        return embedding

    def cancel_finalize(self, collection_id: UUID) -> bool:
        """
        Cancel the in-flight embedding run of a collection.

        A run that is already publishing its generation is not cancelled.

        Returns:
            True if a run was cancelled
        """
        return self.materialization.cancel(EmbeddingKey(collection_id))

    def is_finalizing(self, collection_id: UUID) -> bool:
        return self.materialization.in_flight(EmbeddingKey(collection_id))

    async def _compute_generation(
        self,
        collection_id: UUID,
        seed: int,
        params: TsneParams,
        metric: BaseMetric
    ) -> CollectionEmbedding:
        """Run the engine over the current members; nothing is written."""
        async with self.session_factory() as session:
            collection = await CollectionRepository(session).get_by_id_or_fail(collection_id)
            current = collection.generation
            images = await ImageRepository(session).get_all_by_collection(collection_id)
            features = {image.id: image.feature_vector for image in images}
            stored = await EmbeddingRepository(session).get_max_generation(collection_id)

        previous = await self.materialization.get(EmbeddingKey(collection_id))
        generation = 1 + max(current, stored, previous.generation if previous else 0)

        result = await self._run_engine(collection_id, features, seed, params, metric)

        return CollectionEmbedding(
            collection_id=collection_id,
            generation=generation,
            seed=seed,
            params=params,
            metric=metric.metric_name,
            coordinates=result.coordinates,
            excluded=result.excluded,
            created_at=utcnow(),
        )

    async def _publish_generation(self, embedding: CollectionEmbedding):
        collection_id = embedding.collection_id
        async with self.session_factory() as session:
            await EmbeddingRepository(session).save(embedding)
            await CollectionRepository(session).update(collection_id, {
                "finalized": True,
                "embedding_valid": True,
                "generation": embedding.generation,
            })

        await self.cache.invalidate_collection(collection_id)
        logger.info(
            f"Published generation {embedding.generation} of collection {collection_id}: "
            f"{len(embedding.coordinates)} placed, {len(embedding.excluded)} excluded"
        )

    async def _run_engine(
        self,
        collection_id: UUID,
        features: Mapping[UUID, Optional[FeatureVector]],
        seed: int,
        params: TsneParams,
        metric: BaseMetric
    ) -> EmbeddingResult:
        stop = threading.Event()

        def progress(iteration: int, total: int):
            logger.debug(f"Embedding collection {collection_id}: iteration {iteration}/{total}")

        try:
            return await self.pools.run_embedding(
                embed,
                features,
                seed,
                params,
                metric,
                should_stop=stop.is_set,
                on_progress=progress,
            )
        except asyncio.CancelledError:
            # The worker thread stops at its next iteration boundary
            stop.set()
            raise

    # Reading

    async def get_embedding(self, collection_id: UUID) -> Optional[CollectionEmbedding]:
        """Current embedding generation, from memory, disk, then the database."""
        key = EmbeddingKey(collection_id)
        embedding = await self.materialization.get(key)
        if embedding is not None:
            return embedding

        row = await self.embedding_repo.get_latest(collection_id)
        if row is None:
            return None

        embedding = EmbeddingRepository.to_domain(row)
        await self.materialization.put(key, embedding)
        return embedding

    async def stream_source(
        self,
        collection_id: UUID
    ) -> Tuple[CollectionEmbedding, Dict[UUID, ImageRef]]:
        """
        Embedding and current members of a collection, for tile streaming.

        Coordinates of images deleted since the generation was computed are
        dropped.

        Raises:
            NotFoundException: Unknown collection, or no embedding yet
        """
        await self.repo.get_by_id_or_fail(collection_id)
        embedding = await self.get_embedding(collection_id)
        if embedding is None:
            raise NotFoundException("Embedding", str(collection_id))

        refs = {
            ref.image_id: ref
            for ref in await self.images.get_refs(collection_id)
            if ref.image_id in embedding.coordinates
        }
        return embedding, refs

    async def get_layout(self, collection_id: UUID) -> dict:
        """
        Serializable layout of the current generation.

        Raises:
            NotFoundException: Unknown collection, or no embedding yet
        """
        collection = await self.repo.get_by_id_or_fail(collection_id)
        embedding, refs = await self.stream_source(collection_id)

        cached = await self.cache.get_layout(collection_id, embedding.generation)
        if cached is not None:
            return cached

        members = {ref.image_id for ref in await self.images.get_refs(collection_id)}
        points = []
        for image_id in sorted(refs, key=str):
            ref = refs[image_id]
            x, y = embedding.coordinates[image_id]
            points.append({
                "id": str(image_id),
                "x": x,
                "y": y,
                "width": ref.width,
                "height": ref.height,
            })

        layout = {
            "collection_id": str(collection_id),
            "generation": embedding.generation,
            "seed": embedding.seed,
            "metric": embedding.metric,
            "params": embedding.params.to_dict(),
            "valid": collection.embedding_valid,
            "points": points,
            "excluded": [str(i) for i in embedding.excluded if i in members],
        }
        await self.cache.set_layout(collection_id, embedding.generation, layout)
        return layout
