"""Image service for ingesting, serving and deleting images."""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from megallery.core.exceptions import InvalidDimensions, NotFoundException, PayloadTooLarge
from megallery.core.workers import WorkerPools
from megallery.models.database import Collection, Image
from megallery.models.domain import DerivativeBuffer, DerivativeKind
from megallery.models.schemas.common import PaginationParams
from megallery.repositories import DerivativeRepository, ImageRepository
from megallery.services import feature_service
from megallery.services.derivative_service import DerivativeService, ImageRef, output_size
from megallery.services.storage_service import StorageService

logger = logging.getLogger(__name__)

# Strong references to fire-and-forget warm-up tasks
_background_tasks: Set[asyncio.Task] = set()


@dataclass(frozen=True)
class BulkFile:
    """One file of a bulk fetch, with its pixel size."""

    image_id: UUID
    width: int
    height: int
    extension: str
    data: bytes


class ImageService:
    """Service for image operations."""

    def __init__(
        self,
        db: AsyncSession,
        storage: StorageService,
        derivatives: DerivativeService,
        pools: WorkerPools,
        pregenerate: bool = True
    ):
        """
        Initialize image service.

        Args:
            db: Database session
            storage: Storage service
            derivatives: Derivative service backed by the shared cache
            pools: Worker pools for extraction
            pregenerate: Warm the standard thumbnail sizes after upload
        """
        self.db = db
        self.storage = storage
        self.derivatives = derivatives
        self.pools = pools
        self.pregenerate = pregenerate
        self.repo = ImageRepository(db)
        self.derivative_repo = DerivativeRepository(db)

    @staticmethod
    def ref(image: Image) -> ImageRef:
        return ImageRef(image.collection_id, image.id, image.width, image.height)

    async def get_image(self, image_id: UUID) -> Image:
        """
        Get image by ID.

        Raises:
            NotFoundException: If image not found
        """
        return await self.repo.get_by_id_or_fail(image_id)

    async def list_images(
        self,
        collection_id: UUID,
        pagination: PaginationParams
    ) -> Tuple[List[Image], int]:
        """
        List the images of a collection.

        Returns:
            Tuple of (images list, total count)
        """
        skip = (pagination.page - 1) * pagination.page_size
        images = await self.repo.get_by_collection(
            collection_id,
            skip=skip,
            limit=pagination.page_size
        )
        total = await self.repo.count_by_collection(collection_id)
        return images, total

    async def get_refs(self, collection_id: UUID) -> List[ImageRef]:
        images = await self.repo.get_all_by_collection(collection_id)
        return [self.ref(image) for image in images]

    async def ingest(
        self,
        collection: Collection,
        name: str,
        raw_bytes: bytes,
        metadata: Optional[dict] = None
    ) -> Image:
        """
        Ingest an uploaded image.

        Features are extracted before anything is written, so a payload that
        does not decode leaves no record and no blob behind.

        Args:
            collection: Owning collection
            name: Display name
            raw_bytes: Encoded image payload
            metadata: Extra structured metadata to store

        Returns:
            Created image model

        Raises:
            UnsupportedFormat: Unrecognized encoding
            CorruptImage: Payload does not decode
        """
        extraction = await self.pools.run(feature_service.extract, raw_bytes)
        features = extraction.features

        image = Image(
            id=uuid.uuid4(),
            collection_id=collection.id,
            name=name,
            width=features.width,
            height=features.height,
            extension=extraction.extension,
            byte_size=len(raw_bytes),
            features=features.to_dict(),
            extra_metadata={"format": extraction.format, "exif": extraction.exif, **(metadata or {})},
        )
        image = await self.repo.create(image)
        ref = self.ref(image)

        try:
            await self.derivatives.store_original(
                ref, DerivativeBuffer(raw_bytes, extraction.extension)
            )
            await self._record(ref, features.width, features.height, DerivativeKind.ORIGINAL,
                               extraction.extension, len(raw_bytes))
        except Exception:
            self.storage.delete_directory(self.storage.image_dir(image.id))
            raise

        logger.info(f"Ingested image {image.id} ({name}, {image.width}x{image.height}) "
                    f"into collection {collection.id}")

        if self.pregenerate:
            task = asyncio.create_task(self.derivatives.warm_standard_sizes(ref))
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)

        return image

    async def get_derivative(
        self,
        image_id: UUID,
        width: int,
        height: int,
        kind: DerivativeKind
    ) -> DerivativeBuffer:
        """
        Get a derivative of an image, generating it on first request.

        Raises:
            NotFoundException: Unknown image
            InvalidDimensions: Non-positive box or Original at the wrong size
        """
        image = await self.repo.get_by_id_or_fail(image_id)
        ref = self.ref(image)
        buffer = await self.derivatives.get_derivative(ref, width, height, kind)
        await self._record(ref, width, height, kind, buffer.extension, len(buffer))
        return buffer

    async def get_metadata_bulk(self, image_ids: Sequence[UUID]) -> List[Image]:
        """Images among the given ids, in request order; unknown ids are skipped."""
        found = {image.id: image for image in await self.repo.get_by_ids(image_ids)}
        return [found[image_id] for image_id in image_ids if image_id in found]

    async def get_files_bulk(
        self,
        entries: Sequence[Tuple[UUID, int, int]],
        max_bytes: int
    ) -> List[Optional[BulkFile]]:
        """
        Fetch one file per (image id, box width, box height) entry.

        Each entry gets the largest stored file of its image that fits the
        box, or a thumbnail generated at the box when none does. Unknown
        images and images without a payload give None.

        Raises:
            InvalidDimensions: Non-positive box
            PayloadTooLarge: Files add up to more than max_bytes
        """
        for _, width, height in entries:
            if width <= 0 or height <= 0:
                raise InvalidDimensions(width, height)

        images = {image.id: image for image in await self.repo.get_by_ids(e[0] for e in entries)}

        plans = []
        for image_id, width, height in entries:
            image = images.get(image_id)
            if image is None:
                plans.append(None)
                continue
            record = await self.derivative_repo.get_largest_within(image_id, width, height)
            if record is None:
                plans.append((self.ref(image), width, height, DerivativeKind.THUMBNAIL))
            else:
                plans.append((self.ref(image), record.width, record.height, record.derivative_kind))

        async def fetch(plan) -> Optional[DerivativeBuffer]:
            if plan is None:
                return None
            ref, width, height, kind = plan
            try:
                return await self.derivatives.get_derivative(ref, width, height, kind)
            except NotFoundException as e:
                logger.warning(f"No file for image {ref.image_id} in bulk fetch: {e.message}")
                return None

        buffers = await asyncio.gather(*[fetch(plan) for plan in plans])

        total = sum(len(buffer) for buffer in buffers if buffer is not None)
        if total > max_bytes:
            raise PayloadTooLarge(total, max_bytes)

        files = []
        for plan, buffer in zip(plans, buffers):
            if buffer is None:
                files.append(None)
                continue
            ref, width, height, kind = plan
            await self._record(ref, width, height, kind, buffer.extension, len(buffer))
            pixel_width, pixel_height = output_size(ref, width, height, kind)
            files.append(BulkFile(ref.image_id, pixel_width, pixel_height, buffer.extension, buffer.data))

        logger.info(f"Bulk fetch served {sum(f is not None for f in files)} of {len(entries)} files "
                    f"({total} bytes)")
        return files

    async def _record(
        self,
        ref: ImageRef,
        width: int,
        height: int,
        kind: DerivativeKind,
        extension: str,
        byte_size: int
    ):
        path = self.storage.derivative_path(ref.image_id, width, height, kind, extension)
        await self.derivative_repo.record(
            ref.image_id, width, height, kind, extension, self.storage.relative(path), byte_size
        )

    async def delete_image(self, image_id: UUID) -> Image:
        """
        Delete an image with its derivative records, blobs and cache entries.

        Returns:
            The deleted image model (detached)

        Raises:
            NotFoundException: If image not found
        """
        image = await self.repo.get_by_id_or_fail(image_id)
        ref = self.ref(image)

        await self.derivative_repo.delete_for_image(image_id)
        await self.repo.delete(image_id)

        self.derivatives.forget_image(ref)
        self.storage.delete_directory(self.storage.image_dir(image_id))

        logger.info(f"Deleted image {image_id} from collection {image.collection_id}")
        return image
