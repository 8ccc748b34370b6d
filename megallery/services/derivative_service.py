"""Derivative service for generating and serving resized image files."""
import io
import logging
from dataclasses import dataclass
from typing import List, Tuple
from uuid import UUID

from PIL import Image as PILImage, ImageOps

from megallery.core.exceptions import InvalidDimensions, NotFoundException
from megallery.core.workers import WorkerPools
from megallery.models.domain import DerivativeBuffer, DerivativeKey, DerivativeKind
from megallery.services.feature_service import decode_image, extension_for
from megallery.services.materialization_cache import MaterializationCache

logger = logging.getLogger(__name__)

# Pre-generated thumbnail boxes, smallest first
STANDARD_SIZES = (30, 500, 1000)

DEFAULT_QUALITY = 80


@dataclass(frozen=True)
class ImageRef:
    """What the derivative layer needs to know about a stored image."""

    collection_id: UUID
    image_id: UUID
    width: int
    height: int


def fit_within(src_width: int, src_height: int, box_width: int, box_height: int) -> Tuple[int, int]:
    """
    Largest size with the source aspect that fits inside a box, never upscaled.

    Returns:
        Tuple of (width, height), each at least 1
    """
    scale = min(box_width / src_width, box_height / src_height, 1.0)
    return max(1, round(src_width * scale)), max(1, round(src_height * scale))


def standard_sizes(width: int, height: int) -> List[Tuple[int, int]]:
    """Boxes of the standard ladder that shrink an image of the given size."""
    return [(edge, edge) for edge in STANDARD_SIZES if width > edge or height > edge]


def output_size(ref: ImageRef, width: int, height: int, kind: DerivativeKind) -> Tuple[int, int]:
    """Pixel size of the derivative a key produces, without generating it."""
    if kind is DerivativeKind.THUMBNAIL:
        return fit_within(ref.width, ref.height, width, height)
    return width, height


def _has_alpha(img: PILImage.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )


def _encode(img: PILImage.Image, fmt: str, quality: int) -> bytes:
    """Encode with fixed options so equal pixels give equal bytes."""
    buffer = io.BytesIO()

    if fmt == "JPEG":
        img.convert("RGB").save(buffer, "JPEG", quality=quality, progressive=True)
    elif fmt == "WEBP":
        img.save(buffer, "WEBP", quality=quality, method=4)
    elif fmt == "PNG":
        img.save(buffer, "PNG", compress_level=6)
    elif fmt == "GIF":
        img.save(buffer, "GIF")
    elif fmt == "BMP":
        img.convert("RGB").save(buffer, "BMP")
    else:
        img.save(buffer, fmt)

    return buffer.getvalue()


def generate(
    source_bytes: bytes,
    width: int,
    height: int,
    kind: DerivativeKind,
    quality: int = DEFAULT_QUALITY
) -> DerivativeBuffer:
    """
    Produce a derivative of an encoded source image.

    Thumbnails fit inside the box keeping the aspect ratio, previews cover
    the box and are centre-cropped to it, and the Original is the source
    payload itself. Output uses the source encoding without metadata.

    Args:
        source_bytes: Encoded source image
        width: Requested box width
        height: Requested box height
        kind: Derivative kind
        quality: Lossy encoder quality

    Returns:
        DerivativeBuffer with encoded bytes and extension

    Raises:
        InvalidDimensions: Non-positive box, or Original at a size other than the source
        UnsupportedFormat / CorruptImage: Source does not decode
    """
    if width <= 0 or height <= 0:
        raise InvalidDimensions(width, height)

    with decode_image(source_bytes) as img:
        fmt = img.format
        extension = extension_for(img)
        oriented = ImageOps.exif_transpose(img)

        if kind is DerivativeKind.ORIGINAL:
            if (width, height) != oriented.size:
                raise InvalidDimensions(
                    width, height,
                    f"original is {oriented.width}x{oriented.height}"
                )
            return DerivativeBuffer(source_bytes, extension)

        working = oriented.convert("RGBA" if _has_alpha(oriented) else "RGB")

        if kind is DerivativeKind.THUMBNAIL:
            size = fit_within(working.width, working.height, width, height)
            resized = working.resize(size, PILImage.Resampling.LANCZOS)
        else:
            resized = ImageOps.fit(
                working,
                (width, height),
                method=PILImage.Resampling.LANCZOS,
                centering=(0.5, 0.5),
            )

        return DerivativeBuffer(_encode(resized, fmt, quality), extension)


class DerivativeService:
    """Serves derivatives through the materialization cache."""

    def __init__(
        self,
        cache: MaterializationCache,
        pools: WorkerPools,
        quality: int = DEFAULT_QUALITY
    ):
        """
        Initialize derivative service.

        Args:
            cache: Materialization cache shared by every request
            pools: Worker pools; generation runs on the request pool
            quality: Lossy encoder quality
        """
        self.cache = cache
        self.pools = pools
        self.quality = quality

    @staticmethod
    def original_key(ref: ImageRef) -> DerivativeKey:
        return DerivativeKey(
            ref.collection_id, ref.image_id, ref.width, ref.height, DerivativeKind.ORIGINAL
        )

    async def store_original(self, ref: ImageRef, buffer: DerivativeBuffer) -> bool:
        """Persist an uploaded payload as the image's Original."""
        return await self.cache.put(self.original_key(ref), buffer)

    async def get_original(self, ref: ImageRef) -> DerivativeBuffer:
        """
        Get the Original payload of an image.

        Raises:
            NotFoundException: No stored payload for the image
        """
        async def missing() -> DerivativeBuffer:
            raise NotFoundException("Image file", str(ref.image_id))

        return await self.cache.get_or_compute(self.original_key(ref), missing)

    async def get_derivative(
        self,
        ref: ImageRef,
        width: int,
        height: int,
        kind: DerivativeKind
    ) -> DerivativeBuffer:
        """
        Get a derivative, generating it at most once per key.

        Args:
            ref: Source image
            width: Requested box width
            height: Requested box height
            kind: Derivative kind

        Returns:
            DerivativeBuffer

        Raises:
            InvalidDimensions: Non-positive box or Original at the wrong size
            NotFoundException: Source payload missing
        """
        if width <= 0 or height <= 0:
            raise InvalidDimensions(width, height)

        if kind is DerivativeKind.ORIGINAL:
            if (width, height) != (ref.width, ref.height):
                raise InvalidDimensions(width, height, f"original is {ref.width}x{ref.height}")
            return await self.get_original(ref)

        key = DerivativeKey(ref.collection_id, ref.image_id, width, height, kind)

        async def compute() -> DerivativeBuffer:
            source = await self.get_original(ref)
            logger.debug(f"Generating {kind.value} {width}x{height} of image {ref.image_id}")
            return await self.pools.run(generate, source.data, width, height, kind, self.quality)

        return await self.cache.get_or_compute(key, compute)

    async def warm_standard_sizes(self, ref: ImageRef) -> int:
        """
        Generate the standard thumbnail ladder of an image.

        Failures are logged and skipped.

        Returns:
            Number of thumbnails available afterwards
        """
        ready = 0
        for box_width, box_height in standard_sizes(ref.width, ref.height):
            try:
                await self.get_derivative(ref, box_width, box_height, DerivativeKind.THUMBNAIL)
                ready += 1
            except Exception as e:
                logger.warning(
                    f"Could not pre-generate {box_width}x{box_height} thumbnail "
                    f"of image {ref.image_id}: {e}"
                )
        return ready

    def forget_image(self, ref: ImageRef):
        """Drop an image's derivatives from memory."""
        self.cache.invalidate_image(ref.collection_id, ref.image_id)
