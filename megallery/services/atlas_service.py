"""
Texture atlases.

An atlas packs small thumbnails of many images into a single PNG together
with a mapping from image id to the rectangle it occupies, so a client can
draw a whole collection from one download.

Icon sizes come from repeatedly halving each image until it fits the icon
box, then halving every icon again while the total area exceeds the atlas
budget. Icons are placed row by row, tallest first, in rows about as wide as
the square root of the total area.
"""
import asyncio
import base64
import io
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from PIL import Image as PILImage

from megallery.core.exceptions import MegalleryException, ValidationException
from megallery.core.workers import WorkerPools
from megallery.models.domain import DerivativeKind
from megallery.services.derivative_service import DerivativeService, ImageRef, fit_within
from megallery.services.storage_service import StorageService

logger = logging.getLogger(__name__)

Size = Tuple[int, int]


@dataclass(frozen=True)
class AtlasParams:
    """Icon box and area budget of an atlas."""

    icon_max_width: int
    icon_max_height: int
    max_area: int

    def __post_init__(self):
        if self.icon_max_width < 1 or self.icon_max_height < 1:
            raise ValidationException(
                f"icon box must be positive, got {self.icon_max_width}x{self.icon_max_height}"
            )
        if self.max_area <= 1:
            raise ValidationException(f"atlas area must be greater than 1, got {self.max_area}")

    def to_dict(self) -> dict:
        return {
            "icon_max_width": self.icon_max_width,
            "icon_max_height": self.icon_max_height,
            "max_area": self.max_area,
        }


@dataclass(frozen=True)
class AtlasPlacement:
    """Rectangle of one image inside the atlas."""

    image_id: UUID
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> dict:
        return {
            "id": str(self.image_id),
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AtlasPlacement":
        return cls(UUID(data["id"]), data["x"], data["y"], data["width"], data["height"])


@dataclass(frozen=True)
class Atlas:
    width: int
    height: int
    placements: Tuple[AtlasPlacement, ...]
    data: bytes
    generation: Optional[int] = None

    def to_dict(self) -> dict:
        """JSON-ready form with the PNG base64 encoded."""
        return {
            "width": self.width,
            "height": self.height,
            "generation": self.generation,
            "mapping": [p.to_dict() for p in self.placements],
            "data": base64.b64encode(self.data).decode("ascii"),
        }


def _halve(size: Size) -> Size:
    return max(1, size[0] // 2), max(1, size[1] // 2)


def icon_boxes(refs: Sequence[ImageRef], params: AtlasParams) -> Dict[UUID, Size]:
    """
    Icon box of every image.

    Returns:
        Mapping of image id to (width, height), in the order of refs
    """
    boxes = {}
    for ref in refs:
        size = (ref.width, ref.height)
        while size[0] > params.icon_max_width or size[1] > params.icon_max_height:
            size = _halve(size)
        boxes[ref.image_id] = size

    # Each halving quarters the area
    total_area = sum(w * h for w, h in boxes.values())
    factor = 0
    while total_area > params.max_area:
        factor += 1
        total_area //= 4

    if factor:
        for image_id, size in boxes.items():
            for _ in range(factor):
                size = _halve(size)
            boxes[image_id] = size
    return boxes


def pack(sizes: Dict[UUID, Size]) -> Tuple[List[AtlasPlacement], int, int]:
    """
    Place icons in rows, tallest first.

    An icon wider than the remaining row starts the next row; an icon wider
    than the whole row still takes the start of one and widens the atlas.

    Returns:
        Tuple of (placements, atlas width, atlas height)
    """
    order = sorted(sizes.items(), key=lambda item: (-item[1][1], str(item[0])))
    total_area = sum(w * h for w, h in sizes.values())

    width = max(1, int(math.sqrt(total_area)))
    x = y = row_height = 0
    placements = []
    for image_id, (w, h) in order:
        if x > 0 and x + w > width:
            x = 0
            y += row_height
            row_height = 0
        width = max(width, x + w)
        row_height = max(row_height, h)
        placements.append(AtlasPlacement(image_id, x, y, w, h))
        x += w

    return placements, width, max(1, y + row_height)


def compose(placements: Sequence[AtlasPlacement], icons: Dict[UUID, bytes], width: int, height: int) -> bytes:
    """Paste encoded icons at their placements and encode the atlas as PNG."""
    atlas = PILImage.new("RGBA", (width, height), (0, 0, 0, 0))
    for placement in placements:
        with PILImage.open(io.BytesIO(icons[placement.image_id])) as icon:
            icon = icon.convert("RGBA")
            if icon.size != (placement.width, placement.height):
                icon = icon.resize((placement.width, placement.height), PILImage.Resampling.LANCZOS)
            atlas.paste(icon, (placement.x, placement.y))

    buffer = io.BytesIO()
    atlas.save(buffer, "PNG", compress_level=6)
    return buffer.getvalue()


class AtlasService:
    """Builds atlases from thumbnails served through the derivative cache."""

    def __init__(self, derivatives: DerivativeService, pools: WorkerPools, storage: StorageService):
        self.derivatives = derivatives
        self.pools = pools
        self.storage = storage

    async def build(
        self,
        refs: Sequence[ImageRef],
        params: AtlasParams,
        generation: Optional[int] = None
    ) -> Atlas:
        """
        Build an atlas of the given images.

        Images whose thumbnail cannot be produced are left out of the
        mapping and logged.
        """
        by_id = {ref.image_id: ref for ref in refs}
        boxes = icon_boxes(refs, params)

        results = await asyncio.gather(
            *[
                self.derivatives.get_derivative(by_id[image_id], w, h, DerivativeKind.THUMBNAIL)
                for image_id, (w, h) in boxes.items()
            ],
            return_exceptions=True
        )

        icons: Dict[UUID, bytes] = {}
        sizes: Dict[UUID, Size] = {}
        for (image_id, (w, h)), result in zip(boxes.items(), results):
            if isinstance(result, MegalleryException):
                logger.warning(f"Leaving image {image_id} out of the atlas: {result.message}")
                continue
            if isinstance(result, BaseException):
                raise result
            ref = by_id[image_id]
            icons[image_id] = result.data
            sizes[image_id] = fit_within(ref.width, ref.height, w, h)

        placements, width, height = pack(sizes)
        data = await self.pools.run(compose, placements, icons, width, height)

        logger.info(f"Built {width}x{height} atlas of {len(placements)} images ({len(data)} bytes)")
        return Atlas(width, height, tuple(placements), data, generation)

    async def get_static(
        self,
        collection_id: UUID,
        refs: Sequence[ImageRef],
        generation: int,
        params: AtlasParams
    ) -> Atlas:
        """
        The stored atlas of a collection, rebuilt when its generation, members
        or parameters no longer match.
        """
        image_path, mapping_path = self.storage.atlas_paths(collection_id)
        members = sorted(str(ref.image_id) for ref in refs)

        document = await asyncio.to_thread(self.storage.read_json, mapping_path)
        if (
            document
            and document.get("generation") == generation
            and document.get("params") == params.to_dict()
            and document.get("members") == members
            and image_path.exists()
        ):
            data = await asyncio.to_thread(self.storage.read_file, image_path)
            return Atlas(
                document["width"],
                document["height"],
                tuple(AtlasPlacement.from_dict(p) for p in document["mapping"]),
                data,
                generation,
            )

        atlas = await self.build(refs, params, generation)
        # The mapping goes last: it only ever describes a complete image
        await asyncio.to_thread(self.storage.save_file, atlas.data, image_path)
        await asyncio.to_thread(self.storage.write_json, {
            "generation": generation,
            "params": params.to_dict(),
            "members": members,
            "width": atlas.width,
            "height": atlas.height,
            "mapping": [p.to_dict() for p in atlas.placements],
        }, mapping_path)
        logger.info(f"Stored static atlas of collection {collection_id} (generation {generation})")
        return atlas

    def forget(self, collection_id: UUID):
        for path in self.storage.atlas_paths(collection_id):
            self.storage.delete_file(path)
