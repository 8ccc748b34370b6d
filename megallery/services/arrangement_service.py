"""
Arrangements: orderings and grids of a collection's images that need no
embedding run.

* sort: one ordered list of image ids.
* grid expansion: a square grid filled outward from an anchor cell in the
  order of a sort.
* time histogram: one column per time bucket of capture times.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.core.exceptions import NotFoundException, ValidationException
from megallery.embedding import get_metric
from megallery.models.database import Image
from megallery.models.domain import Anchor, GridDistance, SortKey, TimeResolution
from megallery.repositories import CollectionRepository, ImageRepository

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("captured_at", "palette", "camera")

Grid = List[List[Optional[UUID]]]


@dataclass(frozen=True)
class ArrangeFilter:
    """Keeps images that carry every named feature, up to a limit."""

    has_metadata: Tuple[str, ...] = ()
    limit: Optional[int] = None

    def __post_init__(self):
        unknown = [name for name in self.has_metadata if name not in METADATA_FIELDS]
        if unknown:
            raise ValidationException(
                f"unknown metadata field(s): {', '.join(unknown)}. Available: {', '.join(METADATA_FIELDS)}"
            )
        if self.limit is not None and self.limit < 1:
            raise ValidationException(f"limit must be positive, got {self.limit}")

    def apply(self, images: Sequence[Image]) -> List[Image]:
        kept = [image for image in images if all(_has(image, name) for name in self.has_metadata)]
        return kept[:self.limit] if self.limit is not None else kept


@dataclass(frozen=True)
class SortOptions:
    key: SortKey = SortKey.NAME
    descending: bool = False
    compared_to: Optional[UUID] = None
    metric: str = "palette_aspect"


def _has(image: Image, name: str) -> bool:
    features = image.feature_vector
    return features is not None and bool(getattr(features, name))


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _captured_at(image: Image) -> Optional[datetime]:
    features = image.feature_vector
    return _naive_utc(features.captured_at) if features else None


def _similarity_keys(images: Sequence[Image], options: SortOptions) -> Dict[UUID, Optional[float]]:
    try:
        metric = get_metric(options.metric)
    except ValueError as e:
        raise ValidationException(str(e))

    if options.compared_to is None:
        raise ValidationException("similarity sort needs compared_to")
    reference = next((image for image in images if image.id == options.compared_to), None)
    if reference is None:
        raise NotFoundException("Image", str(options.compared_to))

    vectors = {
        image.id: metric.vectorize(image.feature_vector) if image.feature_vector else None
        for image in images
    }
    origin = vectors[reference.id]
    if origin is None:
        raise ValidationException(
            f"image {reference.id} has no {metric.metric_name} features to compare against"
        )
    return {
        image_id: None if vector is None else float(np.linalg.norm(vector - origin))
        for image_id, vector in vectors.items()
    }


def sort_images(images: Sequence[Image], options: SortOptions) -> List[UUID]:
    """
    Image ids in sort order.

    Images without a value for the key come last, by id; ties keep id order
    in either direction.

    Raises:
        ValidationException: Bad metric, or a similarity sort without a usable reference
        NotFoundException: compared_to is not among the images
    """
    if options.key is SortKey.SIMILARITY:
        keys = _similarity_keys(images, options)
    elif options.key is SortKey.CAPTURED_AT:
        keys = {image.id: _captured_at(image) for image in images}
    elif options.key is SortKey.CREATED_AT:
        keys = {image.id: image.created_at for image in images}
    else:
        keys = {image.id: image.name for image in images}

    by_id = sorted(keys, key=str)
    present = [image_id for image_id in by_id if keys[image_id] is not None]
    missing = [image_id for image_id in by_id if keys[image_id] is None]
    present.sort(key=lambda image_id: keys[image_id], reverse=options.descending)
    return present + missing


def _anchor_cell(anchor: Anchor, side: int) -> Tuple[int, int]:
    last = side - 1
    return {
        Anchor.CENTER: (side // 2, side // 2),
        Anchor.TOP_LEFT: (0, 0),
        Anchor.TOP_RIGHT: (0, last),
        Anchor.BOTTOM_LEFT: (last, 0),
        Anchor.BOTTOM_RIGHT: (last, last),
    }[anchor]


def _cell_cost(dy: int, dx: int, distance: GridDistance) -> float:
    if distance is GridDistance.MANHATTAN:
        return dx + dy
    if distance is GridDistance.PYTHAGOREAN:
        return math.hypot(dx, dy)
    near, far = sorted((dx, dy))
    return near * 1.4 + (far - near)


def expansion_grid(image_ids: Sequence[UUID], anchor: Anchor, distance: GridDistance) -> Grid:
    """
    Square grid with an odd side, filled in order of distance from the anchor.

    Cells at equal distance fill row-major. Returns rows of image ids, with
    None for empty cells.
    """
    if not image_ids:
        return []

    side = math.ceil(math.sqrt(len(image_ids)))
    if side % 2 == 0:
        side += 1

    ay, ax = _anchor_cell(anchor, side)
    cells = sorted(
        ((row, col) for row in range(side) for col in range(side)),
        key=lambda cell: (_cell_cost(abs(cell[0] - ay), abs(cell[1] - ax), distance), cell),
    )

    grid: Grid = [[None] * side for _ in range(side)]
    for image_id, (row, col) in zip(image_ids, cells):
        grid[row][col] = image_id
    return grid


def time_histogram(
    images: Sequence[Image],
    resolution: TimeResolution
) -> Tuple[List[str], List[List[UUID]], List[UUID]]:
    """
    Bucket images by capture time.

    Returns:
        Tuple of (bucket labels in time order, one column of ids per label
        ordered by capture time, ids of images without a capture time)
    """
    columns: Dict[str, List[Tuple[datetime, str, UUID]]] = {}
    undated = []
    for image in images:
        captured_at = _captured_at(image)
        if captured_at is None:
            undated.append(image.id)
            continue
        label = captured_at.strftime(resolution.label_format)
        columns.setdefault(label, []).append((captured_at, str(image.id), image.id))

    labels = sorted(columns)
    data = [[entry[2] for entry in sorted(columns[label])] for label in labels]
    return labels, data, sorted(undated, key=str)


class ArrangementService:
    """Arranges the current members of a collection."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = CollectionRepository(db)
        self.image_repo = ImageRepository(db)

    async def _members(self, collection_id: UUID, flt: ArrangeFilter) -> List[Image]:
        await self.repo.get_by_id_or_fail(collection_id)
        images = await self.image_repo.get_all_by_collection(collection_id)
        images = sorted(images, key=lambda image: str(image.id))
        return flt.apply(images)

    async def sort(self, collection_id: UUID, flt: ArrangeFilter, options: SortOptions) -> Dict[str, Any]:
        images = await self._members(collection_id, flt)
        return {"type": "sort", "data": sort_images(images, options)}

    async def grid(
        self,
        collection_id: UUID,
        flt: ArrangeFilter,
        options: SortOptions,
        anchor: Anchor = Anchor.CENTER,
        distance: GridDistance = GridDistance.MANHATTAN
    ) -> Dict[str, Any]:
        """Expansion grid of the members in sort order."""
        images = await self._members(collection_id, flt)
        grid = expansion_grid(sort_images(images, options), anchor, distance)
        logger.debug(f"Arranged {len(images)} images of collection {collection_id} on a "
                     f"{len(grid)}x{len(grid)} grid from {anchor.value}")
        return {"type": "grid", "data": grid, "invert": False}

    async def time_histogram(
        self,
        collection_id: UUID,
        flt: ArrangeFilter,
        resolution: TimeResolution = TimeResolution.DAY
    ) -> Dict[str, Any]:
        """Columns of members per time bucket; columns read bottom up."""
        images = await self._members(collection_id, flt)
        labels, columns, undated = time_histogram(images, resolution)
        return {
            "type": "time_hist",
            "labels": labels,
            "data": columns,
            "invert": True,
            "excluded": undated,
        }
