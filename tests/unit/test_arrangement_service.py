"""Unit tests for sort, grid and time histogram arrangements."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from megallery.core.exceptions import NotFoundException, ValidationException
from megallery.models.domain import Anchor, GridDistance, SortKey, TimeResolution
from megallery.repositories import ImageRepository
from megallery.services.arrangement_service import (
    ArrangeFilter,
    SortOptions,
    expansion_grid,
    sort_images,
    time_histogram,
)
from tests.factories import BLUES, REDS, ImageFactory, make_features


def image(name="img", captured_at=None, color=(200, 30, 30), **kwargs):
    return ImageFactory.create(name=name, feature_vector=make_features(color, captured_at=captured_at), **kwargs)


def ids(n):
    return [UUID(int=i + 1) for i in range(n)]


class TestSort:
    """Test sort orders."""

    def test_by_name(self):
        images = [image("b"), image("c"), image("a")]

        ascending = sort_images(images, SortOptions(SortKey.NAME))
        descending = sort_images(images, SortOptions(SortKey.NAME, descending=True))

        assert ascending == [images[2].id, images[0].id, images[1].id]
        assert descending == list(reversed(ascending))

    def test_ties_keep_id_order_both_ways(self):
        images = [image("same", id=UUID(int=2)), image("same", id=UUID(int=1))]

        for descending in (False, True):
            order = sort_images(images, SortOptions(SortKey.NAME, descending=descending))
            assert order == [UUID(int=1), UUID(int=2)]

    def test_missing_capture_time_sorts_last(self):
        base = datetime(2021, 6, 1, 12, 0)
        early = image(captured_at=base)
        late = image(captured_at=base + timedelta(days=1))
        undated = image()

        for descending, dated in ((False, [early.id, late.id]), (True, [late.id, early.id])):
            order = sort_images([undated, late, early], SortOptions(SortKey.CAPTURED_AT, descending=descending))
            assert order == dated + [undated.id]

    def test_aware_and_naive_capture_times_compare(self):
        naive = image(captured_at=datetime(2021, 6, 1, 12, 0))
        aware = image(captured_at=datetime(2021, 6, 1, 13, 0, tzinfo=timezone(timedelta(hours=2))))

        assert sort_images([naive, aware], SortOptions(SortKey.CAPTURED_AT)) == [aware.id, naive.id]

    def test_by_created_at(self):
        older = image(created_at=datetime(2020, 1, 1))
        newer = image(created_at=datetime(2020, 1, 2))

        assert sort_images([newer, older], SortOptions(SortKey.CREATED_AT)) == [older.id, newer.id]

    def test_similarity_puts_reference_and_its_group_first(self):
        reds = [image(f"r{i}", color=c) for i, c in enumerate(REDS)]
        blues = [image(f"b{i}", color=c) for i, c in enumerate(BLUES)]

        order = sort_images(
            blues + reds,
            SortOptions(SortKey.SIMILARITY, compared_to=reds[0].id, metric="palette"),
        )

        assert order[0] == reds[0].id
        assert set(order[:4]) == {r.id for r in reds}

    @pytest.mark.parametrize("options,error", [
        (SortOptions(SortKey.SIMILARITY), ValidationException),
        (SortOptions(SortKey.SIMILARITY, compared_to=uuid.uuid4()), NotFoundException),
        (SortOptions(SortKey.SIMILARITY, compared_to=uuid.uuid4(), metric="nope"), ValidationException),
    ])
    def test_invalid_similarity_sort(self, options, error):
        with pytest.raises(error):
            sort_images([image()], options)


class TestFilter:
    """Test metadata filters and limits."""

    def test_has_metadata(self):
        dated = image(captured_at=datetime(2021, 1, 1))
        undated = image()

        assert ArrangeFilter(("captured_at",)).apply([dated, undated]) == [dated]
        assert ArrangeFilter(("palette",)).apply([dated, undated]) == [dated, undated]

    def test_limit(self):
        images = [image() for _ in range(5)]
        assert ArrangeFilter(limit=2).apply(images) == images[:2]

    @pytest.mark.parametrize("kwargs", [{"has_metadata": ("colour",)}, {"limit": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationException):
            ArrangeFilter(**kwargs)


class TestExpansionGrid:
    """Test grids filled outward from an anchor."""

    def test_center_fills_cross_first(self):
        a, b, c, d, e = ids(5)

        grid = expansion_grid([a, b, c, d, e], Anchor.CENTER, GridDistance.MANHATTAN)

        assert grid == [
            [None, b, None],
            [c, a, d],
            [None, e, None],
        ]

    @pytest.mark.parametrize("distance,fourth", [
        (GridDistance.MANHATTAN, (0, 2)),
        (GridDistance.PSEUDO_PYTHAGOREAN, (1, 1)),
        (GridDistance.PYTHAGOREAN, (1, 1)),
    ])
    def test_distance_decides_diagonal(self, distance, fourth):
        image_ids = ids(4)

        grid = expansion_grid(image_ids, Anchor.TOP_LEFT, distance)

        assert grid[0][0] == image_ids[0]
        row, col = fourth
        assert grid[row][col] == image_ids[3]

    @pytest.mark.parametrize("anchor,cell", [
        (Anchor.TOP_RIGHT, (0, 2)),
        (Anchor.BOTTOM_LEFT, (2, 0)),
        (Anchor.BOTTOM_RIGHT, (2, 2)),
    ])
    def test_corner_anchors(self, anchor, cell):
        image_ids = ids(2)
        grid = expansion_grid(image_ids, anchor, GridDistance.MANHATTAN)
        assert grid[cell[0]][cell[1]] == image_ids[0]

    def test_every_image_placed_on_odd_square(self):
        for n in range(1, 40):
            grid = expansion_grid(ids(n), Anchor.CENTER, GridDistance.PYTHAGOREAN)
            side = len(grid)
            assert side % 2 == 1
            assert all(len(row) == side for row in grid)
            assert sorted(cell for row in grid for cell in row if cell is not None) == ids(n)

    def test_empty(self):
        assert expansion_grid([], Anchor.CENTER, GridDistance.MANHATTAN) == []


class TestTimeHistogram:
    """Test bucketing by capture time."""

    def test_day_columns(self):
        late = image(captured_at=datetime(2021, 6, 1, 10, 0))
        early = image(captured_at=datetime(2021, 6, 1, 8, 0))
        next_day = image(captured_at=datetime(2021, 6, 2, 9, 0))
        undated = image()

        labels, columns, excluded = time_histogram([late, next_day, undated, early], TimeResolution.DAY)

        assert labels == ["2021-152", "2021-153"]
        assert columns == [[early.id, late.id], [next_day.id]]
        assert excluded == [undated.id]

    @pytest.mark.parametrize("resolution,expected", [
        (TimeResolution.HOUR, ["2021-152 08", "2021-152 10", "2021-153 09"]),
        (TimeResolution.WEEK, ["2021-22"]),
        (TimeResolution.MONTH, ["2021-06"]),
        (TimeResolution.YEAR, ["2021"]),
    ])
    def test_resolutions(self, resolution, expected):
        images = [
            image(captured_at=datetime(2021, 6, 1, 10, 0)),
            image(captured_at=datetime(2021, 6, 1, 8, 0)),
            image(captured_at=datetime(2021, 6, 2, 9, 0)),
        ]

        labels, _, _ = time_histogram(images, resolution)

        assert labels == expected


@pytest.mark.asyncio
class TestArrangementService:
    """Test arranging stored collection members."""

    async def _collection(self, collection_service, db_session, names):
        collection = await collection_service.create_collection("arrange")
        repo = ImageRepository(db_session)
        for name in names:
            await repo.create(image(name, collection_id=collection.id))
        return collection

    async def test_sort(self, arrangement_service, collection_service, db_session):
        collection = await self._collection(collection_service, db_session, ["b", "a", "c"])

        result = await arrangement_service.sort(collection.id, ArrangeFilter(), SortOptions())

        images = {i.id: i.name for i in await ImageRepository(db_session).get_all_by_collection(collection.id)}
        assert result["type"] == "sort"
        assert [images[i] for i in result["data"]] == ["a", "b", "c"]

    async def test_grid_and_histogram(self, arrangement_service, collection_service, db_session):
        collection = await self._collection(collection_service, db_session, ["a", "b", "c", "d"])

        grid = await arrangement_service.grid(collection.id, ArrangeFilter(limit=3), SortOptions())
        histogram = await arrangement_service.time_histogram(collection.id, ArrangeFilter())

        assert grid["type"] == "grid"
        assert len(grid["data"]) == 3
        assert sum(cell is not None for row in grid["data"] for cell in row) == 3
        assert histogram["invert"] is True
        assert histogram["data"] == []
        assert len(histogram["excluded"]) == 4

    async def test_unknown_collection(self, arrangement_service):
        with pytest.raises(NotFoundException):
            await arrangement_service.sort(uuid.uuid4(), ArrangeFilter(), SortOptions())
