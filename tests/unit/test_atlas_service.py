"""Unit tests for atlas sizing, packing and building."""
from __future__ import annotations

import base64
import io
import uuid
from uuid import UUID

import pytest
from PIL import Image as PILImage

from megallery.core.exceptions import ValidationException
from megallery.services.atlas_service import AtlasParams, AtlasPlacement, compose, icon_boxes, pack
from megallery.services.derivative_service import ImageRef
from tests.factories import make_image_bytes

BIG = AtlasParams(64, 64, 4096 * 4096)


def ref(width: int, height: int, image_id: UUID = None) -> ImageRef:
    return ImageRef(uuid.uuid4(), image_id or uuid.uuid4(), width, height)


def overlaps(a: AtlasPlacement, b: AtlasPlacement) -> bool:
    return a.x < b.x + b.width and b.x < a.x + a.width and a.y < b.y + b.height and b.y < a.y + a.height


class TestIconBoxes:
    """Test halving into the icon box and the area budget."""

    def test_halves_until_inside_box(self):
        r = ref(640, 480)
        assert icon_boxes([r], BIG) == {r.image_id: (40, 30)}

    def test_small_image_keeps_size(self):
        r = ref(20, 10)
        assert icon_boxes([r], BIG) == {r.image_id: (20, 10)}

    def test_thin_image_keeps_one_pixel(self):
        r = ref(1000, 1)
        assert icon_boxes([r], BIG) == {r.image_id: (62, 1)}

    def test_area_budget_halves_every_icon(self):
        refs = [ref(40, 30) for _ in range(4)]

        boxes = icon_boxes(refs, AtlasParams(64, 64, 2000))

        assert set(boxes.values()) == {(20, 15)}

    @pytest.mark.parametrize("kwargs", [
        {"icon_max_width": 0, "icon_max_height": 64, "max_area": 100},
        {"icon_max_width": 64, "icon_max_height": -1, "max_area": 100},
        {"icon_max_width": 64, "icon_max_height": 64, "max_area": 1},
    ])
    def test_invalid_params(self, kwargs):
        with pytest.raises(ValidationException):
            AtlasParams(**kwargs)


class TestPack:
    """Test row packing."""

    def test_tallest_first_then_wraps(self):
        a, b, c = UUID(int=1), UUID(int=2), UUID(int=3)

        placements, width, height = pack({b: (10, 10), a: (10, 20), c: (10, 10)})

        assert (width, height) == (20, 30)
        assert placements == [
            AtlasPlacement(a, 0, 0, 10, 20),
            AtlasPlacement(b, 10, 0, 10, 10),
            AtlasPlacement(c, 0, 20, 10, 10),
        ]

    def test_wide_icon_widens_atlas(self):
        image_id = uuid.uuid4()

        placements, width, height = pack({image_id: (100, 5)})

        assert placements == [AtlasPlacement(image_id, 0, 0, 100, 5)]
        assert (width, height) == (100, 5)

    def test_empty(self):
        assert pack({}) == ([], 1, 1)

    def test_no_overlap_and_inside_bounds(self):
        sizes = {uuid.uuid4(): (w, h) for w, h in [(40, 30), (17, 64), (64, 8), (3, 3), (33, 33), (64, 64), (1, 50)]}

        placements, width, height = pack(sizes)

        assert {p.image_id for p in placements} == set(sizes)
        for p in placements:
            assert 0 <= p.x and p.x + p.width <= width
            assert 0 <= p.y and p.y + p.height <= height
        for i, a in enumerate(placements):
            for b in placements[i + 1:]:
                assert not overlaps(a, b)


class TestCompose:
    """Test pasting icons into the atlas image."""

    def test_pixels_land_at_placements(self):
        red, blue = uuid.uuid4(), uuid.uuid4()
        icons = {
            red: make_image_bytes(size=(4, 4), color=(255, 0, 0)),
            blue: make_image_bytes(size=(2, 2), color=(0, 0, 255)),
        }
        placements = [AtlasPlacement(red, 0, 0, 4, 4), AtlasPlacement(blue, 4, 0, 2, 2)]

        data = compose(placements, icons, 6, 4)

        with PILImage.open(io.BytesIO(data)) as atlas:
            assert atlas.format == "PNG"
            assert atlas.mode == "RGBA"
            assert atlas.size == (6, 4)
            assert atlas.getpixel((3, 3)) == (255, 0, 0, 255)
            assert atlas.getpixel((5, 1)) == (0, 0, 255, 255)
            # Unused corner stays transparent
            assert atlas.getpixel((5, 3))[3] == 0

    def test_resizes_mismatched_icon(self):
        image_id = uuid.uuid4()
        icons = {image_id: make_image_bytes(size=(8, 8), color=(0, 200, 0))}

        data = compose([AtlasPlacement(image_id, 0, 0, 4, 4)], icons, 4, 4)

        with PILImage.open(io.BytesIO(data)) as atlas:
            assert atlas.size == (4, 4)
            assert atlas.getpixel((3, 3))[:3] == pytest.approx((0, 200, 0), abs=3)


@pytest.mark.asyncio
class TestAtlasService:
    """Test building atlases from stored images."""

    async def _refs(self, collection_service, image_service, sizes):
        collection = await collection_service.create_collection("atlas")
        refs = []
        for i, size in enumerate(sizes):
            image = await image_service.ingest(collection, f"{i}.png", make_image_bytes(size=size))
            refs.append(image_service.ref(image))
        return collection, refs

    async def test_build_maps_every_image(self, atlas_service, collection_service, image_service):
        _, refs = await self._refs(collection_service, image_service, [(640, 480), (200, 100), (50, 50)])

        atlas = await atlas_service.build(refs, BIG, generation=3)

        sizes = {p.image_id: (p.width, p.height) for p in atlas.placements}
        assert sizes == {
            refs[0].image_id: (40, 30),
            refs[1].image_id: (50, 25),
            refs[2].image_id: (50, 50),
        }
        assert atlas.generation == 3
        with PILImage.open(io.BytesIO(atlas.data)) as img:
            assert img.size == (atlas.width, atlas.height)

        document = atlas.to_dict()
        assert base64.b64decode(document["data"]) == atlas.data
        assert len(document["mapping"]) == 3

    async def test_build_skips_images_without_payload(self, atlas_service, collection_service, image_service):
        collection, refs = await self._refs(collection_service, image_service, [(60, 40)])
        ghost = ImageRef(collection.id, uuid.uuid4(), 30, 30)

        atlas = await atlas_service.build(refs + [ghost], BIG)

        assert [p.image_id for p in atlas.placements] == [refs[0].image_id]

    async def test_build_empty(self, atlas_service):
        atlas = await atlas_service.build([], BIG)

        assert atlas.placements == ()
        assert (atlas.width, atlas.height) == (1, 1)

    async def test_static_atlas_is_stored_and_reused(
        self, atlas_service, collection_service, image_service, storage, monkeypatch
    ):
        collection, refs = await self._refs(collection_service, image_service, [(64, 48), (48, 64)])

        first = await atlas_service.get_static(collection.id, refs, 1, BIG)
        image_path, mapping_path = storage.atlas_paths(collection.id)
        assert image_path.read_bytes() == first.data
        assert storage.read_json(mapping_path)["generation"] == 1

        async def no_rebuild(*args, **kwargs):
            raise AssertionError("atlas rebuilt")

        monkeypatch.setattr(atlas_service, "build", no_rebuild)
        second = await atlas_service.get_static(collection.id, list(reversed(refs)), 1, BIG)

        assert second.placements == first.placements
        assert second.data == first.data

    async def test_static_atlas_rebuilt_on_change(self, atlas_service, collection_service, image_service):
        collection, refs = await self._refs(collection_service, image_service, [(64, 48), (48, 64)])

        await atlas_service.get_static(collection.id, refs, 1, BIG)
        fewer = await atlas_service.get_static(collection.id, refs[:1], 1, BIG)
        newer = await atlas_service.get_static(collection.id, refs[:1], 2, BIG)
        smaller = await atlas_service.get_static(collection.id, refs[:1], 2, AtlasParams(16, 16, 4096))

        assert [p.image_id for p in fewer.placements] == [refs[0].image_id]
        assert newer.generation == 2
        assert (smaller.placements[0].width, smaller.placements[0].height) == (16, 12)

    async def test_forget_removes_files(self, atlas_service, collection_service, image_service, storage):
        collection, refs = await self._refs(collection_service, image_service, [(64, 48)])
        await atlas_service.get_static(collection.id, refs, 1, BIG)

        atlas_service.forget(collection.id)

        assert not any(path.exists() for path in storage.atlas_paths(collection.id))
