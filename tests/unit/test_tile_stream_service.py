"""Unit tests for tile planning and streaming sessions."""
from __future__ import annotations

import asyncio
import io
import uuid

import pytest
from PIL import Image as PILImage

from megallery.core.exceptions import NotFoundException, ValidationException
from megallery.models.domain import DerivativeBuffer, DerivativeKey
from megallery.services import MaterializationCache, TileEntry, TileRequest, TileStreamSession
from megallery.services.derivative_service import ImageRef
from megallery.services.tile_stream_service import Priority, Viewport, parse_request, plan
from tests.factories import REDS, CollectionFactory, make_image_bytes


def ids(n):
    return sorted((uuid.uuid4() for _ in range(n)), key=str)


class GatedDerivatives:
    """Derivative lookups through a real cache, held until the gate opens."""

    def __init__(self, cache: MaterializationCache = None):
        self.cache = cache or MaterializationCache(1 << 20)
        self.gate = asyncio.Event()
        self.gate.set()
        self.failing = set()
        self.computations = 0

    async def get_derivative(self, ref, width, height, kind):
        if ref.image_id in self.failing:
            raise NotFoundException("Image file", str(ref.image_id))

        async def compute():
            self.computations += 1
            await self.gate.wait()
            return DerivativeBuffer(ref.image_id.bytes, "png")

        key = DerivativeKey(ref.collection_id, ref.image_id, width, height, kind)
        return await self.cache.get_or_compute(key, compute)


def grid(n, collection_id=None):
    """n images on a diagonal, with refs."""
    collection_id = collection_id or uuid.uuid4()
    image_ids = ids(n)
    coordinates = {
        image_id: (i / max(1, n - 1), i / max(1, n - 1))
        for i, image_id in enumerate(image_ids)
    }
    refs = {image_id: ImageRef(collection_id, image_id, 64, 48) for image_id in image_ids}
    return image_ids, coordinates, refs


async def drain(session):
    return [entry async for entry in session]


class TestPlan:
    """Test tile ordering."""

    def test_nearest_to_center_first(self):
        a, b, c = ids(3)
        coordinates = {a: (0.0, 0.0), b: (0.5, 0.5), c: (0.7, 0.5)}

        order = [image_id for image_id, _ in plan(coordinates, TileRequest())]

        assert order == [b, c, a]

    def test_ties_broken_by_id(self):
        a, b = ids(2)
        coordinates = {b: (0.4, 0.5), a: (0.6, 0.5)}

        order = [image_id for image_id, _ in plan(coordinates, TileRequest())]

        assert order == [a, b]

    def test_corner_priority(self):
        a, b, c = ids(3)
        coordinates = {a: (0.9, 0.9), b: (0.1, 0.1), c: (0.5, 0.5)}

        order = [i for i, _ in plan(coordinates, TileRequest(priority=Priority.BOTTOM_RIGHT))]

        assert order == [a, c, b]

    def test_viewport_margin_and_limit(self):
        a, b, c = ids(3)
        coordinates = {a: (0.3, 0.3), b: (0.55, 0.3), c: (0.9, 0.9)}
        viewport = Viewport(0.0, 0.0, 0.5, 0.5)

        assert [i for i, _ in plan(coordinates, TileRequest(viewport=viewport))] == [a]

        with_margin = plan(coordinates, TileRequest(viewport=viewport, margin=0.1))
        assert {i for i, _ in with_margin} == {a, b}

        limited = plan(coordinates, TileRequest(viewport=viewport, margin=0.1, limit=1))
        assert len(limited) == 1

    def test_viewport_corners_out_of_order(self):
        with pytest.raises(ValidationException):
            Viewport(0.5, 0.0, 0.1, 1.0)


class TestParseRequest:
    """Test client request parsing."""

    def test_defaults(self):
        request = parse_request({"type": "request"})

        assert request == TileRequest()

    def test_full_request(self):
        request = parse_request({
            "viewport": {"x0": 0.1, "y0": 0.2, "x1": 0.3, "y1": 0.4},
            "level": 1,
            "priority": "top_left",
            "margin": 0.05,
            "limit": 10,
        })

        assert request.viewport == Viewport(0.1, 0.2, 0.3, 0.4)
        assert request.level == 1
        assert request.priority is Priority.TOP_LEFT
        assert request.margin == 0.05
        assert request.limit == 10

    def test_list_viewport(self):
        request = parse_request({"viewport": [0, 0, 0.5, 0.5]})

        assert request.viewport == Viewport(0.0, 0.0, 0.5, 0.5)

    @pytest.mark.parametrize("message", [
        {"priority": "middle"},
        {"level": "deep"},
        {"viewport": [0, 0, 1]},
        {"viewport": {"x0": 0}},
        {"viewport": [1, 1, 0, 0]},
        {"limit": "many"},
    ])
    def test_invalid(self, message):
        with pytest.raises(ValidationException):
            parse_request(message)


@pytest.mark.asyncio
class TestTileStreamSession:
    """Test the producer/consumer session."""

    async def test_level_bounds(self):
        _, coordinates, refs = grid(2)
        session = TileStreamSession(GatedDerivatives(), refs, coordinates, tile_sizes=[30, 120])

        assert session.box_for(1) == 120
        with pytest.raises(ValidationException):
            session.box_for(2)
        with pytest.raises(ValidationException):
            await session.restart(TileRequest(level=-1))

    async def test_streams_real_thumbnails_in_plan_order(self, image_service, db_session):
        collection = CollectionFactory.create()
        db_session.add(collection)
        await db_session.flush()
        images = [
            await image_service.ingest(collection, f"{i}.png", make_image_bytes(size=(60, 30), color=color))
            for i, color in enumerate(REDS)
        ]
        refs = {ref.image_id: ref for ref in await image_service.get_refs(collection.id)}
        coordinates = {image.id: (0.1 * (i + 1), 0.5) for i, image in enumerate(images)}

        session = TileStreamSession(image_service.derivatives, refs, coordinates, tile_sizes=[30])
        request = TileRequest()
        await session.restart(request)
        entries = await drain(session)

        assert [e.image_id for e in entries] == [i for i, _ in plan(coordinates, request)]
        for entry in entries:
            assert entry.error is None
            assert (entry.width, entry.height) == (30, 15)
            with PILImage.open(io.BytesIO(entry.data)) as img:
                assert img.size == (30, 15)

        # End is sticky
        assert await session.next() is None
        await session.close()

    async def test_members_without_coordinates_are_skipped(self):
        image_ids, coordinates, refs = grid(3)
        del coordinates[image_ids[0]]

        session = TileStreamSession(GatedDerivatives(), refs, coordinates, tile_sizes=[30])
        await session.restart(TileRequest())

        assert {e.image_id for e in await drain(session)} == set(image_ids[1:])

    async def test_backpressure_bounds_production(self):
        _, coordinates, refs = grid(10)
        session = TileStreamSession(
            GatedDerivatives(), refs, coordinates, tile_sizes=[30], window=2, prefetch=1
        )

        await session.restart(TileRequest())
        await asyncio.sleep(0.05)
        assert session.produced == 2

        assert await session.next() is not None
        await asyncio.sleep(0.05)
        assert session.produced == 3

        await session.close()

    async def test_restart_replaces_stream(self):
        _, coordinates, refs = grid(6)
        session = TileStreamSession(GatedDerivatives(), refs, coordinates, tile_sizes=[30], window=2)

        await session.restart(TileRequest())
        assert await session.next() is not None

        second = TileRequest(priority=Priority.TOP_LEFT, limit=3)
        await session.restart(second)
        entries = await drain(session)

        assert session.stream_id == 2
        assert [e.image_id for e in entries] == [i for i, _ in plan(coordinates, second)]

    async def test_restart_wakes_blocked_consumer(self):
        _, coordinates, refs = grid(2)
        derivatives = GatedDerivatives()
        derivatives.gate.clear()
        session = TileStreamSession(derivatives, refs, coordinates, tile_sizes=[30])

        await session.restart(TileRequest())
        consumer = asyncio.create_task(session.next())
        await asyncio.sleep(0.01)
        assert not consumer.done()

        derivatives.gate.set()
        await session.restart(TileRequest(limit=1))

        entry = await asyncio.wait_for(consumer, 1.0)
        assert entry is not None
        await session.close()

    async def test_failed_image_yields_error_entry(self):
        image_ids, coordinates, refs = grid(3)
        derivatives = GatedDerivatives()
        derivatives.failing.add(image_ids[1])
        session = TileStreamSession(derivatives, refs, coordinates, tile_sizes=[30])

        await session.restart(TileRequest())
        entries = {e.image_id: e for e in await drain(session)}

        assert len(entries) == 3
        failed = entries[image_ids[1]]
        assert failed.error == "NotFoundException"
        assert failed.data is None
        assert all(entries[i].data for i in (image_ids[0], image_ids[2]))

    async def test_cancel_keeps_shared_computations(self):
        _, coordinates, refs = grid(3)
        derivatives = GatedDerivatives()
        derivatives.gate.clear()
        first = TileStreamSession(derivatives, refs, coordinates, tile_sizes=[30])
        second = TileStreamSession(derivatives, refs, coordinates, tile_sizes=[30])

        await first.restart(TileRequest())
        await second.restart(TileRequest())
        await asyncio.sleep(0.01)
        assert derivatives.computations == 3

        await first.cancel()
        assert await first.next() is None
        assert derivatives.cache.stats()["in_flight"] == 3

        derivatives.gate.set()
        entries = await drain(second)

        assert len(entries) == 3
        assert all(e.data for e in entries)
        assert derivatives.computations == 3
        assert derivatives.cache.stats().get("cancelled", 0) == 0

    async def test_cancel_of_sole_session_stops_computations(self):
        _, coordinates, refs = grid(3)
        derivatives = GatedDerivatives()
        derivatives.gate.clear()
        session = TileStreamSession(derivatives, refs, coordinates, tile_sizes=[30])

        await session.restart(TileRequest())
        await asyncio.sleep(0.01)
        await session.cancel()
        await asyncio.sleep(0.01)

        assert session.cancelled
        assert derivatives.cache.stats()["in_flight"] == 0
        assert derivatives.cache.stats()["cancelled"] == 3

    async def test_entry_serialization(self):
        image_id = uuid.uuid4()
        entry = TileEntry(image_id, 0.25, 0.75, 30, 22, "png", b"\x89PNG")

        assert entry.to_dict() == {
            "id": str(image_id),
            "x": 0.25,
            "y": 0.75,
            "width": 30,
            "height": 22,
            "ext": "png",
            "data": b"\x89PNG",
            "error": None,
        }
