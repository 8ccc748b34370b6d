"""Unit tests for derivative generation and serving."""
from __future__ import annotations

import asyncio
import io
import uuid

import pytest
from PIL import Image as PILImage

from megallery.core.exceptions import InvalidDimensions, NotFoundException
from megallery.models.domain import DerivativeBuffer, DerivativeKind
from megallery.services.derivative_service import (
    ImageRef,
    fit_within,
    generate,
    output_size,
    standard_sizes,
)
from tests.factories import make_image_bytes


def decoded_size(buffer: DerivativeBuffer):
    with PILImage.open(io.BytesIO(buffer.data)) as img:
        return img.size


class TestGeometry:
    """Test size arithmetic."""

    def test_fit_within_keeps_aspect(self):
        assert fit_within(1920, 1080, 192, 192) == (192, 108)

    def test_fit_within_never_upscales(self):
        assert fit_within(100, 50, 400, 400) == (100, 50)

    def test_fit_within_minimum_one_pixel(self):
        assert fit_within(4000, 10, 100, 100) == (100, 1)

    def test_standard_sizes_skip_larger_boxes(self):
        assert standard_sizes(800, 600) == [(30, 30), (500, 500)]
        assert standard_sizes(20, 20) == []

    def test_output_size_by_kind(self):
        ref = ImageRef(uuid.uuid4(), uuid.uuid4(), 1920, 1080)

        assert output_size(ref, 192, 192, DerivativeKind.THUMBNAIL) == (192, 108)
        assert output_size(ref, 64, 64, DerivativeKind.PREVIEW) == (64, 64)


class TestGenerate:
    """Test the pure generate function."""

    def test_thumbnail_fits_box(self):
        source = make_image_bytes(size=(1920, 1080), fmt="JPEG")

        buffer = generate(source, 200, 200, DerivativeKind.THUMBNAIL)

        assert buffer.extension == "jpg"
        width, height = decoded_size(buffer)
        assert width <= 200 and height <= 200
        assert abs(width / height - 1920 / 1080) < 0.02

    def test_thumbnail_is_idempotent(self):
        source = make_image_bytes(size=(640, 480), fmt="PNG")

        first = generate(source, 100, 100, DerivativeKind.THUMBNAIL)
        second = generate(source, 100, 100, DerivativeKind.THUMBNAIL)

        assert first.data == second.data

    def test_preview_has_exact_size(self):
        source = make_image_bytes(size=(300, 100), fmt="PNG")

        buffer = generate(source, 64, 64, DerivativeKind.PREVIEW)

        assert buffer.extension == "png"
        assert decoded_size(buffer) == (64, 64)

    def test_small_source_is_not_upscaled(self):
        source = make_image_bytes(size=(40, 30), fmt="PNG")

        assert decoded_size(generate(source, 500, 500, DerivativeKind.THUMBNAIL)) == (40, 30)

    def test_alpha_survives_png(self):
        source = make_image_bytes(size=(80, 80), color=(10, 20, 30, 128), mode="RGBA", fmt="PNG")

        with PILImage.open(io.BytesIO(generate(source, 40, 40, DerivativeKind.THUMBNAIL).data)) as img:
            assert img.mode == "RGBA"

    def test_exif_orientation_applied(self):
        source = make_image_bytes(size=(120, 60), fmt="JPEG", orientation=6)

        assert decoded_size(generate(source, 1000, 1000, DerivativeKind.THUMBNAIL)) == (60, 120)

    def test_original_returns_source(self):
        source = make_image_bytes(size=(64, 48))

        assert generate(source, 64, 48, DerivativeKind.ORIGINAL).data == source

    def test_original_at_wrong_size(self):
        with pytest.raises(InvalidDimensions):
            generate(make_image_bytes(size=(64, 48)), 32, 24, DerivativeKind.ORIGINAL)

    @pytest.mark.parametrize("width,height", [(0, 100), (100, 0), (-5, 10)])
    def test_non_positive_dimensions(self, width, height):
        with pytest.raises(InvalidDimensions):
            generate(make_image_bytes(), width, height, DerivativeKind.THUMBNAIL)


@pytest.mark.asyncio
class TestDerivativeService:
    """Test DerivativeService over the materialization cache."""

    async def _stored(self, derivative_service, size=(1920, 1080)) -> ImageRef:
        ref = ImageRef(uuid.uuid4(), uuid.uuid4(), *size)
        await derivative_service.store_original(
            ref, DerivativeBuffer(make_image_bytes(size=size, fmt="JPEG"), "jpg")
        )
        return ref

    async def test_thumbnail_generated_once(self, derivative_service, materialization):
        ref = await self._stored(derivative_service)

        first = await derivative_service.get_derivative(ref, 200, 200, DerivativeKind.THUMBNAIL)
        second = await derivative_service.get_derivative(ref, 200, 200, DerivativeKind.THUMBNAIL)

        assert first is second
        assert materialization.stats()["computations"] == 1
        assert decoded_size(first)[0] <= 200

    async def test_concurrent_requests_share_one_generation(self, derivative_service, materialization):
        ref = await self._stored(derivative_service)

        results = await asyncio.gather(*[
            derivative_service.get_derivative(ref, 300, 300, DerivativeKind.THUMBNAIL)
            for _ in range(20)
        ])

        assert all(r is results[0] for r in results)
        assert materialization.stats()["computations"] == 1

    async def test_persisted_file_survives_cache_loss(self, derivative_service, materialization, storage):
        ref = await self._stored(derivative_service)
        buffer = await derivative_service.get_derivative(ref, 100, 100, DerivativeKind.THUMBNAIL)

        assert storage.find_derivative(ref.image_id, 100, 100, DerivativeKind.THUMBNAIL) is not None

        materialization.clear()
        again = await derivative_service.get_derivative(ref, 100, 100, DerivativeKind.THUMBNAIL)

        assert again.data == buffer.data
        assert materialization.stats()["computations"] == 1
        assert materialization.stats()["storage_hits"] >= 1

    async def test_original_must_match_size(self, derivative_service):
        ref = await self._stored(derivative_service, size=(64, 48))

        original = await derivative_service.get_derivative(ref, 64, 48, DerivativeKind.ORIGINAL)
        assert original.extension == "jpg"

        with pytest.raises(InvalidDimensions):
            await derivative_service.get_derivative(ref, 32, 24, DerivativeKind.ORIGINAL)

    async def test_missing_source(self, derivative_service):
        ref = ImageRef(uuid.uuid4(), uuid.uuid4(), 100, 100)

        with pytest.raises(NotFoundException):
            await derivative_service.get_derivative(ref, 50, 50, DerivativeKind.THUMBNAIL)

    async def test_warm_standard_sizes(self, derivative_service, materialization):
        ref = await self._stored(derivative_service, size=(800, 600))

        ready = await derivative_service.warm_standard_sizes(ref)

        assert ready == 2
        assert materialization.stats()["computations"] == 2
