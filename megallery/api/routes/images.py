"""Image API routes."""
from __future__ import annotations

import base64
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response

from megallery.api.dependencies import get_collection_service, get_image_service
from megallery.core.config import settings
from megallery.models.domain import DerivativeKind
from megallery.models.schemas import (
    BulkFileRequest,
    BulkFileResponse,
    BulkFilesResponse,
    ImageResponse,
    MessageResponse,
    MetadataBulkRequest,
    MetadataBulkResponse,
)
from megallery.services import CollectionService, ImageService

router = APIRouter(prefix="/images")

MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
}

# Derivatives are immutable for a given key
CACHE_HEADERS = {"Cache-Control": "public, max-age=31536000, immutable"}


@router.get("/{image_id}", response_model=ImageResponse)
async def get_image(
    image_id: UUID,
    image_service: ImageService = Depends(get_image_service)
):
    """Get image metadata and features."""
    image = await image_service.get_image(image_id)
    return ImageResponse.model_validate(image)


@router.get("/{image_id}/derivatives")
async def get_derivative(
    image_id: UUID,
    width: int = Query(..., description="Box width (exact width for preview/original)"),
    height: int = Query(..., description="Box height (exact height for preview/original)"),
    kind: DerivativeKind = Query(default=DerivativeKind.THUMBNAIL, description="Derivative kind"),
    image_service: ImageService = Depends(get_image_service)
):
    """
    Get a derivative of an image.

    Generated on first request and served from the cache afterwards.
    Thumbnails fit inside the requested box without upscaling; previews are
    centre-cropped to the exact size; originals must be requested at their
    own dimensions.
    """
    buffer = await image_service.get_derivative(image_id, width, height, kind)
    return Response(
        content=buffer.data,
        media_type=MEDIA_TYPES.get(buffer.extension, "application/octet-stream"),
        headers=CACHE_HEADERS,
    )


@router.delete("/{image_id}", response_model=MessageResponse)
async def delete_image(
    image_id: UUID,
    collection_service: CollectionService = Depends(get_collection_service)
):
    """
    Delete an image.

    A finalized collection keeps its layout but is marked stale.
    """
    await collection_service.remove_image(image_id)
    return MessageResponse(message=f"Image {image_id} deleted")


# Bulk


@router.post("/metadata", response_model=MetadataBulkResponse)
async def get_metadata_bulk(
    payload: MetadataBulkRequest,
    image_service: ImageService = Depends(get_image_service)
):
    """Metadata of many images at once; unknown ids are left out."""
    images = await image_service.get_metadata_bulk(payload.ids)
    return MetadataBulkResponse(images=[ImageResponse.model_validate(image) for image in images])


@router.post("/bulk", response_model=BulkFilesResponse)
async def get_files_bulk(
    payload: List[BulkFileRequest],
    image_service: ImageService = Depends(get_image_service)
):
    """
    Fetch one file per entry in a single response.

    Each entry gets the largest stored file of its image that fits the box,
    or a thumbnail generated at the box. Responses larger than the
    configured limit are refused with 413.
    """
    files = await image_service.get_files_bulk(
        [(entry.id, entry.width, entry.height) for entry in payload],
        settings.bulk_max_bytes,
    )
    return BulkFilesResponse(files=[
        None if f is None else BulkFileResponse(
            id=f.image_id,
            width=f.width,
            height=f.height,
            ext=f.extension,
            data=base64.b64encode(f.data).decode("ascii"),
        )
        for f in files
    ])
