"""Collection API routes: membership, finalize and layout."""
from __future__ import annotations

import json
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from megallery.api.dependencies import (
    get_arrangement_service,
    get_atlas_service,
    get_collection_service,
    get_image_service,
)
from megallery.core.config import settings
from megallery.core.exceptions import NotFoundException, ValidationException
from megallery.models.database import Collection
from megallery.models.schemas import (
    ArrangementRequest,
    ArrangementResponse,
    AtlasRequest,
    AtlasResponse,
    CancelResponse,
    CollectionCreate,
    CollectionListResponse,
    CollectionResponse,
    EmbeddingResponse,
    FinalizeRequest,
    ImageListResponse,
    ImageResponse,
    LayoutResponse,
    MessageResponse,
    PaginationParams,
)
from megallery.models.schemas.common import total_pages
from megallery.services import (
    ArrangeFilter,
    ArrangementService,
    AtlasParams,
    AtlasService,
    CollectionService,
    ImageService,
    SortOptions,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/collections")


async def _to_response(service: CollectionService, collection: Collection) -> CollectionResponse:
    return CollectionResponse(
        id=collection.id,
        name=collection.name,
        state=collection.state,
        finalized=collection.finalized,
        embedding_valid=collection.embedding_valid,
        generation=collection.generation,
        image_count=await service.count_images(collection.id),
        finalizing=service.is_finalizing(collection.id),
        created_at=collection.created_at,
        updated_at=collection.updated_at,
    )


@router.post("", response_model=CollectionResponse, status_code=status.HTTP_201_CREATED)
async def create_collection(
    payload: CollectionCreate,
    service: CollectionService = Depends(get_collection_service)
):
    """Create an empty collection in the `new` state."""
    collection = await service.create_collection(payload.name)
    return await _to_response(service, collection)


@router.get("", response_model=CollectionListResponse)
async def list_collections(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=50, ge=1, le=500, description="Items per page"),
    service: CollectionService = Depends(get_collection_service)
):
    """List collections in creation order."""
    pagination = PaginationParams(page=page, page_size=page_size)
    collections, total = await service.list_collections(pagination)
    return CollectionListResponse(
        collections=[await _to_response(service, c) for c in collections],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages(total, page_size),
    )


@router.get("/{collection_id}", response_model=CollectionResponse)
async def get_collection(
    collection_id: UUID,
    service: CollectionService = Depends(get_collection_service)
):
    """Get a collection with its state."""
    collection = await service.get_collection(collection_id)
    return await _to_response(service, collection)


@router.delete("/{collection_id}", response_model=MessageResponse)
async def delete_collection(
    collection_id: UUID,
    service: CollectionService = Depends(get_collection_service)
):
    """Delete a collection, its images and all embedding generations."""
    await service.delete_collection(collection_id)
    return MessageResponse(message=f"Collection {collection_id} deleted")


# Membership


@router.post(
    "/{collection_id}/images",
    response_model=ImageResponse,
    status_code=status.HTTP_201_CREATED
)
async def upload_image(
    collection_id: UUID,
    file: UploadFile = File(..., description="Encoded image"),
    name: Optional[str] = Form(default=None, description="Display name (file name if omitted)"),
    metadata: Optional[str] = Form(default=None, description="JSON object stored with the image"),
    service: CollectionService = Depends(get_collection_service)
):
    """
    Upload an image into a collection.

    The payload is decoded and its features extracted before anything is
    stored; undecodable uploads are rejected with 415 or 422.
    """
    raw_bytes = await file.read()
    if not raw_bytes:
        raise ValidationException("empty upload")
    if len(raw_bytes) > settings.max_upload_bytes:
        raise ValidationException(
            f"upload of {len(raw_bytes)} bytes exceeds limit of {settings.max_upload_bytes}"
        )

    extra = None
    if metadata:
        try:
            extra = json.loads(metadata)
        except json.JSONDecodeError as e:
            raise ValidationException(f"metadata is not valid JSON: {e}")
        if not isinstance(extra, dict):
            raise ValidationException("metadata must be a JSON object")

    image = await service.add_image(
        collection_id,
        name or file.filename or "untitled",
        raw_bytes,
        extra
    )
    return ImageResponse.model_validate(image)


@router.get("/{collection_id}/images", response_model=ImageListResponse)
async def list_images(
    collection_id: UUID,
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=50, ge=1, le=500, description="Items per page"),
    collection_service: CollectionService = Depends(get_collection_service),
    image_service: ImageService = Depends(get_image_service)
):
    """List the images of a collection."""
    await collection_service.get_collection(collection_id)
    pagination = PaginationParams(page=page, page_size=page_size)
    images, total = await image_service.list_images(collection_id, pagination)
    return ImageListResponse(
        images=[ImageResponse.model_validate(image) for image in images],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages(total, page_size),
    )


# Finalize


@router.post("/{collection_id}/finalize", response_model=EmbeddingResponse)
async def finalize_collection(
    collection_id: UUID,
    request: Optional[FinalizeRequest] = None,
    service: CollectionService = Depends(get_collection_service)
):
    """
    Finalize a collection and compute its layout.

    Idempotent while the embedding is valid. After membership changes the
    collection must be finalized with `force_recompute`, which publishes a
    new generation.
    """
    request = request or FinalizeRequest()
    params = request.params.resolve(service.default_params()) if request.params else None
    embedding = await service.finalize(
        collection_id,
        force_recompute=request.force_recompute,
        seed=request.seed,
        params=params,
        metric=request.metric,
    )
    return EmbeddingResponse.from_domain(embedding)


@router.post("/{collection_id}/invalidate", response_model=CollectionResponse)
async def invalidate_collection(
    collection_id: UUID,
    service: CollectionService = Depends(get_collection_service)
):
    """Mark the current embedding stale."""
    collection = await service.invalidate(collection_id)
    return await _to_response(service, collection)


@router.post("/{collection_id}/cancel", response_model=CancelResponse)
async def cancel_finalize(
    collection_id: UUID,
    service: CollectionService = Depends(get_collection_service)
):
    """Cancel an in-flight embedding run; the previous generation stays published."""
    await service.get_collection(collection_id)
    cancelled = service.cancel_finalize(collection_id)
    if cancelled:
        logger.info(f"Cancelled embedding run of collection {collection_id}")
    return CancelResponse(collection_id=collection_id, cancelled=cancelled)


@router.get("/{collection_id}/layout", response_model=LayoutResponse)
async def get_layout(
    collection_id: UUID,
    service: CollectionService = Depends(get_collection_service)
):
    """Coordinates of every placed image in the current generation."""
    return await service.get_layout(collection_id)


# Atlases


@router.get("/{collection_id}/atlas", response_model=AtlasResponse)
async def get_static_atlas(
    collection_id: UUID,
    service: CollectionService = Depends(get_collection_service),
    atlas_service: AtlasService = Depends(get_atlas_service)
):
    """
    Atlas of every placed image of the current generation.

    Stored after the first request and rebuilt once the generation or the
    members change.
    """
    embedding, refs = await service.stream_source(collection_id)
    params = AtlasParams(settings.atlas_icon_max_width, settings.atlas_icon_max_height, settings.atlas_max_area)
    atlas = await atlas_service.get_static(
        collection_id,
        [refs[image_id] for image_id in sorted(refs, key=str)],
        embedding.generation,
        params,
    )
    return AtlasResponse.from_domain(atlas)


@router.post("/{collection_id}/atlas", response_model=AtlasResponse)
async def build_dynamic_atlas(
    collection_id: UUID,
    payload: Optional[AtlasRequest] = None,
    collection_service: CollectionService = Depends(get_collection_service),
    image_service: ImageService = Depends(get_image_service),
    atlas_service: AtlasService = Depends(get_atlas_service)
):
    """Atlas of chosen members of a collection, built on every request."""
    payload = payload or AtlasRequest()
    await collection_service.get_collection(collection_id)
    refs = await image_service.get_refs(collection_id)

    if payload.ids is not None:
        by_id = {ref.image_id: ref for ref in refs}
        for image_id in payload.ids:
            if image_id not in by_id:
                raise NotFoundException("Image", str(image_id))
        refs = [by_id[image_id] for image_id in dict.fromkeys(payload.ids)]
    if payload.limit is not None:
        refs = refs[:payload.limit]

    params = AtlasParams(
        payload.icon_max_width or settings.atlas_icon_max_width,
        payload.icon_max_height or settings.atlas_icon_max_height,
        settings.atlas_max_area if payload.atlas_max_area is None else payload.atlas_max_area,
    )
    atlas = await atlas_service.build(refs, params)
    return AtlasResponse.from_domain(atlas)


# Arrangements


@router.post("/{collection_id}/arrangements", response_model=ArrangementResponse)
async def arrange_collection(
    collection_id: UUID,
    request: Optional[ArrangementRequest] = None,
    service: ArrangementService = Depends(get_arrangement_service)
):
    """
    Sort, grid or time histogram of the current members.

    Arrangements read image features only, so they work before finalize.
    """
    request = request or ArrangementRequest()
    flt = ArrangeFilter(tuple(request.has_metadata), request.limit)

    if request.type == "time_hist":
        result = await service.time_histogram(collection_id, flt, request.resolution)
    else:
        options = SortOptions(
            key=request.key,
            descending=request.descending,
            compared_to=request.compared_to,
            metric=request.metric or settings.embedding_metric,
        )
        if request.type == "grid_expansion":
            result = await service.grid(collection_id, flt, options, request.anchor, request.distance)
        else:
            result = await service.sort(collection_id, flt, options)

    return ArrangementResponse(collection_id=collection_id, **result)
