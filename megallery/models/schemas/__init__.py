"""Pydantic schemas for API validation."""
from __future__ import annotations

from .common import PaginationParams, MessageResponse
from .image import (
    ImageResponse,
    ImageListResponse,
    FeatureSchema,
    MetadataBulkRequest,
    MetadataBulkResponse,
    BulkFileRequest,
    BulkFileResponse,
    BulkFilesResponse,
)
from .collection import (
    CollectionCreate,
    CollectionResponse,
    CollectionListResponse,
    FinalizeRequest,
    TsneParamsSchema,
    EmbeddingResponse,
    LayoutResponse,
    CancelResponse,
)
from .arrangement import ArrangementRequest, ArrangementResponse
from .atlas import AtlasRequest, AtlasResponse

__all__ = [
    "PaginationParams",
    "MessageResponse",
    "ImageResponse",
    "ImageListResponse",
    "FeatureSchema",
    "MetadataBulkRequest",
    "MetadataBulkResponse",
    "BulkFileRequest",
    "BulkFileResponse",
    "BulkFilesResponse",
    "CollectionCreate",
    "CollectionResponse",
    "CollectionListResponse",
    "FinalizeRequest",
    "TsneParamsSchema",
    "EmbeddingResponse",
    "LayoutResponse",
    "CancelResponse",
    "ArrangementRequest",
    "ArrangementResponse",
    "AtlasRequest",
    "AtlasResponse",
]
