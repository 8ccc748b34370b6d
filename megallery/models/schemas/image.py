"""Image Pydantic schemas."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class SwatchSchema(BaseModel):
    """One dominant colour of an image."""

    rgb: List[int] = Field(..., min_length=3, max_length=3)
    weight: float = Field(..., ge=0.0, le=1.0)


class FeatureSchema(BaseModel):
    """Extracted feature vector."""

    palette: List[SwatchSchema] = Field(default_factory=list)
    width: int
    height: int
    captured_at: Optional[datetime] = None
    orientation: Optional[int] = None
    camera: Optional[str] = None


class ImageResponse(BaseModel):
    """Schema for image responses."""

    id: UUID
    collection_id: UUID
    name: str
    width: int = Field(..., ge=1, description="Width in pixels after EXIF orientation")
    height: int = Field(..., ge=1, description="Height in pixels after EXIF orientation")
    extension: str
    byte_size: int = Field(..., ge=0)
    features: Optional[FeatureSchema] = None
    extra_metadata: Dict[str, Any] = Field(default_factory=dict, description="Format, EXIF and caller metadata")
    created_at: datetime

    class Config:
        from_attributes = True


class ImageListResponse(BaseModel):
    """Schema for paginated image list."""

    images: List[ImageResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class MetadataBulkRequest(BaseModel):
    ids: List[UUID] = Field(..., max_length=10000)


class MetadataBulkResponse(BaseModel):
    """Known images among the requested ids, in request order."""

    images: List[ImageResponse]


class BulkFileRequest(BaseModel):
    """One file to fetch: an image and the box it must fit."""

    id: UUID
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)


class BulkFileResponse(BaseModel):
    id: UUID
    width: int
    height: int
    ext: str
    data: str = Field(..., description="Base64 encoded file")


class BulkFilesResponse(BaseModel):
    """One entry per requested file, null where the image or its payload is unknown."""

    files: List[Optional[BulkFileResponse]]
