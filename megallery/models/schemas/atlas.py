"""Atlas Pydantic schemas."""
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from megallery.services.atlas_service import Atlas


class AtlasRequest(BaseModel):
    """Dynamic atlas of chosen images; omitted limits use the configured defaults."""

    ids: Optional[List[UUID]] = Field(default=None, description="Images to include (all members if omitted)")
    limit: Optional[int] = Field(default=None, ge=1, description="Include at most this many images")
    icon_max_width: Optional[int] = Field(default=None, ge=1)
    icon_max_height: Optional[int] = Field(default=None, ge=1)
    atlas_max_area: Optional[int] = Field(default=None, description="Pixel budget of the whole atlas")


class AtlasPlacementSchema(BaseModel):
    id: UUID
    x: int
    y: int
    width: int
    height: int


class AtlasResponse(BaseModel):
    """Atlas PNG (base64) and where each image sits in it."""

    width: int
    height: int
    generation: Optional[int] = None
    mapping: List[AtlasPlacementSchema]
    data: str = Field(..., description="Base64 encoded PNG")

    @classmethod
    def from_domain(cls, atlas: "Atlas") -> "AtlasResponse":
        return cls.model_validate(atlas.to_dict())
