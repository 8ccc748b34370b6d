"""Collection and layout Pydantic schemas."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from megallery.models.domain import CollectionEmbedding, TsneParams


class CollectionCreate(BaseModel):
    """Schema for creating a collection."""

    name: str = Field(..., min_length=1, max_length=255, description="Collection name")


class CollectionResponse(BaseModel):
    """Schema for collection responses."""

    id: UUID
    name: str
    state: str = Field(..., description="'new' or 'finalized'")
    finalized: bool
    embedding_valid: bool = Field(..., description="False once membership changed after finalize")
    generation: int = Field(..., description="Current embedding generation (0 before finalize)")
    image_count: int = Field(default=0)
    finalizing: bool = Field(default=False, description="An embedding run is in flight")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CollectionListResponse(BaseModel):
    """Schema for paginated collection list."""

    collections: List[CollectionResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class TsneParamsSchema(BaseModel):
    """t-SNE parameters; omitted fields use the configured defaults."""

    perplexity: Optional[float] = Field(default=None, gt=0, description="Neighbourhood size of the similarity kernel")
    iterations: Optional[int] = Field(default=None, ge=1, le=10000, description="Optimization steps")
    learning_rate: Optional[float] = Field(default=None, gt=0, description="Gradient step size")
    theta: Optional[float] = Field(default=None, ge=0, description="Barnes-Hut accuracy/speed trade-off")

    def resolve(self, defaults: TsneParams) -> TsneParams:
        return TsneParams(
            perplexity=self.perplexity if self.perplexity is not None else defaults.perplexity,
            iterations=self.iterations if self.iterations is not None else defaults.iterations,
            learning_rate=self.learning_rate if self.learning_rate is not None else defaults.learning_rate,
            theta=self.theta if self.theta is not None else defaults.theta,
        )


class FinalizeRequest(BaseModel):
    """Schema for finalize requests."""

    force_recompute: bool = Field(default=False, description="Compute a new generation even if one exists")
    seed: Optional[int] = Field(default=None, ge=0, description="Seed of the initial layout")
    metric: Optional[str] = Field(default=None, description="Distance metric name")
    params: Optional[TsneParamsSchema] = None


class EmbeddingResponse(BaseModel):
    """Summary of a published embedding generation."""

    collection_id: UUID
    generation: int
    seed: int
    metric: str
    perplexity: float
    iterations: int
    learning_rate: float
    theta: float
    placed: int
    excluded: List[UUID]
    created_at: datetime

    @classmethod
    def from_domain(cls, embedding: CollectionEmbedding) -> "EmbeddingResponse":
        return cls(
            collection_id=embedding.collection_id,
            generation=embedding.generation,
            seed=embedding.seed,
            metric=embedding.metric,
            placed=len(embedding.coordinates),
            excluded=embedding.excluded,
            created_at=embedding.created_at,
            **embedding.params.to_dict(),
        )


class LayoutPoint(BaseModel):
    id: UUID
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: int
    height: int


class LayoutResponse(BaseModel):
    """Full layout of the current generation."""

    collection_id: UUID
    generation: int
    seed: int
    metric: str
    params: dict
    valid: bool
    points: List[LayoutPoint]
    excluded: List[UUID]


class CancelResponse(BaseModel):
    collection_id: UUID
    cancelled: bool
