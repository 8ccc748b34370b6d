"""Arrangement Pydantic schemas."""
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from megallery.models.domain import Anchor, GridDistance, SortKey, TimeResolution


class ArrangementRequest(BaseModel):
    """Arrangement to compute; fields that do not apply to the type are ignored."""

    type: Literal["sort", "grid_expansion", "time_hist"] = "sort"
    has_metadata: List[Literal["captured_at", "palette", "camera"]] = Field(
        default_factory=list, description="Keep only images carrying these features"
    )
    limit: Optional[int] = Field(default=None, ge=1, description="Keep at most this many images")
    key: SortKey = Field(default=SortKey.NAME, description="Sort key (sort, grid_expansion)")
    descending: bool = False
    compared_to: Optional[UUID] = Field(default=None, description="Reference image of a similarity sort")
    metric: Optional[str] = Field(default=None, description="Metric of a similarity sort")
    anchor: Anchor = Anchor.CENTER
    distance: GridDistance = GridDistance.MANHATTAN
    resolution: TimeResolution = TimeResolution.DAY


class ArrangementResponse(BaseModel):
    """
    Computed arrangement.

    `data` is a list of ids for `sort`, rows of ids (null for empty cells)
    for `grid`, and one column of ids per label for `time_hist`.
    """

    type: Literal["sort", "grid", "time_hist"]
    collection_id: UUID
    data: List[Any]
    labels: Optional[List[str]] = None
    invert: bool = False
    excluded: List[UUID] = Field(default_factory=list)
