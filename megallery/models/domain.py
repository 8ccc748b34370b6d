"""Domain value types shared by the extraction, derivative, cache and embedding layers."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID


class DerivativeKind(str, enum.Enum):
    """Purpose of a stored image file."""

    ORIGINAL = "original"
    THUMBNAIL = "thumbnail"
    PREVIEW = "preview"

    @property
    def code(self) -> int:
        """Integer stored in the ``derivatives.kind`` column."""
        return _KIND_TO_CODE[self]

    @classmethod
    def from_code(cls, code: int) -> "DerivativeKind":
        try:
            return _CODE_TO_KIND[code]
        except KeyError:
            raise ValueError(f"unknown derivative kind code: {code}") from None


_KIND_TO_CODE = {
    DerivativeKind.ORIGINAL: 0,
    DerivativeKind.THUMBNAIL: 1,
    DerivativeKind.PREVIEW: 2,
}
_CODE_TO_KIND = {code: kind for kind, code in _KIND_TO_CODE.items()}


@dataclass(frozen=True)
class Swatch:
    """One dominant colour and the share of sampled pixels it covers."""

    r: int
    g: int
    b: int
    weight: float

    def to_dict(self) -> dict:
        return {"rgb": [self.r, self.g, self.b], "weight": self.weight}

    @classmethod
    def from_dict(cls, data: dict) -> "Swatch":
        r, g, b = data["rgb"]
        return cls(int(r), int(g), int(b), float(data["weight"]))


@dataclass(frozen=True)
class FeatureVector:
    """Compact visual description of an image used for similarity."""

    palette: Tuple[Swatch, ...]
    width: int
    height: int
    captured_at: Optional[datetime] = None
    orientation: Optional[int] = None
    camera: Optional[str] = None

    @property
    def aspect(self) -> float:
        return self.width / self.height

    def to_dict(self) -> dict:
        return {
            "palette": [swatch.to_dict() for swatch in self.palette],
            "width": self.width,
            "height": self.height,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "orientation": self.orientation,
            "camera": self.camera,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureVector":
        captured_at = data.get("captured_at")
        return cls(
            palette=tuple(Swatch.from_dict(s) for s in data.get("palette", [])),
            width=int(data["width"]),
            height=int(data["height"]),
            captured_at=datetime.fromisoformat(captured_at) if captured_at else None,
            orientation=data.get("orientation"),
            camera=data.get("camera"),
        )


@dataclass(frozen=True)
class DerivativeBuffer:
    """Encoded image bytes plus the file extension of their encoding."""

    data: bytes
    extension: str

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class DerivativeKey:
    """Cache key of a derivative; scoped by collection for bulk invalidation."""

    collection_id: UUID
    image_id: UUID
    width: int
    height: int
    kind: DerivativeKind

    @property
    def pinned(self) -> bool:
        return self.kind is DerivativeKind.ORIGINAL


@dataclass(frozen=True)
class EmbeddingKey:
    """Cache key of a collection's current embedding."""

    collection_id: UUID


@dataclass(frozen=True)
class TsneParams:
    """Barnes-Hut t-SNE parameters.

    perplexity: effective neighbourhood size each point's Gaussian is
        calibrated to; larger values favour global structure.
    iterations: number of gradient descent steps.
    learning_rate: gradient step size.
    theta: Barnes-Hut opening angle; a cell is summarized when
        ``cell_width / distance < theta``. 0 computes repulsion exactly.
    """

    perplexity: float = 30.0
    iterations: int = 1000
    learning_rate: float = 200.0
    theta: float = 0.5

    def __post_init__(self):
        if self.perplexity <= 0:
            raise ValueError("perplexity must be positive")
        if self.iterations <= 0:
            raise ValueError("iterations must be positive")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.theta < 0:
            raise ValueError("theta must be non-negative")

    def to_dict(self) -> dict:
        return {
            "perplexity": self.perplexity,
            "iterations": self.iterations,
            "learning_rate": self.learning_rate,
            "theta": self.theta,
        }


@dataclass(frozen=True)
class EmbeddingResult:
    """Output of one embedding run before it is published as a generation."""

    coordinates: Dict[UUID, Tuple[float, float]]
    excluded: List[UUID] = field(default_factory=list)


@dataclass(frozen=True)
class CollectionEmbedding:
    """A published, immutable embedding generation of a collection."""

    collection_id: UUID
    generation: int
    seed: int
    params: TsneParams
    metric: str
    coordinates: Dict[UUID, Tuple[float, float]]
    excluded: List[UUID]
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "collection_id": str(self.collection_id),
            "generation": self.generation,
            "seed": self.seed,
            "params": self.params.to_dict(),
            "metric": self.metric,
            "coordinates": {str(k): [x, y] for k, (x, y) in self.coordinates.items()},
            "excluded": [str(i) for i in self.excluded],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CollectionEmbedding":
        return cls(
            collection_id=UUID(data["collection_id"]),
            generation=int(data["generation"]),
            seed=int(data["seed"]),
            params=TsneParams(**data["params"]),
            metric=data["metric"],
            coordinates={
                UUID(k): (float(v[0]), float(v[1])) for k, v in data["coordinates"].items()
            },
            excluded=[UUID(i) for i in data["excluded"]],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class SortKey(str, enum.Enum):
    """Attribute a sort arrangement orders images by."""

    NAME = "name"
    CAPTURED_AT = "captured_at"
    CREATED_AT = "created_at"
    SIMILARITY = "similarity"


class Anchor(str, enum.Enum):
    """Grid cell an expansion grid grows out from."""

    CENTER = "center"
    TOP_LEFT = "top_left"
    TOP_RIGHT = "top_right"
    BOTTOM_LEFT = "bottom_left"
    BOTTOM_RIGHT = "bottom_right"


class GridDistance(str, enum.Enum):
    """Cell distance an expansion grid fills in order of."""

    MANHATTAN = "manhattan"
    PSEUDO_PYTHAGOREAN = "pseudo_pythagorean"
    PYTHAGOREAN = "pythagorean"


class TimeResolution(str, enum.Enum):
    """Bucket width of a time histogram, with its strftime label format."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def label_format(self) -> str:
        return _RESOLUTION_FORMATS[self]


_RESOLUTION_FORMATS = {
    TimeResolution.HOUR: "%Y-%j %H",
    TimeResolution.DAY: "%Y-%j",
    TimeResolution.WEEK: "%Y-%W",
    TimeResolution.MONTH: "%Y-%m",
    TimeResolution.YEAR: "%Y",
}
