"""Pluggable distance metrics over feature vectors.

Each metric projects a FeatureVector into a point of a Euclidean space; the
embedding engine measures similarity as distance between those points.
"""
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import numpy as np

from megallery.models.domain import FeatureVector

# Bins per RGB channel of the palette histogram
HISTOGRAM_BINS = 4

MEAN_COLOR_WEIGHT = 0.5
ASPECT_WEIGHT = 0.25

SECONDS_PER_DAY = 86400.0
EPOCH = datetime(1970, 1, 1)


def palette_histogram(features: FeatureVector) -> np.ndarray:
    """
    Square root of the swatch-weighted colour histogram.

    Euclidean distance between two of these is the Hellinger distance of the
    underlying colour distributions.
    """
    hist = np.zeros(HISTOGRAM_BINS ** 3)
    for swatch in features.palette:
        r = swatch.r * HISTOGRAM_BINS // 256
        g = swatch.g * HISTOGRAM_BINS // 256
        b = swatch.b * HISTOGRAM_BINS // 256
        hist[(r * HISTOGRAM_BINS + g) * HISTOGRAM_BINS + b] += swatch.weight

    total = hist.sum()
    if total > 0:
        hist /= total
    return np.sqrt(hist)


def mean_color(features: FeatureVector) -> np.ndarray:
    """Swatch-weighted mean colour scaled to [0, 1]."""
    colors = np.array([[s.r, s.g, s.b] for s in features.palette], dtype=np.float64) / 255.0
    weights = np.array([s.weight for s in features.palette], dtype=np.float64)
    if weights.sum() <= 0:
        return colors.mean(axis=0)
    return (colors * weights[:, None]).sum(axis=0) / weights.sum()


class BaseMetric(ABC):
    """Abstract base class for distance metrics."""

    @abstractmethod
    def vectorize(self, features: FeatureVector) -> Optional[np.ndarray]:
        """
        Project one feature vector into the metric space.

        Args:
            features: Extracted feature vector

        Returns:
            1-D float array, or None if this metric cannot place the image
        """
        pass

    @property
    @abstractmethod
    def metric_name(self) -> str:
        pass

    def prepare(self, matrix: np.ndarray) -> np.ndarray:
        """Adjust the stacked vectors of a whole collection before embedding."""
        return matrix


class PaletteMetric(BaseMetric):
    """Colour similarity from the dominant palette."""

    def vectorize(self, features: FeatureVector) -> Optional[np.ndarray]:
        if not features.palette:
            return None
        return np.concatenate([
            palette_histogram(features),
            MEAN_COLOR_WEIGHT * mean_color(features),
        ])

    @property
    def metric_name(self) -> str:
        return "palette"


class PaletteCosineMetric(PaletteMetric):
    """Palette vectors on the unit sphere, so distance ranks like cosine similarity."""

    def vectorize(self, features: FeatureVector) -> Optional[np.ndarray]:
        vector = super().vectorize(features)
        if vector is None:
            return None
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector

    @property
    def metric_name(self) -> str:
        return "palette_cosine"


class PaletteAspectMetric(PaletteMetric):
    """Palette similarity with a log-aspect term so shapes group together."""

    def vectorize(self, features: FeatureVector) -> Optional[np.ndarray]:
        vector = super().vectorize(features)
        if vector is None or features.height <= 0 or features.width <= 0:
            return None
        return np.append(vector, ASPECT_WEIGHT * math.log(features.aspect))

    @property
    def metric_name(self) -> str:
        return "palette_aspect"


class CaptureTimeMetric(BaseMetric):
    """Places images by capture time; images without a timestamp are excluded."""

    def vectorize(self, features: FeatureVector) -> Optional[np.ndarray]:
        captured_at = features.captured_at
        if captured_at is None:
            return None
        if captured_at.tzinfo is not None:
            captured_at = captured_at.astimezone(timezone.utc).replace(tzinfo=None)
        days = (captured_at - EPOCH).total_seconds() / SECONDS_PER_DAY
        return np.array([days])

    def prepare(self, matrix: np.ndarray) -> np.ndarray:
        return matrix - matrix.min(axis=0)

    @property
    def metric_name(self) -> str:
        return "capture_time"


METRICS = {
    "palette": PaletteMetric,
    "palette_cosine": PaletteCosineMetric,
    "palette_aspect": PaletteAspectMetric,
    "capture_time": CaptureTimeMetric,
}


def get_metric(metric_type: str = "palette_aspect") -> BaseMetric:
    """
    Factory function to get a distance metric by name.

    Raises:
        ValueError: If metric name is unknown
    """
    metric_class = METRICS.get(metric_type.lower())
    if not metric_class:
        raise ValueError(
            f"Unknown distance metric: {metric_type}. "
            f"Available: {', '.join(METRICS.keys())}"
        )
    return metric_class()
