"""Embedding engine: Barnes-Hut t-SNE over pluggable feature metrics."""
from .metrics import BaseMetric, get_metric, METRICS
from .tsne import embed

__all__ = [
    "BaseMetric",
    "get_metric",
    "METRICS",
    "embed",
]
