"""SQLAlchemy ORM models."""
from .collection import Collection
from .image import Image
from .derivative import Derivative
from .embedding import Embedding

__all__ = [
    "Collection",
    "Image",
    "Derivative",
    "Embedding",
]
