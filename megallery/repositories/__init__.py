"""Data access layer - repositories."""
from .base import BaseRepository
from .collection_repository import CollectionRepository
from .image_repository import ImageRepository
from .derivative_repository import DerivativeRepository
from .embedding_repository import EmbeddingRepository

__all__ = [
    "BaseRepository",
    "CollectionRepository",
    "ImageRepository",
    "DerivativeRepository",
    "EmbeddingRepository",
]
