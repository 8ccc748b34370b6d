"""Business logic services."""
from .storage_service import StorageService
from .cache_service import CacheService
from .materialization_cache import MaterializationCache
from .derivative_service import DerivativeService, ImageRef
from .image_service import ImageService, BulkFile
from .collection_service import CollectionService
from .atlas_service import AtlasService, AtlasParams, Atlas
from .arrangement_service import ArrangementService, ArrangeFilter, SortOptions
from .tile_stream_service import TileStreamSession, TileRequest, TileEntry

__all__ = [
    "StorageService",
    "CacheService",
    "MaterializationCache",
    "DerivativeService",
    "ImageRef",
    "ImageService",
    "BulkFile",
    "CollectionService",
    "AtlasService",
    "AtlasParams",
    "Atlas",
    "ArrangementService",
    "ArrangeFilter",
    "SortOptions",
    "TileStreamSession",
    "TileRequest",
    "TileEntry",
]
