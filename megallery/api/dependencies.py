"""Dependency injection for FastAPI routes."""
from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.core.config import settings
from megallery.core.database import get_db, get_db_context
from megallery.core.workers import WorkerPools
from megallery.services import (
    StorageService,
    CacheService,
    MaterializationCache,
    DerivativeService,
    ImageService,
    CollectionService,
    AtlasService,
    ArrangementService,
)
from megallery.services.collection_service import SessionFactory


# Singleton service instances
_storage_service: StorageService | None = None
_cache_service: CacheService | None = None
_worker_pools: WorkerPools | None = None
_materialization_cache: MaterializationCache | None = None
_derivative_service: DerivativeService | None = None
_atlas_service: AtlasService | None = None


def get_storage_service() -> StorageService:
    """Get storage service (singleton)."""
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService(settings.storage_root)
    return _storage_service


def get_cache_service() -> CacheService:
    """Get cache service (singleton)."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService(metadata_ttl=settings.metadata_cache_ttl_seconds)
    return _cache_service


def get_worker_pools() -> WorkerPools:
    """Get worker pools (singleton)."""
    global _worker_pools
    if _worker_pools is None:
        _worker_pools = WorkerPools(settings.max_workers, settings.embedding_workers)
    return _worker_pools


def get_materialization_cache(
    storage: StorageService = Depends(get_storage_service),
) -> MaterializationCache:
    """Get the process-wide materialization cache (singleton)."""
    global _materialization_cache
    if _materialization_cache is None:
        _materialization_cache = MaterializationCache(settings.derivative_cache_bytes, storage)
    return _materialization_cache


def get_derivative_service(
    cache: MaterializationCache = Depends(get_materialization_cache),
    pools: WorkerPools = Depends(get_worker_pools),
) -> DerivativeService:
    """Get derivative service (singleton)."""
    global _derivative_service
    if _derivative_service is None:
        _derivative_service = DerivativeService(cache, pools, settings.thumbnail_quality)
    return _derivative_service


def get_atlas_service(
    derivatives: DerivativeService = Depends(get_derivative_service),
    pools: WorkerPools = Depends(get_worker_pools),
    storage: StorageService = Depends(get_storage_service),
) -> AtlasService:
    """Get atlas service (singleton)."""
    global _atlas_service
    if _atlas_service is None:
        _atlas_service = AtlasService(derivatives, pools, storage)
    return _atlas_service


def get_session_factory() -> SessionFactory:
    """Session factory used by work that outlives a request."""
    return get_db_context


def shutdown_services():
    """Release singleton resources."""
    global _worker_pools, _materialization_cache, _derivative_service, _atlas_service
    if _worker_pools is not None:
        _worker_pools.shutdown(wait=False)
    _worker_pools = None
    _materialization_cache = None
    _derivative_service = None
    _atlas_service = None


# Request-scoped services (get fresh instances with DB session)


async def get_image_service(
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage_service),
    derivatives: DerivativeService = Depends(get_derivative_service),
    pools: WorkerPools = Depends(get_worker_pools),
) -> ImageService:
    """Get image service."""
    return ImageService(db, storage, derivatives, pools, settings.pregenerate_thumbnails)


async def get_collection_service(
    db: AsyncSession = Depends(get_db),
    images: ImageService = Depends(get_image_service),
    materialization: MaterializationCache = Depends(get_materialization_cache),
    cache: CacheService = Depends(get_cache_service),
    pools: WorkerPools = Depends(get_worker_pools),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> CollectionService:
    """Get collection service."""
    return CollectionService(db, images, materialization, cache, pools, session_factory)


async def get_arrangement_service(
    db: AsyncSession = Depends(get_db),
) -> ArrangementService:
    """Get arrangement service."""
    return ArrangementService(db)
