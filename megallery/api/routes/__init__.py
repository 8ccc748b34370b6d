"""API routes."""
from fastapi import APIRouter

from . import health, images, collections, stream

# Create API v1 router
api_router = APIRouter(prefix="/api/v1")

# Include all route modules
api_router.include_router(health.router, tags=["health"])
api_router.include_router(collections.router, tags=["collections"])
api_router.include_router(images.router, tags=["images"])
api_router.include_router(stream.router, tags=["stream"])

__all__ = ["api_router"]
