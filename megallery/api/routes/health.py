"""Health check endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from megallery.api.dependencies import get_cache_service, get_materialization_cache
from megallery.core.database import get_db
from megallery.services import CacheService, MaterializationCache

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    cache: str
    materialization: dict


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    materialization: MaterializationCache = Depends(get_materialization_cache),
):
    """
    Health check endpoint.

    Returns service health status and materialization cache counters.
    """
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "unhealthy"

    cache_status = "healthy" if await cache.ping() else "unavailable"

    status = "healthy" if db_status == "healthy" else "unhealthy"

    return HealthResponse(
        status=status,
        database=db_status,
        cache=cache_status,
        materialization=materialization.stats(),
    )
