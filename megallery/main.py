"""Main FastAPI application."""
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from megallery import __version__
from megallery.api.dependencies import shutdown_services
from megallery.api.middleware import RequestTimingMiddleware
from megallery.api.routes import api_router
from megallery.core.config import settings
from megallery.core.database import close_db, init_db
from megallery.core.exceptions import MegalleryException
from megallery.core.redis import redis_client


def configure_logging():
    """Configure root logging from settings."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    settings.ensure_directories_exist()
    configure_logging()

    logger.info("Starting Megallery...")
    logger.info(f"Storage root: {settings.storage_root}")
    logger.info(
        f"Database: {settings.database_url.split('@')[1] if '@' in settings.database_url else 'configured'}"
    )
    logger.info(
        f"Derivative cache: {settings.derivative_cache_bytes} bytes, "
        f"{settings.max_workers} request workers, {settings.embedding_workers} embedding workers"
    )

    if settings.database_create_tables:
        await init_db()

    yield

    logger.info("Shutting down Megallery...")
    shutdown_services()
    await redis_client.disconnect()
    await close_db()


app = FastAPI(
    title="Megallery API",
    description="Image collections laid out by visual similarity, with on-demand derivatives "
                "and progressive tile streaming",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(MegalleryException)
async def megallery_exception_handler(request: Request, exc: MegalleryException):
    """Map domain errors to their HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url}: {exc.message}")
    else:
        logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "type": type(exc).__name__,
        }
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request timing middleware
app.add_middleware(RequestTimingMiddleware)

# Include API routes
app.include_router(api_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Megallery API",
        "version": __version__,
        "docs": "/docs",
        "health": "/api/v1/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "megallery.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )
