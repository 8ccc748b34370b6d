"""Pytest configuration and fixtures."""
from __future__ import annotations

import fnmatch
from contextlib import nullcontext
from typing import Any, AsyncGenerator, Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from megallery.api import dependencies
from megallery.core.config import settings
from megallery.core.database import Base, get_db
from megallery.core.workers import WorkerPools
from megallery.main import app
from megallery.models.domain import TsneParams
from megallery.services import (
    ArrangementService,
    AtlasService,
    CacheService,
    CollectionService,
    DerivativeService,
    ImageService,
    MaterializationCache,
    StorageService,
)

# In-memory database shared by every session of a test
TEST_DATABASE_URL = "sqlite+aiosqlite://"

CACHE_CAPACITY = 64 * 1024 * 1024

# Small, fast runs; enough iterations to separate distinct colour groups
FAST_TSNE = TsneParams(perplexity=5.0, iterations=250, learning_rate=100.0, theta=0.5)


class InMemoryRedis:
    """Stands in for RedisClient with the same coroutine interface."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.available = True

    def _check(self):
        if not self.available:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self._check()
        self.data[key] = value

    async def delete(self, key: str):
        self._check()
        self.data.pop(key, None)

    async def get_json(self, key: str) -> Optional[Any]:
        self._check()
        return self.data.get(key)

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None):
        self._check()
        self.data[key] = value

    async def clear_pattern(self, pattern: str):
        self._check()
        for key in [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]:
            del self.data[key]

    async def ping(self) -> bool:
        return self.available

    async def disconnect(self):
        pass


@pytest_asyncio.fixture(scope="function")
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session_maker = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db_session):
    """Session factory that hands embedding runs the test session."""
    return lambda: nullcontext(db_session)


@pytest.fixture
def storage(tmp_path) -> StorageService:
    return StorageService(tmp_path / "storage")


@pytest.fixture
def pools():
    worker_pools = WorkerPools(max_workers=4, embedding_workers=1)
    yield worker_pools
    worker_pools.shutdown(wait=True)


@pytest.fixture
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def cache_service(redis) -> CacheService:
    return CacheService(redis=redis, metadata_ttl=60)


@pytest.fixture
def materialization(storage) -> MaterializationCache:
    return MaterializationCache(CACHE_CAPACITY, storage)


@pytest.fixture
def derivative_service(materialization, pools) -> DerivativeService:
    return DerivativeService(materialization, pools, quality=80)


@pytest.fixture
def image_service(db_session, storage, derivative_service, pools) -> ImageService:
    return ImageService(db_session, storage, derivative_service, pools, pregenerate=False)


@pytest.fixture
def atlas_service(derivative_service, pools, storage) -> AtlasService:
    return AtlasService(derivative_service, pools, storage)


@pytest.fixture
def arrangement_service(db_session) -> ArrangementService:
    return ArrangementService(db_session)


@pytest.fixture
def collection_service(
    db_session,
    image_service,
    materialization,
    cache_service,
    pools,
    session_factory
) -> CollectionService:
    return CollectionService(
        db_session,
        image_service,
        materialization,
        cache_service,
        pools,
        session_factory=session_factory,
    )


@pytest.fixture
def override_services(
    monkeypatch,
    storage,
    cache_service,
    pools,
    materialization,
    derivative_service,
    atlas_service,
):
    """Point the application's singletons at the test instances."""
    monkeypatch.setattr(settings, "pregenerate_thumbnails", False)

    app.dependency_overrides[dependencies.get_storage_service] = lambda: storage
    app.dependency_overrides[dependencies.get_cache_service] = lambda: cache_service
    app.dependency_overrides[dependencies.get_worker_pools] = lambda: pools
    app.dependency_overrides[dependencies.get_materialization_cache] = lambda: materialization
    app.dependency_overrides[dependencies.get_derivative_service] = lambda: derivative_service
    app.dependency_overrides[dependencies.get_atlas_service] = lambda: atlas_service

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, session_factory, override_services) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database override."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
