"""Worker pools for CPU-bound work.

Interactive work (feature extraction, derivative generation) and long-running
embedding runs get separate executors so one large t-SNE job cannot starve
thumbnail requests.
"""
import asyncio
import concurrent.futures
import logging
from functools import partial
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerPools:
    """Owns the request-serving and embedding thread pools."""

    def __init__(self, max_workers: int = 4, embedding_workers: int = 1):
        self.request = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="megallery-request"
        )
        self.embedding = concurrent.futures.ThreadPoolExecutor(
            max_workers=embedding_workers,
            thread_name_prefix="megallery-embedding"
        )

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking function on the request pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.request, partial(func, *args, **kwargs))

    async def run_embedding(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking function on the dedicated embedding pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.embedding, partial(func, *args, **kwargs))

    def shutdown(self, wait: bool = True):
        logger.info("Shutting down worker pools")
        self.request.shutdown(wait=wait)
        self.embedding.shutdown(wait=wait)
