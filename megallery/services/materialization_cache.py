"""
Materialization cache.

Memoizes expensive pure computations (derivative generation, embedding runs)
behind deterministic keys with single-flight coalescing: at most one
computation per key is in flight, and every concurrent caller for that key
awaits the same result.

Derivative buffers live in a byte-budgeted LRU where Original files are
pinned. Embeddings are kept until explicitly invalidated. When a storage
service is attached, results are persisted on first computation and read
back on a memory miss, so a restart does not recompute them.

All bookkeeping is mutated from the event loop only; per-key exclusion comes
from the in-flight table, so unrelated keys proceed in parallel.
"""
import asyncio
import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Union
from uuid import UUID

from megallery.core.exceptions import Cancelled, CapacityExceeded, StorageException
from megallery.models.domain import (
    CollectionEmbedding,
    DerivativeBuffer,
    DerivativeKey,
    EmbeddingKey,
)
from megallery.services.storage_service import StorageService

logger = logging.getLogger(__name__)

CacheKey = Union[DerivativeKey, EmbeddingKey]
CacheValue = Union[DerivativeBuffer, CollectionEmbedding]
ComputeFn = Callable[[], Awaitable[CacheValue]]
PublishFn = Callable[[CacheValue], Awaitable[None]]


@dataclass
class _Flight:
    """An in-flight computation and the callers waiting on it."""

    detached: bool
    task: Optional[asyncio.Task] = None
    waiters: int = 0
    # Set once the value exists; the flight then runs to completion
    publishing: bool = False


def _caller_cancelled() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


class MaterializationCache:
    """Single-flight, content-addressed cache for derivatives and embeddings."""

    def __init__(self, capacity_bytes: int, storage: Optional[StorageService] = None):
        """
        Initialize the cache.

        Args:
            capacity_bytes: Budget for in-memory derivative buffers
            storage: Blob storage used for persistence (memory only if None)
        """
        self.capacity_bytes = capacity_bytes
        self.storage = storage

        self._derivatives: "OrderedDict[DerivativeKey, DerivativeBuffer]" = OrderedDict()
        self._derivative_bytes = 0
        self._pinned_bytes = 0
        self._embeddings: Dict[EmbeddingKey, CollectionEmbedding] = {}
        self._flights: Dict[CacheKey, _Flight] = {}
        self._stats: Counter = Counter()

    # Lookup

    def peek(self, key: CacheKey) -> Optional[CacheValue]:
        """Return the in-memory value for a key, marking it recently used."""
        if isinstance(key, EmbeddingKey):
            return self._embeddings.get(key)

        value = self._derivatives.get(key)
        if value is not None:
            self._derivatives.move_to_end(key)
        return value

    def contains(self, key: CacheKey) -> bool:
        if isinstance(key, EmbeddingKey):
            return key in self._embeddings
        return key in self._derivatives

    def in_flight(self, key: CacheKey) -> bool:
        return key in self._flights

    async def get(self, key: CacheKey) -> Optional[CacheValue]:
        """Return the value from memory or persistent storage, without computing."""
        value = self.peek(key)
        if value is not None:
            self._stats["hits"] += 1
            return value

        value = await self._load(key)
        if value is not None:
            self._admit_quietly(key, value)
        return value

    async def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: ComputeFn,
        *,
        detached: bool = False
    ) -> CacheValue:
        """
        Return the cached value for a key, computing it at most once.

        Args:
            key: Cache key
            compute_fn: Coroutine factory producing the value on a miss
            detached: Keep computing even if every waiting caller goes away

        Raises:
            Whatever compute_fn raises; Cancelled if the shared computation
            was cancelled while this caller was waiting
        """
        value = self.peek(key)
        if value is not None:
            self._stats["hits"] += 1
            return value
        return await self._join(key, compute_fn, detached=detached, use_storage=True)

    async def recompute(
        self,
        key: CacheKey,
        compute_fn: ComputeFn,
        *,
        detached: bool = False,
        publish: Optional[PublishFn] = None
    ) -> CacheValue:
        """
        Compute a fresh value for a key and publish it when complete.

        The current value stays readable until the new one replaces it; a
        caller racing an in-flight computation for the same key joins it.

        Args:
            key: Cache key
            compute_fn: Coroutine factory producing the new value
            detached: Keep computing even if every waiting caller goes away
            publish: Called with the computed value before it is persisted
                and admitted. Once compute_fn has returned, cancellation no
                longer applies: publish, persistence and admission all happen.
        """
        return await self._join(
            key, compute_fn, detached=detached, use_storage=False, publish=publish
        )

    # Mutation

    async def put(self, key: CacheKey, value: CacheValue, *, strict: bool = False) -> bool:
        """
        Store a value that was produced outside the cache.

        Args:
            key: Cache key
            value: Value to store
            strict: Raise CapacityExceeded instead of skipping retention

        Returns:
            True if the value was retained in memory
        """
        await self._persist(key, value)
        if strict:
            self._admit(key, value)
            return True
        return self._admit_quietly(key, value)

    def invalidate(self, key: CacheKey) -> bool:
        """
        Drop a key from memory and persistent storage.

        Returns:
            True if anything was removed
        """
        removed = self._evict_key(key)
        if self.storage is not None:
            removed = self._delete_persisted(key) or removed
        return removed

    def invalidate_image(self, collection_id: UUID, image_id: UUID) -> int:
        """Drop every in-memory derivative of one image."""
        keys = [
            k for k in self._derivatives
            if k.collection_id == collection_id and k.image_id == image_id
        ]
        for key in keys:
            self._evict_key(key)
        return len(keys)

    def invalidate_prefix(self, collection_id: UUID) -> int:
        """
        Drop every entry scoped to a collection.

        In-memory derivatives and the embedding are removed, as is the
        persisted embedding document. Derivative files stay on disk; they are
        pure functions of immutable images and are deleted with their image.

        Returns:
            Number of entries removed
        """
        keys = [k for k in self._derivatives if k.collection_id == collection_id]
        for key in keys:
            self._evict_key(key)

        removed = len(keys)
        embedding_key = EmbeddingKey(collection_id)
        if self._evict_key(embedding_key):
            removed += 1
        if self.storage is not None:
            self._delete_persisted(embedding_key)

        logger.info(f"Invalidated {removed} cache entries of collection {collection_id}")
        return removed

    def cancel(self, key: CacheKey) -> bool:
        """
        Cancel the in-flight computation of a key.

        A computation whose value is already being published is left to
        finish.

        Returns:
            True if a running computation was cancelled
        """
        flight = self._flights.get(key)
        if flight is None:
            return False
        logger.info(f"Cancelling in-flight computation for {key}")
        return self._abandon(key, flight)

    def clear(self):
        self._derivatives.clear()
        self._derivative_bytes = 0
        self._pinned_bytes = 0
        self._embeddings.clear()

    def stats(self) -> dict:
        return {
            "derivatives": len(self._derivatives),
            "derivative_bytes": self._derivative_bytes,
            "pinned_bytes": self._pinned_bytes,
            "capacity_bytes": self.capacity_bytes,
            "embeddings": len(self._embeddings),
            "in_flight": len(self._flights),
            **self._stats,
        }

    # Single-flight

    async def _join(
        self,
        key: CacheKey,
        compute_fn: ComputeFn,
        detached: bool,
        use_storage: bool,
        publish: Optional[PublishFn] = None
    ) -> CacheValue:
        flight = self._flights.get(key)
        if flight is None:
            self._stats["misses"] += 1
            flight = _Flight(detached=detached)
            flight.task = asyncio.ensure_future(
                self._materialize(key, flight, compute_fn, use_storage, publish)
            )
            self._flights[key] = flight
            flight.task.add_done_callback(lambda t, k=key, f=flight: self._flight_done(k, f))
        else:
            self._stats["coalesced"] += 1
            flight.detached = flight.detached or detached

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if flight.task.cancelled() and not _caller_cancelled():
                raise Cancelled(f"computation for {key} was cancelled")
            raise
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.detached:
                # Nobody wants this result any more
                self._abandon(key, flight)

    def _abandon(self, key: CacheKey, flight: _Flight) -> bool:
        """Cancel a flight and unlist it, so the next caller starts afresh."""
        if flight.task.done() or flight.publishing:
            return False
        if self._flights.get(key) is flight:
            del self._flights[key]
        return flight.task.cancel()

    def _flight_done(self, key: CacheKey, flight: _Flight):
        if self._flights.get(key) is flight:
            del self._flights[key]
        if flight.task.cancelled():
            self._stats["cancelled"] += 1
        elif flight.task.exception() is not None:
            self._stats["failures"] += 1

    async def _materialize(
        self,
        key: CacheKey,
        flight: _Flight,
        compute_fn: ComputeFn,
        use_storage: bool,
        publish: Optional[PublishFn]
    ) -> CacheValue:
        if use_storage:
            value = await self._load(key)
            if value is not None:
                self._admit_quietly(key, value)
                return value

        self._stats["computations"] += 1
        value = await compute_fn()
        # No await between the value and this flag: a cancel lands before it or not at all
        flight.publishing = True

        if publish is None:
            await self._persist(key, value)
        else:
            await publish(value)
            try:
                await self._persist(key, value)
            except StorageException as e:
                # Published elsewhere; an older document must not shadow it
                logger.error(f"Could not persist published {key}: {e.message}")
                self._discard_persisted(key)

        self._admit_quietly(key, value)
        return value

    # Memory admission

    def _admit(self, key: CacheKey, value: CacheValue):
        if isinstance(key, EmbeddingKey):
            # Swap in one assignment: readers see the old or the new generation
            self._embeddings[key] = value
            return

        size = len(value)
        self._evict_key(key)

        pinned_after = self._pinned_bytes + (size if key.pinned else 0)
        floor = pinned_after if key.pinned else pinned_after + size
        if floor > self.capacity_bytes:
            raise CapacityExceeded(size, self.capacity_bytes)

        while self._derivative_bytes + size > self.capacity_bytes:
            self._evict_lru()

        self._derivatives[key] = value
        self._derivative_bytes += size
        if key.pinned:
            self._pinned_bytes += size

    def _admit_quietly(self, key: CacheKey, value: CacheValue) -> bool:
        try:
            self._admit(key, value)
            return True
        except CapacityExceeded as e:
            logger.warning(f"Serving {key} without retaining it: {e.message}")
            return False

    def _evict_lru(self):
        for key in self._derivatives:
            if not key.pinned:
                self._evict_key(key)
                self._stats["evictions"] += 1
                return
        raise CapacityExceeded(0, self.capacity_bytes)

    def _evict_key(self, key: CacheKey) -> bool:
        if isinstance(key, EmbeddingKey):
            return self._embeddings.pop(key, None) is not None

        value = self._derivatives.pop(key, None)
        if value is None:
            return False
        self._derivative_bytes -= len(value)
        if key.pinned:
            self._pinned_bytes -= len(value)
        return True

    # Persistence

    async def _load(self, key: CacheKey) -> Optional[CacheValue]:
        if self.storage is None:
            return None
        value = await asyncio.to_thread(self._load_sync, key)
        if value is not None:
            self._stats["storage_hits"] += 1
        return value

    def _load_sync(self, key: CacheKey) -> Optional[CacheValue]:
        if isinstance(key, EmbeddingKey):
            data = self.storage.read_json(self.storage.embedding_path(key.collection_id))
            return CollectionEmbedding.from_dict(data) if data else None

        path = self.storage.find_derivative(key.image_id, key.width, key.height, key.kind)
        if path is None:
            return None
        return DerivativeBuffer(self.storage.read_file(path), path.suffix.lstrip("."))

    async def _persist(self, key: CacheKey, value: CacheValue):
        if self.storage is None:
            return
        await asyncio.to_thread(self._persist_sync, key, value)

    def _persist_sync(self, key: CacheKey, value: CacheValue):
        if isinstance(key, EmbeddingKey):
            self.storage.write_json(value.to_dict(), self.storage.embedding_path(key.collection_id))
            return

        path = self.storage.derivative_path(
            key.image_id, key.width, key.height, key.kind, value.extension
        )
        if not path.exists():
            self.storage.save_file(value.data, path)

    def _delete_persisted(self, key: CacheKey) -> bool:
        if isinstance(key, EmbeddingKey):
            return self.storage.delete_file(self.storage.embedding_path(key.collection_id))

        path = self.storage.find_derivative(key.image_id, key.width, key.height, key.kind)
        return self.storage.delete_file(path) if path else False

    def _discard_persisted(self, key: CacheKey):
        try:
            self._delete_persisted(key)
        except StorageException as e:
            logger.error(f"Stale persisted copy of {key} remains: {e.message}")
