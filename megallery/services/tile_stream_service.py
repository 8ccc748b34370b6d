"""
Progressive tile streaming.

A session turns a collection's embedding into a prioritized, lazy sequence of
tile entries (image id, layout coordinate, thumbnail bytes). A producer task
looks thumbnails up through the materialization cache, a few at a time, and
feeds a bounded queue; when the consumer stops draining the queue the
producer suspends. Restarting with a new request replaces the producer;
cancelling stops it together with the cache waits it started, while
computations other sessions are waiting on keep running.
"""
import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from megallery.core.exceptions import MegalleryException, ValidationException
from megallery.models.domain import DerivativeKind
from megallery.services.derivative_service import DerivativeService, ImageRef, output_size

logger = logging.getLogger(__name__)

Coordinate = Tuple[float, float]


class Priority(str, enum.Enum):
    """Point of the viewport that tiles are streamed outward from.

    Layout coordinates grow rightward in x and downward in y.
    """

    CENTER = "center"
    TOP_LEFT = "top_left"
    TOP_RIGHT = "top_right"
    BOTTOM_LEFT = "bottom_left"
    BOTTOM_RIGHT = "bottom_right"


@dataclass(frozen=True)
class Viewport:
    """Visible rectangle in layout space."""

    x0: float = 0.0
    y0: float = 0.0
    x1: float = 1.0
    y1: float = 1.0

    def __post_init__(self):
        if not (self.x0 <= self.x1 and self.y0 <= self.y1):
            raise ValidationException(
                f"viewport corners out of order: ({self.x0}, {self.y0}) ({self.x1}, {self.y1})"
            )

    def contains(self, point: Coordinate, margin: float = 0.0) -> bool:
        x, y = point
        return (
            self.x0 - margin <= x <= self.x1 + margin
            and self.y0 - margin <= y <= self.y1 + margin
        )

    def anchor(self, priority: Priority) -> Coordinate:
        if priority is Priority.TOP_LEFT:
            return self.x0, self.y0
        if priority is Priority.TOP_RIGHT:
            return self.x1, self.y0
        if priority is Priority.BOTTOM_LEFT:
            return self.x0, self.y1
        if priority is Priority.BOTTOM_RIGHT:
            return self.x1, self.y1
        return (self.x0 + self.x1) / 2.0, (self.y0 + self.y1) / 2.0


@dataclass(frozen=True)
class TileRequest:
    """What a consumer wants streamed and in which order."""

    viewport: Viewport = field(default_factory=Viewport)
    level: int = 0
    priority: Priority = Priority.CENTER
    margin: float = 0.0
    limit: Optional[int] = None


@dataclass(frozen=True)
class TileEntry:
    """One streamed image; failures carry an error name and no data."""

    image_id: UUID
    x: float
    y: float
    width: int = 0
    height: int = 0
    extension: Optional[str] = None
    data: Optional[bytes] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": str(self.image_id),
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "ext": self.extension,
            "data": self.data,
            "error": self.error,
        }


def plan(
    coordinates: Mapping[UUID, Coordinate],
    request: TileRequest
) -> List[Tuple[UUID, Coordinate]]:
    """
    Images to stream for a request, nearest to the priority point first.

    Ties are broken by image id so the order is deterministic.
    """
    px, py = request.viewport.anchor(request.priority)
    visible = [
        (image_id, point)
        for image_id, point in coordinates.items()
        if request.viewport.contains(point, request.margin)
    ]
    visible.sort(key=lambda item: ((item[1][0] - px) ** 2 + (item[1][1] - py) ** 2, str(item[0])))
    if request.limit is not None:
        visible = visible[:request.limit]
    return visible


# Queue markers
_END = object()
_RESTARTED = object()


class TileStreamSession:
    """Producer/consumer pair streaming one collection's tiles."""

    def __init__(
        self,
        derivatives: DerivativeService,
        refs: Mapping[UUID, ImageRef],
        coordinates: Mapping[UUID, Coordinate],
        tile_sizes: Sequence[int],
        window: int = 32,
        prefetch: int = 8
    ):
        """
        Initialize a session.

        Args:
            derivatives: Derivative service over the shared cache
            refs: Streamable images by id
            coordinates: Layout coordinates by image id
            tile_sizes: Thumbnail box edge per level of detail
            window: Entries buffered ahead of the consumer
            prefetch: Concurrent derivative lookups
        """
        self.derivatives = derivatives
        self.refs = dict(refs)
        self.coordinates = {k: v for k, v in coordinates.items() if k in self.refs}
        self.tile_sizes = list(tile_sizes)
        self.window = max(1, window)
        self.prefetch = max(1, prefetch)

        self.stream_id = 0
        self.produced = 0
        self.cancelled = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.window)
        self._producer: Optional[asyncio.Task] = None
        self._restarted = asyncio.Event()

    def box_for(self, level: int) -> int:
        if not 0 <= level < len(self.tile_sizes):
            raise ValidationException(
                f"level must be between 0 and {len(self.tile_sizes) - 1}, got {level}"
            )
        return self.tile_sizes[level]

    @property
    def running(self) -> bool:
        return self._producer is not None and not self._producer.done()

    # Control

    async def restart(self, request: TileRequest):
        """Replace the current stream with one for a new request."""
        box = self.box_for(request.level)
        await self._stop_producer()
        self._replace_queue()

        self.stream_id += 1
        self.produced = 0
        self.cancelled = False
        planned = plan(self.coordinates, request)
        logger.debug(
            f"Stream {self.stream_id}: {len(planned)} tiles at {box}px, priority {request.priority.value}"
        )
        self._producer = asyncio.create_task(self._produce(self._queue, planned, box))

        restarted, self._restarted = self._restarted, asyncio.Event()
        restarted.set()

    async def cancel(self):
        """Stop producing; only this session's pending lookups are dropped."""
        self.cancelled = True
        await self._stop_producer()
        self._replace_queue().put_nowait(_END)

    async def close(self):
        await self.cancel()

    async def wait_restarted(self):
        """Suspend until the next restart."""
        await self._restarted.wait()

    def _replace_queue(self) -> asyncio.Queue:
        old_queue = self._queue
        self._queue = asyncio.Queue(maxsize=self.window)
        if old_queue.empty():
            # Wake a consumer blocked on the old stream
            old_queue.put_nowait(_RESTARTED)
        return self._queue

    async def _stop_producer(self):
        if self._producer is None:
            return
        producer, self._producer = self._producer, None
        if not producer.done():
            producer.cancel()
        # wait() returns once the producer has unwound its pending lookups
        await asyncio.wait([producer])

    # Consumption

    async def next(self) -> Optional[TileEntry]:
        """
        Next entry of the current stream.

        Returns:
            TileEntry, or None when the stream ended or was cancelled
        """
        while True:
            queue = self._queue
            item = await queue.get()
            if item is _RESTARTED:
                continue
            if item is _END:
                # Stays ended until the next restart
                queue.put_nowait(_END)
                return None
            return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> TileEntry:
        entry = await self.next()
        if entry is None:
            raise StopAsyncIteration
        return entry

    # Production

    async def _produce(
        self,
        queue: asyncio.Queue,
        planned: List[Tuple[UUID, Coordinate]],
        box: int
    ):
        pending: Deque[asyncio.Task] = deque()
        remaining = iter(planned)

        def schedule() -> bool:
            item = next(remaining, None)
            if item is None:
                return False
            image_id, (x, y) = item
            pending.append(asyncio.create_task(self._fetch(image_id, x, y, box)))
            return True

        try:
            while len(pending) < self.prefetch and schedule():
                pass

            while pending:
                entry = await pending[0]
                pending.popleft()
                # Suspends while the consumer's window is full
                await queue.put(entry)
                self.produced += 1
                schedule()

            await queue.put(_END)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _fetch(self, image_id: UUID, x: float, y: float, box: int) -> TileEntry:
        ref = self.refs[image_id]
        try:
            buffer = await self.derivatives.get_derivative(ref, box, box, DerivativeKind.THUMBNAIL)
        except MegalleryException as e:
            logger.warning(f"Tile for image {image_id} failed: {e.message}")
            return TileEntry(image_id, x, y, error=type(e).__name__)
        except Exception as e:
            logger.exception(f"Unexpected error streaming image {image_id}")
            return TileEntry(image_id, x, y, error=type(e).__name__)

        width, height = output_size(ref, box, box, DerivativeKind.THUMBNAIL)
        return TileEntry(image_id, x, y, width, height, buffer.extension, buffer.data)


def parse_request(message: dict) -> TileRequest:
    """
    Build a TileRequest from a client message.

    Raises:
        ValidationException: Malformed fields
    """
    try:
        viewport = message.get("viewport") or [0.0, 0.0, 1.0, 1.0]
        if isinstance(viewport, dict):
            viewport = [viewport["x0"], viewport["y0"], viewport["x1"], viewport["y1"]]
        x0, y0, x1, y1 = (float(v) for v in viewport)
        limit = message.get("limit")
        return TileRequest(
            viewport=Viewport(x0, y0, x1, y1),
            level=int(message.get("level", 0)),
            priority=Priority(message.get("priority", Priority.CENTER.value)),
            margin=float(message.get("margin", 0.0)),
            limit=int(limit) if limit is not None else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationException(f"invalid tile request: {e}")
