"""
WebSocket tile streaming.

Protocol (client -> server, JSON text):

* ``{"type": "request", "viewport": [x0, y0, x1, y1], "level": 0,
  "priority": "center", "margin": 0.0, "limit": null, "credit": n}``
  (re)starts the stream; ``credit`` optionally grants more frames.
* ``{"type": "ack", "count": n}`` grants credit for n more frames.
* ``{"type": "cancel"}`` stops the current stream.

Server -> client (JSON text): ``{"type": "ready", ...}`` on connect, then one
``{"type": "tile", "id", "x", "y", "width", "height", "ext", "data", "error"}``
message per image (``data`` base64 encoded) while credit remains, and
``{"type": "end", "stream": id, "sent": n}`` when a stream is exhausted or
cancelled. Malformed messages get ``{"type": "error", "error": name,
"detail": text}``; the connection stays open unless the collection cannot
be streamed at all.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Callable
from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from megallery.api.dependencies import (
    get_cache_service,
    get_derivative_service,
    get_materialization_cache,
    get_session_factory,
    get_storage_service,
    get_worker_pools,
)
from megallery.core.config import settings
from megallery.core.exceptions import MegalleryException, ValidationException
from megallery.core.workers import WorkerPools
from megallery.services import (
    CacheService,
    CollectionService,
    DerivativeService,
    ImageService,
    MaterializationCache,
    StorageService,
    TileEntry,
    TileStreamSession,
)
from megallery.services.collection_service import SessionFactory
from megallery.services.tile_stream_service import parse_request

logger = logging.getLogger(__name__)

router = APIRouter()


class _Credit:
    """Frames the client is willing to receive."""

    def __init__(self, initial: int):
        self.value = initial
        self._changed = asyncio.Event()

    def grant(self, count: int):
        self.value += count
        self._changed.set()

    def wake(self):
        self._changed.set()

    async def take(self, abandoned: Callable[[], bool]) -> bool:
        """
        Consume one credit.

        Returns:
            False if the pending frame was abandoned while waiting
        """
        while True:
            if abandoned():
                return False
            if self.value > 0:
                self.value -= 1
                return True
            self._changed.clear()
            await self._changed.wait()


def _tile_message(entry: TileEntry) -> dict:
    message = {"type": "tile", **entry.to_dict()}
    if entry.data is not None:
        message["data"] = base64.b64encode(entry.data).decode("ascii")
    return message


def _count(message: dict, field: str, default: int) -> int:
    """Non-negative integer field of a client message."""
    value = message.get(field, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationException(f"{field} must be a non-negative integer, got {value!r}")
    return value


async def _send_error(websocket: WebSocket, error: MegalleryException):
    await websocket.send_json({"type": "error", "error": type(error).__name__, "detail": error.message})


async def _send_tiles(websocket: WebSocket, session: TileStreamSession, credit: _Credit):
    sent = 0
    current = session.stream_id
    while True:
        entry = await session.next()
        stream_id = session.stream_id
        if stream_id != current:
            current, sent = stream_id, 0

        if entry is None:
            await websocket.send_json({"type": "end", "stream": stream_id, "sent": sent})
            if session.stream_id == stream_id:
                await session.wait_restarted()
            continue

        def abandoned() -> bool:
            return session.stream_id != stream_id or session.cancelled

        if not await credit.take(abandoned):
            continue

        await websocket.send_json(_tile_message(entry))
        sent += 1


@router.websocket("/collections/{collection_id}/stream")
async def stream_tiles(
    websocket: WebSocket,
    collection_id: UUID,
    storage: StorageService = Depends(get_storage_service),
    derivatives: DerivativeService = Depends(get_derivative_service),
    materialization: MaterializationCache = Depends(get_materialization_cache),
    cache: CacheService = Depends(get_cache_service),
    pools: WorkerPools = Depends(get_worker_pools),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Stream a finalized collection's thumbnails, nearest to the priority point first."""
    await websocket.accept()

    try:
        async with session_factory() as db:
            images = ImageService(db, storage, derivatives, pools, pregenerate=False)
            collections = CollectionService(
                db, images, materialization, cache, pools, session_factory
            )
            embedding, refs = await collections.stream_source(collection_id)
    except MegalleryException as e:
        await _send_error(websocket, e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    session = TileStreamSession(
        derivatives,
        refs,
        embedding.coordinates,
        settings.tile_sizes,
        window=settings.stream_window,
        prefetch=settings.stream_prefetch,
    )
    credit = _Credit(settings.stream_window)
    await websocket.send_json({
        "type": "ready",
        "collection_id": str(collection_id),
        "generation": embedding.generation,
        "images": len(refs),
        "levels": settings.tile_sizes,
    })
    logger.info(f"Tile stream opened for collection {collection_id} ({len(refs)} images)")

    sender = asyncio.create_task(_send_tiles(websocket, session, credit))
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except json.JSONDecodeError as e:
                await _send_error(websocket, ValidationException(f"invalid JSON: {e}"))
                continue
            kind = message.get("type") if isinstance(message, dict) else None

            try:
                if kind == "request":
                    request = parse_request(message)
                    session.box_for(request.level)
                    credit.grant(_count(message, "credit", 0))
                    await session.restart(request)
                    credit.wake()
                elif kind == "ack":
                    credit.grant(_count(message, "count", 1))
                elif kind == "cancel":
                    await session.cancel()
                    credit.wake()
                else:
                    raise ValidationException(f"unknown message type: {kind}")
            except MegalleryException as e:
                await _send_error(websocket, e)
    except WebSocketDisconnect:
        logger.info(f"Tile stream closed for collection {collection_id}")
    finally:
        sender.cancel()
        await asyncio.wait([sender])
        if not sender.cancelled() and sender.exception() is not None:
            logger.warning(f"Tile sender for collection {collection_id} failed: {sender.exception()!r}")
        await session.close()
