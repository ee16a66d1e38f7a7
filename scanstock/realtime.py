"""Realtime fan-out of store changes to connected WebSocket clients.

The broadcaster subscribes to the store's change feed, moves each change onto
the event loop through an ``asyncio.Queue`` and has a single background task
drain that queue. One consumer keeps messages in commit order for every
client. Delivery is best effort: a client that is not connected when a change
happens never sees it, and a client whose send fails is dropped.

Messages are ``{"type": ..., "data": ...}`` envelopes:

- ``items_update``: the full item list, newest first
- ``transaction_added``: one transaction joined with its current item
- ``scanner_mode_update``: the new scanner mode

Copyright (c) Bryn Gwalad 2025
"""

import asyncio
import logging
from typing import Callable, Optional, Set, Tuple

from fastapi import WebSocket

from . import database
from .models import item_to_dict

logger = logging.getLogger("scanstock.realtime")

ITEMS_UPDATE = "items_update"
TRANSACTION_ADDED = "transaction_added"
SCANNER_MODE_UPDATE = "scanner_mode_update"


class Broadcaster:
    def __init__(self) -> None:
        self._connections: Set[WebSocket] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)
        logger.info("Push client connected; %d open", len(self._connections))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._connections:
            self._connections.discard(websocket)
            logger.info("Push client disconnected; %d open", len(self._connections))

    async def broadcast(self, message_type: str, data: object) -> int:
        """Send one message to every open connection; returns deliveries."""
        message = {"type": message_type, "data": data}
        delivered = 0
        # iterate over a snapshot, connect/disconnect may run while we await
        for websocket in list(self._connections):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping push client after failed %s delivery", message_type)
                self.disconnect(websocket)
        return delivered

    def start(self) -> None:
        """Subscribe to the change feed and start the dispatch task.

        Must be called from the running event loop.
        """
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._unsubscribe = database.subscribe(self._on_change)
        self._task = asyncio.create_task(self._dispatcher(self._queue))
        logger.info("Realtime broadcaster started")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop = None
        self._queue = None
        logger.info("Realtime broadcaster stopped")

    def _on_change(self, namespace: str, payload: object) -> None:
        # Called on whichever thread committed the write.
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, (namespace, payload))

    async def _dispatcher(self, queue: asyncio.Queue) -> None:
        while True:
            change: Tuple[str, object] = await queue.get()
            try:
                await self._dispatch(*change)
            except Exception:
                logger.exception("Failed to broadcast change: %s", change[0])
            finally:
                queue.task_done()

    async def _dispatch(self, namespace: str, payload: object) -> None:
        if not self._connections:
            return
        if namespace == database.ITEMS:
            items = await asyncio.to_thread(database.list_items)
            await self.broadcast(ITEMS_UPDATE, [item_to_dict(item) for item in items])
        elif namespace == database.TRANSACTIONS:
            await self.broadcast(TRANSACTION_ADDED, payload)
        elif namespace == database.SCANNER_MODE:
            await self.broadcast(SCANNER_MODE_UPDATE, payload)
        else:
            logger.warning("Ignoring change for unknown namespace %s", namespace)
