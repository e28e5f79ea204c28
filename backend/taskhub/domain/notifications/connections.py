from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class PushConnection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionRegistry:
    """Live push channels per user.

    Mutations and snapshots happen under the lock; sends happen outside it so a
    slow socket never blocks connects or other broadcasts.
    """

    def __init__(self, metrics_client=None) -> None:  # noqa: ANN001
        self._connections: dict[str, set[PushConnection]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._metrics = metrics_client

    async def add(self, user_id: str, connection: PushConnection) -> None:
        async with self._lock:
            self._connections[user_id].add(connection)
            total = self._total()
        self._publish_gauge(total)
        logger.info("push_connection_added", extra={"extra": {"user_id": user_id}})

    async def remove(self, user_id: str, connection: PushConnection) -> None:
        async with self._lock:
            self._discard(user_id, connection)
            total = self._total()
        self._publish_gauge(total)
        logger.info("push_connection_removed", extra={"extra": {"user_id": user_id}})

    async def connection_count(self, user_id: str) -> int:
        async with self._lock:
            return len(self._connections.get(user_id, ()))

    async def broadcast(self, user_id: str, message: Any) -> int:
        async with self._lock:
            targets = list(self._connections.get(user_id, ()))
        delivered = 0
        dead: list[PushConnection] = []
        for connection in targets:
            try:
                await connection.send_json(message)
            except Exception as exc:  # noqa: BLE001
                dead.append(connection)
                logger.warning(
                    "push_send_failed",
                    extra={"extra": {"user_id": user_id, "error": type(exc).__name__}},
                )
            else:
                delivered += 1
        if dead:
            async with self._lock:
                for connection in dead:
                    self._discard(user_id, connection)
                total = self._total()
            self._publish_gauge(total)
        return delivered

    def _discard(self, user_id: str, connection: PushConnection) -> None:
        connections = self._connections.get(user_id)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            del self._connections[user_id]

    def _total(self) -> int:
        return sum(len(connections) for connections in self._connections.values())

    def _publish_gauge(self, total: int) -> None:
        if self._metrics is not None:
            self._metrics.set_ws_connections(total)
