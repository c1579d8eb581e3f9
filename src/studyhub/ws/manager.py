"""WebSocket connection manager.

Tracks every open WebSocket per user and delivers JSON messages to them.
One manager is created per application and kept on ``app.state``.
"""

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()

CLOSE_TOO_MANY_CONNECTIONS = 4008


@dataclass
class ClientConnection:
    """Represents a single WebSocket client."""

    websocket: WebSocket
    user_id: str
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class ConnectionManager:
    """Manages all active WebSocket connections.

    Safe for asyncio via the single-threaded event loop.
    """

    def __init__(self, max_connections_per_user: int = 5) -> None:
        self._max_per_user = max_connections_per_user
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._user_connections: dict[str, set[str]] = defaultdict(set)  # user_id -> {conn_ids}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connections_for(self, user_id: str) -> int:
        return len(self._user_connections.get(user_id, ()))

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: str) -> bool:
        """Accept a connection, or refuse it when the user is at the cap."""
        if self.connections_for(user_id) >= self._max_per_user:
            await websocket.close(code=CLOSE_TOO_MANY_CONNECTIONS, reason="Too many connections")
            logger.warning("ws_rejected_connection_cap", user_id=user_id, cap=self._max_per_user)
            return False

        await websocket.accept()
        self._connections[conn_id] = ClientConnection(websocket=websocket, user_id=user_id)
        self._user_connections[user_id].add(conn_id)
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id)
        return True

    async def disconnect(self, conn_id: str) -> None:
        """Forget a connection. Unknown ids are ignored."""
        client = self._connections.pop(conn_id, None)
        if client is None:
            return

        self._user_connections[client.user_id].discard(conn_id)
        if not self._user_connections[client.user_id]:
            del self._user_connections[client.user_id]

        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id)

    async def send(self, conn_id: str, message: dict[str, Any]) -> bool:
        """Send to one connection. A failed send drops the connection."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        try:
            await client.websocket.send_text(json.dumps(message, default=str))
        except Exception:
            await self.disconnect(conn_id)
            return False
        client.messages_sent += 1
        return True

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "messages_sent": sum(c.messages_sent for c in self._connections.values()),
        }
