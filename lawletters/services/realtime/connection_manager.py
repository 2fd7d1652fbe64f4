"""
WebSocket connection manager for real-time dashboard updates.

Manages active WebSocket connections per profile, allowing
server-sent change events to reach connected clients instantly.
"""
from typing import Dict, Iterable, Set
import asyncio
import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections per profile, tracking staff separately."""

    def __init__(self):
        # profile id -> set of active WebSocket connections
        self._connections: Dict[str, Set[WebSocket]] = {}
        # profile ids that receive staff-wide broadcasts (admins, employees)
        self._staff: Set[str] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str, is_staff: bool = False):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
            if is_staff:
                self._staff.add(user_id)

    async def disconnect(self, websocket: WebSocket, user_id: str):
        """Remove a WebSocket connection."""
        async with self._lock:
            if user_id in self._connections:
                self._connections[user_id].discard(websocket)
                if not self._connections[user_id]:
                    del self._connections[user_id]
                    self._staff.discard(user_id)

    async def send_to_user(self, user_id: str, message: dict):
        """Send a message to all connections for a specific profile."""
        async with self._lock:
            connections = self._connections.get(user_id, set()).copy()

        if not connections:
            return

        data = json.dumps(message, default=str)
        closed = []

        for ws in connections:
            try:
                await ws.send_text(data)
            except Exception as e:
                logger.debug(f"Dropping closed connection for {user_id}: {e}")
                closed.append(ws)

        # Clean up closed connections
        if closed:
            async with self._lock:
                if user_id in self._connections:
                    for ws in closed:
                        self._connections[user_id].discard(ws)
                    if not self._connections[user_id]:
                        del self._connections[user_id]
                        self._staff.discard(user_id)

    async def send_to_staff(self, message: dict, exclude: Iterable[str] = ()):
        """Send a message to every connected admin and employee."""
        skip = set(exclude)
        async with self._lock:
            user_ids = [uid for uid in self._staff if uid not in skip]

        for user_id in user_ids:
            await self.send_to_user(user_id, message)

    def get_connected_count(self, user_id: str) -> int:
        """Get the number of active connections for a profile."""
        return len(self._connections.get(user_id, set()))

    def get_total_connections(self) -> int:
        """Get total number of active connections across all profiles."""
        return sum(len(conns) for conns in self._connections.values())


# Singleton instance
manager = ConnectionManager()
