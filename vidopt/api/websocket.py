"""WebSocket connection manager for real-time updates."""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections for broadcasting updates."""

    def __init__(self, name: str = "primary") -> None:
        self.name = name
        self.active_connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info(
            f"{self.name} client connected. Total connections: {len(self.active_connections)}"
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
        logger.info(
            f"{self.name} client disconnected. Total connections: {len(self.active_connections)}"
        )

    async def send_personal(self, websocket: WebSocket, message: dict[str, Any]) -> bool:
        """Send to one client. Returns False (and drops the client) on failure."""
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to {self.name} client: {e}")
            await self.disconnect(websocket)
            return False

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        json_message = json.dumps(message)
        disconnected = []

        async with self._lock:
            for connection in self.active_connections:
                try:
                    await connection.send_text(json_message)
                except Exception as e:
                    logger.warning(f"Failed to send message: {e}")
                    disconnected.append(connection)

            # Clean up disconnected clients
            for conn in disconnected:
                self.active_connections.remove(conn)

    async def broadcast_job_update(self, job: dict[str, Any]) -> None:
        """Broadcast the full serialized record of one job."""
        await self.broadcast({"type": "job_update", "job": job})

    async def broadcast_job_removed(self, job_id: str) -> None:
        await self.broadcast({"type": "job_removed", "job_id": job_id})


# Singleton instances: the main window and the tray status window
manager = ConnectionManager("primary")
tray_manager = ConnectionManager("tray")
