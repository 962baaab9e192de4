"""State Broadcaster - mirrors converting jobs to the tray window.

Keeps no state of its own: every push is a fresh projection of the job
store. The tray replaces its view wholesale on each message, so it is at
most one interval stale.
"""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

from vidopt.api.websocket import ConnectionManager
from vidopt.config import settings
from vidopt.models.job import JobStatus
from vidopt.services.job_store import JobStore

logger = logging.getLogger(__name__)

TRAY_SYNC_STATE = "tray_sync_state"
TRAY_SYNC_REQUEST = "request_tray_sync"


class StateBroadcaster:
    def __init__(
        self,
        store: JobStore,
        ws_manager: ConnectionManager,
        interval: float | None = None,
    ) -> None:
        self._store = store
        self._ws = ws_manager
        self.interval = interval or settings.tray_sync_interval
        self._task: asyncio.Task | None = None

    def snapshot(self) -> list[dict[str, Any]]:
        """Serialized converting jobs, in store order."""
        return [
            job.model_dump(mode="json")
            for job in self._store.list_jobs()
            if job.status == JobStatus.CONVERTING
        ]

    def payload(self) -> dict[str, Any]:
        return {"type": TRAY_SYNC_STATE, "files": self.snapshot()}

    async def broadcast(self) -> dict[str, Any]:
        """Push the current snapshot to every tray client."""
        message = self.payload()
        await self._ws.broadcast(message)
        return message

    async def handle_sync_request(self, websocket: WebSocket | None = None) -> dict[str, Any]:
        """Answer a tray pull request immediately.

        Replies only to ``websocket`` when given, otherwise to all tray clients.
        """
        if websocket is None:
            return await self.broadcast()
        message = self.payload()
        await self._ws.send_personal(websocket, message)
        return message

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="state-broadcaster")
        logger.info(f"Tray state broadcaster started (every {self.interval:.1f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Tray state broadcaster stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.broadcast()
            except Exception as e:
                logger.warning(f"Tray state broadcast failed: {e}")
            await asyncio.sleep(self.interval)
