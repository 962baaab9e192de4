"""Domain-specific event broadcasting layer.

Turns job store change notifications into WebSocket events for the main
window. Store listeners are synchronous, so events are queued and sent by a
pump task; sends never block a store mutation.
"""

import asyncio
import logging

from vidopt.api.websocket import ConnectionManager
from vidopt.models.job import JobRecord
from vidopt.services.job_store import JobStore, StoreEvent

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Domain-specific WebSocket event broadcasting."""

    def __init__(self, ws_manager: ConnectionManager):
        self._ws = ws_manager
        self._queue: asyncio.Queue[tuple[StoreEvent, JobRecord]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._unsubscribe = None

    def attach(self, store: JobStore) -> None:
        """Start forwarding changes of ``store``. Must run inside the event loop."""
        self._unsubscribe = store.subscribe(self._on_store_event)
        self._task = asyncio.get_running_loop().create_task(self._pump(), name="event-broadcaster")

    async def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def _on_store_event(self, event: StoreEvent, record: JobRecord) -> None:
        self._queue.put_nowait((event, record))

    async def _pump(self) -> None:
        while True:
            event, record = await self._queue.get()
            try:
                await self.broadcast(event, record)
            except Exception as e:
                logger.warning(f"Failed to broadcast {event.value} for job {record.id}: {e}")

    async def broadcast(self, event: StoreEvent, record: JobRecord) -> None:
        if event == StoreEvent.REMOVED:
            await self.broadcast_job_removed(record.id)
        else:
            await self.broadcast_job_update(record)

    # --- Job Lifecycle Events ---

    async def broadcast_job_update(self, job: JobRecord):
        """Broadcast creation, state change or progress of a job."""
        await self._ws.broadcast_job_update(job.model_dump(mode="json"))

    async def broadcast_job_removed(self, job_id: str):
        await self._ws.broadcast_job_removed(job_id)
