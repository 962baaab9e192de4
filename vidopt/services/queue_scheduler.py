"""Queue Scheduler - one conversion at a time, FIFO, self-draining.

The scheduler owns the active-job pointer. Promotion (``schedule_next``) and
finalization are synchronous, so a job leaving ``converting`` and the next
queued job entering it happen in the same event-loop step; no other
coroutine can observe or mutate the queue in between.
"""

import asyncio
import logging
from collections.abc import Coroutine
from pathlib import Path

from vidopt.config import settings
from vidopt.core.encoder import CANCELLED_MESSAGE, Encoder
from vidopt.core.errors import EncoderError, is_timeout_error, normalize_error_message
from vidopt.core.naming import build_output_path
from vidopt.models.job import ConversionResult, EncodeRequest, JobRecord, JobStatus
from vidopt.services.job_state_machine import JobStateMachine
from vidopt.services.job_store import JobStore
from vidopt.services.progress_router import ProgressRouter

logger = logging.getLogger(__name__)


class QueueScheduler:
    """Promotes queued jobs to the encoder and finalizes them."""

    def __init__(
        self,
        store: JobStore,
        encoder: Encoder,
        state_machine: JobStateMachine | None = None,
        progress_router: ProgressRouter | None = None,
        error_max_length: int | None = None,
    ) -> None:
        self._store = store
        self._encoder = encoder
        self._state_machine = state_machine or JobStateMachine(store)
        self._progress_router = progress_router or ProgressRouter(store)
        self._error_max_length = error_max_length or settings.error_message_max_length

        self._active_job_id: str | None = None
        # Incremented on every promotion; results from older runs are stale
        self._run_id = 0
        self._tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._cancelling: set[str] = set()
        # Results that arrived while a cancel request was in flight
        self._deferred: dict[str, tuple[ConversionResult, int]] = {}
        self._closed = False

        # Preference-driven; refreshed by the orchestrator
        self.default_output_dir: str | None = None

    @property
    def active_job_id(self) -> str | None:
        return self._active_job_id

    # --- Queue operations ---

    def enqueue(self, job_id: str) -> JobRecord:
        """Mark an idle job eligible for conversion, then try to schedule.

        Already queued or converting jobs are left alone.

        Raises:
            JobNotFoundError: no such job
            InvalidTransitionError: job is terminal (use reset for cancelled jobs)
        """
        job = self._store.require_job(job_id)
        if job.status in (JobStatus.QUEUED, JobStatus.CONVERTING):
            return job

        self._state_machine.transition(job_id, JobStatus.QUEUED)
        self.schedule_next()
        return self._store.require_job(job_id)

    def start_all(self) -> int:
        """Queue every idle job, then schedule once.

        Returns:
            Number of jobs that were queued
        """
        idle = [job.id for job in self._store.list_jobs() if job.status == JobStatus.IDLE]
        for job_id in idle:
            self._state_machine.transition(job_id, JobStatus.QUEUED)

        logger.info(f"Queued {len(idle)} idle job(s)")
        self.schedule_next()
        return len(idle)

    def dequeue(self, job_id: str) -> JobRecord:
        """Take a queued job out of automatic promotion (queued -> idle)."""
        return self._state_machine.transition(job_id, JobStatus.IDLE)

    def schedule_next(self) -> str | None:
        """Promote the first queued job if nothing is converting.

        Returns:
            The promoted job id, or None
        """
        if self._closed or self._active_job_id is not None:
            return None

        next_job = next(
            (job for job in self._store.list_jobs() if job.status == JobStatus.QUEUED),
            None,
        )
        if next_job is None:
            return None

        job_id = next_job.id
        # Frozen here: settings edits after promotion never reach this encode
        request = self._build_request(next_job)

        self._state_machine.transition(job_id, JobStatus.CONVERTING)
        self._active_job_id = job_id
        self._run_id += 1

        task = asyncio.get_running_loop().create_task(
            self._run_job(request, self._run_id), name=f"convert-{job_id}"
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_task_done(t, jid))

        logger.info(f"Promoted job {job_id} ({next_job.display_name}) -> {request.output_path}")
        return job_id

    def _build_request(self, job: JobRecord) -> EncodeRequest:
        output_path = build_output_path(
            job.source_path,
            job.conversion_settings,
            fallback_name=Path(job.source_path).stem,
            default_output_dir=self.default_output_dir,
        )
        return EncodeRequest(
            job_id=job.id,
            input_path=job.source_path,
            output_path=output_path,
            settings=job.conversion_settings,
            duration_seconds=job.media.duration_seconds if job.media else 0.0,
        )

    # --- Encoder boundary ---

    async def _run_job(self, request: EncodeRequest, run_id: int) -> None:
        job_id = request.job_id
        try:
            result = await self._encoder.start_conversion(request, self._progress_router)
        except asyncio.CancelledError:
            logger.info(f"Conversion task for job {job_id} cancelled")
            raise
        except EncoderError as e:
            logger.error(f"Encoder failed for job {job_id}: {e}")
            result = ConversionResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected encoder failure for job {job_id}: {e}", exc_info=True)
            result = ConversionResult(success=False, error=str(e) or type(e).__name__)

        self._finalize(job_id, result, run_id)

    def _finalize(self, job_id: str, result: ConversionResult, run_id: int) -> None:
        """Record the encoder outcome and promote the next job, in one step."""
        if job_id in self._cancelling:
            # cancel() decides the outcome once the encoder answers
            self._deferred[job_id] = (result, run_id)
            return

        if self._active_job_id != job_id or self._run_id != run_id:
            logger.debug(f"Ignoring stale result for job {job_id}")
            return

        self._active_job_id = None
        job = self._store.get_job(job_id)

        if job is not None and job.status == JobStatus.CONVERTING:
            if result.success:
                self._state_machine.transition_to_completed(job_id, result=result)
                logger.info(f"Job {job_id} completed in {result.duration:.1f}s")
            else:
                message = normalize_error_message(result.error, self._error_max_length)
                logger.error(f"Job {job_id} failed: {result.error}")
                self._state_machine.transition_to_error(
                    job_id, message, detail=result.error, result=result
                )

        self.schedule_next()

        if not result.success and is_timeout_error(result.error):
            logger.warning(f"Job {job_id} timed out; cleaning up encoder processes")
            self._spawn(self.cleanup(), name="encoder-cleanup")

    def _on_task_done(self, task: asyncio.Task, job_id: str) -> None:
        """Callback for background tasks to log any unhandled exceptions."""
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            logger.info(f"Job {job_id} task was cancelled")
        elif exc := task.exception():
            logger.error(f"Job {job_id} task failed with exception: {exc}", exc_info=exc)

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # --- Cancellation / reset / removal ---

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        A queued job simply returns to idle. A converting job is marked
        cancelled only after the encoder acknowledges; the next queued job
        is promoted in the same step.

        Returns:
            True if the job was cancelled (or dequeued)
        """
        job = self._store.require_job(job_id)

        if job.status == JobStatus.QUEUED:
            self.dequeue(job_id)
            return True
        if job.status != JobStatus.CONVERTING or job_id in self._cancelling:
            return False

        self._cancelling.add(job_id)
        acknowledged = False
        try:
            acknowledged = await self._request_cancel(job_id)
        finally:
            self._cancelling.discard(job_id)
            deferred = self._deferred.pop(job_id, None)
            # Unacknowledged: the run's own result stands
            if not acknowledged and deferred is not None:
                self._finalize(job_id, *deferred)

        if not acknowledged:
            logger.info(f"Cancel of job {job_id} not acknowledged; job already finished")
            return False

        current = self._store.get_job(job_id)
        if current is not None and current.status == JobStatus.CONVERTING:
            self._state_machine.transition_to_cancelled(
                job_id, result=ConversionResult(success=False, error=CANCELLED_MESSAGE)
            )
        if self._active_job_id == job_id:
            self._active_job_id = None

        logger.info(f"Job {job_id} cancelled")
        self.schedule_next()
        return True

    async def _request_cancel(self, job_id: str) -> bool:
        """Ask the encoder to stop, falling back to cancelling the task.

        An encoder error is logged and treated like a refusal.
        """
        try:
            if await self._encoder.cancel_conversion(job_id):
                return True
        except Exception as e:
            logger.error(f"Encoder failed to cancel job {job_id}: {e}", exc_info=True)
        return await self._cancel_task(job_id)

    async def _cancel_task(self, job_id: str) -> bool:
        """Cancel the conversion task itself (no process yet, or encoder refused)."""
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        return task.cancelled()

    def reset(self, job_id: str, requeue: bool = False) -> JobRecord:
        """Reset a cancelled job to idle (or queued). No-op for any other status."""
        job = self._store.require_job(job_id)
        if job.status != JobStatus.CANCELLED:
            logger.debug(f"Reset ignored for job {job_id} ({job.status.value})")
            return job

        target = JobStatus.QUEUED if requeue else JobStatus.IDLE
        updated = self._state_machine.transition(job_id, target)
        if requeue:
            self.schedule_next()
            updated = self._store.require_job(job_id)
        return updated

    async def remove(self, job_id: str) -> bool:
        """Hard-delete a job, cancelling its conversion first if needed."""
        job = self._store.get_job(job_id)
        if job is None:
            return False

        if job.status == JobStatus.CONVERTING:
            await self.cancel(job_id)

        removed = self._store.remove_job(job_id)
        if self._active_job_id == job_id:
            self._active_job_id = None
            self.schedule_next()
        return removed is not None

    # --- Housekeeping ---

    def start(self) -> None:
        """Accept promotions again after a shutdown and resume the queue."""
        self._closed = False
        self.schedule_next()

    async def cleanup(self) -> int:
        """Stop orphaned encoder processes. Never raises."""
        try:
            killed = await self._encoder.cleanup_orphans()
        except Exception as e:
            logger.warning(f"Encoder orphan cleanup failed: {e}")
            return 0
        return killed or 0

    async def shutdown(self) -> None:
        """Stop promoting, cancel the active conversion and wait for tasks."""
        self._closed = True
        if self._active_job_id is not None:
            await self.cancel(self._active_job_id)

        pending = [*self._tasks.values(), *self._background]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Queue scheduler stopped")
