"""Progress Router - merges encoder progress events into job records."""

import logging

from vidopt.models.job import ConversionProgress, JobStatus, ProgressEvent
from vidopt.services.job_store import JobStore

logger = logging.getLogger(__name__)


class ProgressRouter:
    """Routes asynchronous progress events to the converting job.

    Events for unknown jobs (already removed) and for jobs that are no longer
    converting (late events after cancellation) are dropped. Out-of-order
    events are not rejected: the last write wins.
    """

    def __init__(self, store: JobStore):
        self._store = store
        self.dropped_events = 0

    def on_progress(self, job_id: str, event: ProgressEvent) -> bool:
        """Merge ``event`` into the job's progress.

        Returns:
            True if the event was applied, False if it was dropped
        """
        job = self._store.get_job(job_id)
        if job is None:
            self.dropped_events += 1
            logger.debug(f"Dropping progress for unknown job {job_id}")
            return False

        if job.status != JobStatus.CONVERTING:
            self.dropped_events += 1
            logger.debug(f"Dropping late progress for job {job_id} ({job.status.value})")
            return False

        current = job.progress or ConversionProgress()
        merged = current.model_copy(update=_event_fields(event))
        self._store.update_job(job_id, progress=merged)
        return True

    def __call__(self, event: ProgressEvent) -> bool:
        return self.on_progress(event.job_id, event)


def _event_fields(event: ProgressEvent) -> dict:
    """Map a progress event onto ConversionProgress fields, skipping unknowns."""
    fields = {
        "percent": event.percent,
        "speed_factor": event.speed,
        "frames_or_time": event.frames_or_time,
        "estimated_time_remaining": event.estimated_time_remaining,
        "fps": event.fps,
        "bitrate": event.bitrate,
    }
    return {key: value for key, value in fields.items() if value is not None}
