"""Job Record Store - authoritative in-memory collection of job records.

All mutations happen on the event loop thread. Records are immutable and
replaced wholesale, so readers (UI layer, broadcasters) always see either
the old or the new record, never a mix.
"""

import logging
from collections.abc import Callable, Iterator
from enum import Enum

from vidopt.core.errors import DuplicateJobError, JobNotFoundError
from vidopt.models.job import JobRecord


logger = logging.getLogger(__name__)


class StoreEvent(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


StoreListener = Callable[[StoreEvent, JobRecord], None]


class JobStore:
    """Insertion-ordered job records with a change-notification hook."""

    def __init__(self) -> None:
        # dicts keep insertion order; status changes never move a key
        self._jobs: dict[str, JobRecord] = {}
        self._listeners: list[StoreListener] = []

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[JobRecord]:
        return iter(self.list_jobs())

    # --- Reads ---

    def get_job(self, job_id: str) -> JobRecord | None:
        return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self) -> list[JobRecord]:
        """Snapshot of all records in insertion order."""
        return list(self._jobs.values())

    def find_by_source(self, source_path: str, *, active_only: bool = True) -> JobRecord | None:
        """Find a job for ``source_path``; by default only non-terminal ones."""
        for job in self._jobs.values():
            if job.source_path != source_path:
                continue
            if active_only and job.status.is_terminal:
                continue
            return job
        return None

    # --- Mutations ---

    def add_job(self, record: JobRecord) -> JobRecord:
        """Insert a new record.

        Raises:
            DuplicateJobError: a non-terminal job already exists for the same file
            ValueError: the id is already taken
        """
        existing = self.find_by_source(record.source_path)
        if existing is not None:
            logger.info(f"Duplicate add for {record.source_path} (job {existing.id})")
            raise DuplicateJobError(record.source_path, existing.id)
        if record.id in self._jobs:
            raise ValueError(f"Job id {record.id} already in use")

        self._jobs[record.id] = record
        logger.debug(f"Added job {record.id}: {record.display_name}")
        self._notify(StoreEvent.ADDED, record)
        return record

    def update_job(self, job_id: str, **fields) -> JobRecord:
        """Replace the record for ``job_id`` with ``fields`` applied.

        Raises:
            JobNotFoundError: no such job
        """
        current = self.require_job(job_id)
        updated = current.with_changes(**fields)
        self._jobs[job_id] = updated
        self._notify(StoreEvent.UPDATED, updated)
        return updated

    def remove_job(self, job_id: str) -> JobRecord | None:
        """Hard-delete a job. Returns the removed record, or None if absent."""
        record = self._jobs.pop(job_id, None)
        if record is not None:
            logger.debug(f"Removed job {job_id}")
            self._notify(StoreEvent.REMOVED, record)
        return record

    # --- Change notification ---

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: StoreEvent, record: JobRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, record)
            except Exception as e:
                logger.error(f"Store listener failed on {event.value} for job {record.id}: {e}")
