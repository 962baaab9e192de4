"""Job state machine for managing job status transitions.

Centralizes transition validation and the field bookkeeping that has to
happen on every transition (progress, error, result).
"""

import logging

from vidopt.core.errors import InvalidTransitionError
from vidopt.models.job import ConversionProgress, JobRecord, JobStatus
from vidopt.services.job_store import JobStore

logger = logging.getLogger(__name__)


class JobStateMachine:
    """Validates and applies status transitions through the job store."""

    VALID_TRANSITIONS = {
        JobStatus.IDLE: {JobStatus.QUEUED},
        JobStatus.QUEUED: {JobStatus.CONVERTING, JobStatus.IDLE},
        JobStatus.CONVERTING: {
            JobStatus.COMPLETED,
            JobStatus.ERROR,
            JobStatus.CANCELLED,
        },
        JobStatus.COMPLETED: set(),  # Terminal state
        JobStatus.ERROR: set(),  # Terminal state
        JobStatus.CANCELLED: {JobStatus.QUEUED, JobStatus.IDLE},  # Reset only
    }

    def __init__(self, store: JobStore):
        self._store = store

    def can_transition(self, from_status: JobStatus, to_status: JobStatus) -> bool:
        """Validate if a status transition is allowed.

        Unlike progress updates, a transition must change the status.
        """
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def transition(self, job_id: str, to_status: JobStatus, **fields) -> JobRecord:
        """Perform a validated transition and apply the invariant bookkeeping.

        Args:
            job_id: Job to transition
            to_status: Target status
            **fields: Extra record fields to write in the same update

        Returns:
            The updated record

        Raises:
            JobNotFoundError: no such job
            InvalidTransitionError: transition not in VALID_TRANSITIONS
        """
        job = self._store.require_job(job_id)
        from_status = job.status

        if not self.can_transition(from_status, to_status):
            logger.warning(
                f"Invalid status transition for job {job_id}: "
                f"{from_status.value} -> {to_status.value}"
            )
            raise InvalidTransitionError(job_id, from_status, to_status)

        logger.info(f"Job {job_id} status transition: {from_status.value} -> {to_status.value}")

        # progress is present iff converting
        if to_status == JobStatus.CONVERTING:
            fields.setdefault("progress", ConversionProgress())
        else:
            fields["progress"] = None

        if to_status != JobStatus.ERROR:
            fields.setdefault("error", None)
            fields.setdefault("error_detail", None)

        if from_status == JobStatus.CANCELLED:
            fields["result"] = None
            fields["error"] = None
            fields["error_detail"] = None

        return self._store.update_job(job_id, status=to_status, **fields)

    def transition_to_error(
        self, job_id: str, message: str, detail: str | None = None, **fields
    ) -> JobRecord:
        """Convenience method to transition to ERROR with a user-facing message."""
        return self.transition(
            job_id, JobStatus.ERROR, error=message, error_detail=detail, **fields
        )

    def transition_to_completed(self, job_id: str, **fields) -> JobRecord:
        return self.transition(job_id, JobStatus.COMPLETED, **fields)

    def transition_to_cancelled(self, job_id: str, **fields) -> JobRecord:
        return self.transition(job_id, JobStatus.CANCELLED, **fields)
