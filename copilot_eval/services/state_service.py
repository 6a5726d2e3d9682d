"""
Job State Management Service
Single writer of job status; every change goes through the lifecycle table
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging
from copilot_eval.models.job import (
    BlobReference,
    Job,
    JobErrorDetails,
    JobProgress,
    JobStatus,
    ResultsSummary,
)
from copilot_eval.services.job_repository import JobRepository
from copilot_eval.utils.errors import InvalidStateTransitionError, JobStoreUnavailableError

logger = logging.getLogger(__name__)


class JobStateService:
    """
    Applies status transitions to stored jobs
    Reads the record, applies the change and writes the full record back

    Lifecycle violations surface as InvalidStateTransitionError; any other
    repository failure surfaces as JobStoreUnavailableError.
    """

    def __init__(self, repository: JobRepository):
        self.repository = repository

    @asynccontextmanager
    async def _store_access(self, action: str, job_id: str):
        try:
            yield
        except (InvalidStateTransitionError, JobStoreUnavailableError, KeyError):
            raise
        except Exception as e:
            logger.error(f"Job store failed to {action} job {job_id}: {e}")
            raise JobStoreUnavailableError(f"Failed to {action} job {job_id}: {e}") from e

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._store_access("read", job_id):
            return await self.repository.get_by_id(job_id)

    async def update_job_status(self,
                                job_id: str,
                                status: JobStatus,
                                progress: Optional[JobProgress] = None,
                                error_details: Optional[JobErrorDetails] = None,
                                results_summary: Optional[ResultsSummary] = None,
                                results_blob_reference: Optional[BlobReference] = None) -> Optional[Job]:
        """
        Move a job to status

        Args:
            job_id: Job to update
            status: Target status
            progress: New progress, if it changed
            error_details: Recorded on failure
            results_summary: Recorded on completion
            results_blob_reference: Pointer to materialized results

        Returns:
            The updated job, or None when the job no longer exists

        Raises:
            InvalidStateTransitionError: if the transition is not allowed
            JobStoreUnavailableError: if the repository could not be read or written
        """
        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found, cannot set status {status.value}")
            return None

        changes = {}
        if progress is not None:
            changes["progress"] = progress
        if error_details is not None:
            changes["error_details"] = error_details
        if results_summary is not None:
            changes["results_summary"] = results_summary
        if results_blob_reference is not None:
            changes["results_blob_reference"] = results_blob_reference

        async with self._store_access("update", job_id):
            updated = await self.repository.update(job.with_status(status, **changes))
        if updated.status != job.status:
            logger.info(f"Job {job_id}: {job.status.value} -> {updated.status.value}")
        return updated

    async def update_progress(self, job_id: str, progress: JobProgress) -> Optional[Job]:
        """Running -> Running with new progress"""
        return await self.update_job_status(job_id, JobStatus.RUNNING, progress=progress)
