"""
Dead-Letter Recovery Manager
Makes sure no job is left non-terminal once its JobCreated message is dead-lettered
"""
from typing import Optional
import logging
from copilot_eval.models.job import Job, JobErrorDetails, JobStatus
from copilot_eval.models.message import JobFailedPayload, JobMessage, JobMessageType
from copilot_eval.services.queue_service import JobQueuePublisher
from copilot_eval.services.state_service import JobStateService
from copilot_eval.utils.errors import InvalidStateTransitionError
from copilot_eval.utils.monitoring import Telemetry

logger = logging.getLogger(__name__)


class DeadLetterCompensator:
    """
    Drives the job behind a dead-lettered message to Failed

    Pending jobs pass through Running first so the lifecycle table holds.
    A JobFailed message is published for other subscribers.
    """

    def __init__(self, state_service: JobStateService, publisher: JobQueuePublisher,
                 telemetry: Optional[Telemetry] = None):
        self.state_service = state_service
        self.publisher = publisher
        self.telemetry = telemetry or Telemetry()

    async def compensate(self, job_id: str, reason: str, description: str,
                         correlation_id: Optional[str] = None,
                         retry_count: int = 0) -> Optional[Job]:
        """
        Mark job_id Failed after its message was dead-lettered

        Returns:
            The job in its final state, or None if it does not exist
        """
        job = await self.state_service.get_job(job_id)
        if job is None:
            logger.warning(f"Dead-lettered message names unknown job {job_id}, nothing to compensate")
            return None
        if job.status.is_terminal():
            logger.info(f"Job {job_id} already {job.status.value}, no compensation needed")
            return job

        error_details = JobErrorDetails(
            error_code="DEAD_LETTERED",
            error_message=f"{reason}: {description}",
            retry_possible=False,
        )
        try:
            if job.status == JobStatus.PENDING:
                await self.state_service.update_job_status(job_id, JobStatus.RUNNING)
            job = await self.state_service.update_job_status(job_id, JobStatus.FAILED, error_details=error_details)
        except InvalidStateTransitionError as e:
            # Another writer finished the job first
            logger.warning(f"Compensation for job {job_id} lost a race: {e}")
            return await self.state_service.get_job(job_id)

        self.telemetry.increment("jobs.compensated", reason=reason)
        logger.warning(f"Job {job_id} marked failed after its message was dead-lettered ({reason})")

        await self.publisher.publish(JobMessage.create(
            job_id,
            JobMessageType.JOB_FAILED,
            JobFailedPayload(error_details=error_details),
            correlation_id=correlation_id,
            retry_count=retry_count,
        ))
        return job
