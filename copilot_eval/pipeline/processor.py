"""
Job Queue Processor
Receives lifecycle messages, drives job execution and settles each delivery
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional
import logging
from copilot_eval.config.settings import settings
from copilot_eval.models.job import JobStatus
from copilot_eval.models.message import (
    JobCompletedPayload,
    JobFailedPayload,
    JobMessage,
    JobMessageType,
    JobStartedPayload,
)
from copilot_eval.models.queue import HandlerResult, MessageOutcome, ReceivedMessage
from copilot_eval.pipeline.recovery_manager import DeadLetterCompensator
from copilot_eval.services.execution_service import ExecutionEngine
from copilot_eval.services.job_repository import JobRepository
from copilot_eval.services.queue_service import JobQueuePublisher, QueueTransport
from copilot_eval.utils.cancellation import CancellationSignal
from copilot_eval.utils.errors import (
    CancellationRequested,
    ConfigurationError,
    PoisonMessageError,
    error_kind,
    is_retryable,
)
from copilot_eval.utils.helpers import new_request_id
from copilot_eval.utils.monitoring import Telemetry

logger = logging.getLogger(__name__)

DESERIALIZATION_FAILED = "DESERIALIZATION_FAILED"

MessageHandler = Callable[[JobMessage, CancellationSignal, str], Awaitable[None]]


class JobQueueConsumer:
    """
    Long-running queue consumer

    Up to max_concurrent_calls deliveries are handled at once. Each delivery
    is completed, abandoned for redelivery, or dead-lettered once
    max_delivery_count attempts are used up or the error cannot be retried.
    Only JobCreated triggers work; every other message type is acknowledged.
    """

    def __init__(self,
                 transport: QueueTransport,
                 repository: JobRepository,
                 engine: ExecutionEngine,
                 publisher: JobQueuePublisher,
                 compensator: Optional[DeadLetterCompensator] = None,
                 telemetry: Optional[Telemetry] = None,
                 max_concurrent_calls: Optional[int] = None,
                 prefetch_count: Optional[int] = None,
                 max_delivery_count: Optional[int] = None,
                 lock_duration_seconds: Optional[float] = None,
                 max_auto_lock_renewal_seconds: Optional[float] = None,
                 receive_wait_seconds: Optional[float] = None,
                 error_backoff_seconds: float = 5.0):
        self.transport = transport
        self.repository = repository
        self.engine = engine
        self.publisher = publisher
        self.compensator = compensator
        self.telemetry = telemetry or Telemetry()
        self.max_concurrent_calls = max_concurrent_calls or settings.QUEUE_MAX_CONCURRENT_CALLS
        self.prefetch_count = prefetch_count or settings.QUEUE_PREFETCH_COUNT
        self.max_delivery_count = max_delivery_count or settings.QUEUE_MAX_DELIVERY_COUNT
        self.lock_duration_seconds = lock_duration_seconds or settings.QUEUE_LOCK_DURATION_SECONDS
        self.max_auto_lock_renewal_seconds = (
            max_auto_lock_renewal_seconds or settings.QUEUE_MAX_AUTO_LOCK_RENEWAL_SECONDS
        )
        self.receive_wait_seconds = (
            settings.QUEUE_RECEIVE_WAIT_SECONDS if receive_wait_seconds is None else receive_wait_seconds
        )
        self.error_backoff_seconds = error_backoff_seconds
        self.is_running = False
        self._semaphore = asyncio.Semaphore(self.max_concurrent_calls)

        self._handlers: Dict[JobMessageType, MessageHandler] = {
            JobMessageType.JOB_CREATED: self.process_job_created,
            JobMessageType.JOB_STARTED: self._acknowledge,
            JobMessageType.JOB_PROGRESS: self._acknowledge,
            JobMessageType.JOB_COMPLETED: self._acknowledge,
            JobMessageType.JOB_FAILED: self._acknowledge,
            JobMessageType.JOB_CANCELLED: self._acknowledge,
        }
        missing = [t.value for t in JobMessageType if t not in self._handlers]
        if missing:
            raise ConfigurationError(f"No handler for message types: {', '.join(missing)}")

    # Main loop

    async def run(self, shutdown: CancellationSignal) -> None:
        """
        Receive and handle messages until shutdown is cancelled
        Transport errors are logged and retried after a back-off
        """
        self.is_running = True
        logger.info(f"Queue consumer started - max concurrent: {self.max_concurrent_calls}, "
                    f"prefetch: {self.prefetch_count}, max deliveries: {self.max_delivery_count}")
        try:
            while not shutdown.is_cancelled:
                try:
                    await self.run_once(shutdown)
                except Exception as e:
                    logger.error(f"Error receiving messages, retrying in {self.error_backoff_seconds}s: {e}",
                                 exc_info=True)
                    self.telemetry.increment("transport.errors")
                    await shutdown.wait(self.error_backoff_seconds)
        finally:
            self.is_running = False
            logger.info("Queue consumer stopped")

    async def run_once(self, shutdown: Optional[CancellationSignal] = None) -> List[HandlerResult]:
        """One receive round: handle and settle every message received"""
        shutdown = shutdown or CancellationSignal()
        messages = await self.transport.receive(self.prefetch_count, self.receive_wait_seconds)
        if not messages:
            return []
        return list(await asyncio.gather(*(self._process_delivery(m, shutdown) for m in messages)))

    async def _process_delivery(self, message: ReceivedMessage, shutdown: CancellationSignal) -> HandlerResult:
        renewal = asyncio.create_task(self._renew_lock_loop(message))
        try:
            async with self._semaphore:
                cancel_signal = shutdown.linked(self.max_auto_lock_renewal_seconds)
                result = await self.handle_message(message, cancel_signal)
        except asyncio.CancelledError:
            await asyncio.shield(self._settle(message, HandlerResult.abandon()))
            raise
        finally:
            renewal.cancel()
        await self._settle(message, result)
        return result

    async def _renew_lock_loop(self, message: ReceivedMessage) -> None:
        deadline = time.monotonic() + self.max_auto_lock_renewal_seconds
        interval = max(self.lock_duration_seconds / 2, 0.01)
        while True:
            await asyncio.sleep(interval)
            if time.monotonic() >= deadline:
                logger.warning(f"Lock auto-renewal budget spent for message {message.message_id}")
                return
            try:
                await self.transport.renew_lock(message)
            except Exception as e:
                logger.warning(f"Could not renew lock for message {message.message_id}: {e}")
                return

    # Per-message handling

    async def handle_message(self, message: ReceivedMessage,
                             cancel_signal: Optional[CancellationSignal] = None) -> HandlerResult:
        """
        Decide how one delivery is settled

        Returns:
            complete on success, abandon on cancellation or a retryable error
            with deliveries left, dead_letter otherwise
        """
        request_id = new_request_id()
        cancel_signal = cancel_signal or CancellationSignal()
        self.telemetry.increment("messages.received")
        logger.info(f"[Processor {request_id}] Received message: {message.message_id} "
                    f"(delivery {message.delivery_count})")

        try:
            job_message = JobMessage.from_wire(message.body)
        except PoisonMessageError as e:
            logger.error(f"[Processor {request_id}] Failed to deserialize job message {message.message_id}: {e}")
            return HandlerResult.dead_letter(
                DESERIALIZATION_FAILED, "Unable to deserialize JobMessage from message body"
            )

        logger.info(f"[Processor {request_id}] Processing job message - JobId: {job_message.job_id}, "
                    f"Type: {job_message.message_type.value}")
        try:
            with self.telemetry.span("message.process", message_type=job_message.message_type.value):
                await self._handlers[job_message.message_type](job_message, cancel_signal, request_id)
            logger.info(f"[Processor {request_id}] Message processed successfully: {message.message_id}")
            return HandlerResult.complete()

        except CancellationRequested:
            logger.warning(f"[Processor {request_id}] Message processing cancelled: {message.message_id}")
            return HandlerResult.abandon()

        except Exception as e:
            logger.error(f"[Processor {request_id}] Error processing message {message.message_id}: {e}",
                         exc_info=True)
            if message.delivery_count >= self.max_delivery_count or not is_retryable(e):
                logger.error(f"[Processor {request_id}] Moving message to dead letter queue after "
                             f"{message.delivery_count} attempts: {message.message_id}")
                return HandlerResult.dead_letter(error_kind(e), str(e))

            logger.warning(f"[Processor {request_id}] Abandoning message for retry "
                           f"(attempt {message.delivery_count}/{self.max_delivery_count}): {message.message_id}")
            return HandlerResult.abandon()

    async def _acknowledge(self, message: JobMessage, cancel_signal: CancellationSignal, request_id: str) -> None:
        logger.info(f"[Processor {request_id}] Message type {message.message_type.value} is informational, "
                    f"acknowledging")

    async def process_job_created(self, message: JobMessage,
                                  cancel_signal: Optional[CancellationSignal] = None,
                                  request_id: Optional[str] = None) -> None:
        """
        Execute the job named by a JobCreated message

        Only Pending jobs run, so a redelivered message never repeats work.
        Publish and repository errors propagate to handle_message.
        """
        request_id = request_id or new_request_id()
        logger.info(f"[Processor {request_id}] Processing JobCreated message for job: {message.job_id}")

        job = await self.repository.get_by_id(message.job_id)
        if job is None:
            logger.error(f"[Processor {request_id}] Job not found in database: {message.job_id}")
            return

        logger.info(f"[Processor {request_id}] Job details loaded - Name: {job.name}, "
                    f"Type: {job.type.value}, Status: {job.status.value}")
        if job.status != JobStatus.PENDING:
            logger.warning(f"[Processor {request_id}] Job {job.id} is not in Pending status "
                           f"(current: {job.status.value}), skipping")
            return

        self.telemetry.increment("jobs.started", job_type=job.type.value)
        await self.publisher.publish(JobMessage.create(
            job.id,
            JobMessageType.JOB_STARTED,
            JobStartedPayload(id=job.id, name=job.name, type=job.type),
            correlation_id=message.correlation_id,
        ))
        logger.info(f"[Processor {request_id}] Sent JobStarted message for job: {job.id}")

        result = await self.engine.execute_job(job, cancel_signal)

        if result.success:
            reference = result.blob_reference
            if reference is not None:
                logger.info(f"[Processor {request_id}] Job artifacts stored at: {reference.access_url}")
            await self.publisher.publish(JobMessage.create(
                job.id,
                JobMessageType.JOB_COMPLETED,
                JobCompletedPayload(
                    results_summary=result.results.summary if result.results else None,
                    results_blob_ref=reference,
                ),
                correlation_id=message.correlation_id,
                blob_references=[reference] if reference is not None else None,
            ))
            logger.info(f"[Processor {request_id}] Job {job.id} completed")
        else:
            await self.publisher.publish(JobMessage.create(
                job.id,
                JobMessageType.JOB_FAILED,
                JobFailedPayload(error_details=result.error_details),
                correlation_id=message.correlation_id,
                retry_count=message.retry_count + 1,
            ))
            logger.warning(f"[Processor {request_id}] Job {job.id} failed: "
                           f"{result.error_details.error_message if result.error_details else 'unknown error'}")

    # Settlement

    async def _settle(self, message: ReceivedMessage, result: HandlerResult) -> None:
        try:
            if result.outcome == MessageOutcome.COMPLETE:
                await self.transport.complete(message)
                self.telemetry.increment("messages.completed")
            elif result.outcome == MessageOutcome.ABANDON:
                await self.transport.abandon(message)
                self.telemetry.increment("messages.abandoned")
            else:
                await self.transport.dead_letter(message, result.reason or "", result.description or "")
                self.telemetry.increment("messages.dead_lettered", reason=result.reason)
        except Exception as e:
            # Lock lost or transport down; the message will be redelivered
            logger.error(f"Failed to {result.outcome.value} message {message.message_id}: {e}")
            return

        if result.outcome == MessageOutcome.DEAD_LETTER:
            await self._compensate(message, result)

    async def _compensate(self, message: ReceivedMessage, result: HandlerResult) -> None:
        if self.compensator is None:
            return
        job_id, correlation_id, retry_count = self._dead_lettered_job(message)
        if job_id is None:
            return
        try:
            await self.compensator.compensate(
                job_id, result.reason or "", result.description or "",
                correlation_id=correlation_id, retry_count=retry_count,
            )
        except Exception as e:
            logger.error(f"Compensation for dead-lettered job {job_id} failed: {e}", exc_info=True)

    @staticmethod
    def _dead_lettered_job(message: ReceivedMessage):
        """(job_id, correlation_id, retry_count) when message is a JobCreated, else Nones"""
        try:
            job_message = JobMessage.from_wire(message.body)
        except PoisonMessageError:
            properties = message.application_properties
            if properties.get("message_type") == JobMessageType.JOB_CREATED.value and properties.get("job_id"):
                return properties["job_id"], properties.get("correlation_id") or None, 0
            return None, None, 0
        if job_message.message_type != JobMessageType.JOB_CREATED:
            return None, None, 0
        return job_message.job_id, job_message.correlation_id, job_message.retry_count + 1
