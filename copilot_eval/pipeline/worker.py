"""
Job Worker Host
Builds the pipeline from settings and runs the queue consumer until shutdown
"""
import asyncio
import signal
from datetime import datetime
import logging
from typing import Optional
from copilot_eval.config.settings import settings
from copilot_eval.models.job import Job, JobConfiguration, JobPriority, JobType
from copilot_eval.models.message import JobMessage
from copilot_eval.pipeline.processor import JobQueueConsumer
from copilot_eval.pipeline.recovery_manager import DeadLetterCompensator
from copilot_eval.services.blob_service import BlobStore, FileSystemBlobStore
from copilot_eval.services.copilot_service import (
    ChatClient,
    CopilotChatClient,
    GraphSearchClient,
    KnowledgeSearchClient,
)
from copilot_eval.services.db_service import MongoDBService
from copilot_eval.services.evaluation_service import SimilarityScorer
from copilot_eval.services.execution_service import ExecutionEngine
from copilot_eval.services.job_repository import InMemoryJobRepository, JobRepository, MongoJobRepository
from copilot_eval.services.queue_service import (
    InMemoryQueueTransport,
    JobQueuePublisher,
    MongoQueueTransport,
    QueueTransport,
)
from copilot_eval.services.result_service import ResultMaterializer
from copilot_eval.services.state_service import JobStateService
from copilot_eval.utils.cancellation import CancellationSignal
from copilot_eval.utils.monitoring import InMemoryTelemetry

logger = logging.getLogger(__name__)


class JobWorker:
    """
    Long-running worker process

    Backends come from settings unless in_memory forces the in-process
    repository and queue. SIGINT/SIGTERM cancel the shutdown signal, which
    stops the receive loop and any job still executing.
    """

    def __init__(self, in_memory: bool = False):
        self.in_memory = in_memory
        self.telemetry = InMemoryTelemetry()
        self.shutdown = CancellationSignal()
        self.is_running = False

        self.db_service: Optional[MongoDBService] = None
        self.repository: Optional[JobRepository] = None
        self.transport: Optional[QueueTransport] = None
        self.blob_store: Optional[BlobStore] = None
        self.chat_client: Optional[ChatClient] = None
        self.search_client: Optional[KnowledgeSearchClient] = None
        self.publisher: Optional[JobQueuePublisher] = None
        self.consumer: Optional[JobQueueConsumer] = None

    def _setup_signal_handlers(self):
        """Setup graceful shutdown handlers"""
        for sig in [signal.SIGINT, signal.SIGTERM]:
            signal.signal(sig, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown.cancel()

    async def initialize(self):
        """Create backends, collaborators and the consumer"""
        use_mongo_repository = not self.in_memory and settings.JOB_REPOSITORY_BACKEND == "mongodb"
        use_mongo_queue = not self.in_memory and settings.QUEUE_BACKEND == "mongodb"

        if use_mongo_repository or use_mongo_queue:
            self.db_service = MongoDBService()
            await self.db_service.connect()

        self.repository = MongoJobRepository(self.db_service) if use_mongo_repository else InMemoryJobRepository()
        self.transport = MongoQueueTransport(self.db_service) if use_mongo_queue else InMemoryQueueTransport()
        logger.info(f"Job repository: {type(self.repository).__name__}, queue: {type(self.transport).__name__}")

        if settings.BLOB_STORAGE_ROOT:
            self.blob_store = FileSystemBlobStore(settings.BLOB_STORAGE_ROOT)
            logger.info(f"Blob storage rooted at {settings.BLOB_STORAGE_ROOT}")
        else:
            logger.warning("BLOB_STORAGE_ROOT not set, results will not be materialized")

        if settings.COPILOT_API_BASE_URL:
            self.chat_client = CopilotChatClient(settings.COPILOT_API_BASE_URL)
            self.search_client = GraphSearchClient(settings.COPILOT_API_BASE_URL)
        else:
            logger.warning("COPILOT_API_BASE_URL not set, evaluation jobs will fail for lack of a chat client")

        state_service = JobStateService(self.repository)
        self.publisher = JobQueuePublisher(self.transport, self.telemetry)
        engine = ExecutionEngine(
            state_service=state_service,
            materializer=ResultMaterializer(self.blob_store, telemetry=self.telemetry),
            scorer=SimilarityScorer(self.chat_client, settings.COPILOT_ACCESS_TOKEN),
            chat_client=self.chat_client,
            search_client=self.search_client,
            blob_store=self.blob_store,
            auth_token=settings.COPILOT_ACCESS_TOKEN,
            telemetry=self.telemetry,
        )
        self.consumer = JobQueueConsumer(
            transport=self.transport,
            repository=self.repository,
            engine=engine,
            publisher=self.publisher,
            compensator=DeadLetterCompensator(state_service, self.publisher, self.telemetry),
            telemetry=self.telemetry,
        )

    async def submit_job(self, job: Job, priority: JobPriority = JobPriority.NORMAL) -> JobMessage:
        """Store a new Pending job and enqueue its JobCreated message"""
        await self.repository.create(job)
        return await self.publisher.publish_job_created(job.id, job, priority)

    @staticmethod
    def demo_job(data_source: Optional[str] = None) -> Job:
        """Bulk evaluation over data_source, or the built-in sample rows"""
        return Job(
            name=f"Demo bulk evaluation {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            type=JobType.BULK_EVALUATION,
            configuration=JobConfiguration(data_source=data_source),
        )

    async def cleanup(self):
        """Close collaborators and connections"""
        for closeable in (self.chat_client, self.search_client, self.transport):
            if closeable is None:
                continue
            try:
                await closeable.close()
            except Exception as e:
                logger.warning(f"Error closing {type(closeable).__name__}: {e}")
        if self.db_service is not None:
            await self.db_service.disconnect()

    def start(self, demo: bool = False, data_source: Optional[str] = None):
        """Start the worker and block until shutdown"""
        self._setup_signal_handlers()
        logger.info(f"Job worker starting - {settings!r}")
        try:
            asyncio.run(self._run(demo, data_source))
        except KeyboardInterrupt:
            logger.info("Worker stopped by keyboard interrupt")
        except Exception as e:
            logger.critical(f"Worker crashed: {e}", exc_info=True)
            raise

    async def _run(self, demo: bool, data_source: Optional[str]):
        self.is_running = True
        logger.info("=" * 60)
        logger.info("Evaluation Job Worker Started")
        logger.info("=" * 60)
        try:
            await self.initialize()
            if demo:
                message = await self.submit_job(self.demo_job(data_source))
                logger.info(f"Submitted demo job {message.job_id}")
            await self.consumer.run(self.shutdown)
        finally:
            await self.cleanup()
            self.telemetry.log_metrics_summary()
            self.is_running = False
            logger.info("Evaluation Job Worker stopped")
