"""
Shared fixtures: in-memory backends and scripted collaborators
"""
import asyncio
import os

os.environ.setdefault("SKIP_CONFIG_VALIDATION", "true")

import pytest

from copilot_eval.models.copilot import ChatConversation, ChatMessage, SearchHit
from copilot_eval.models.job import (
    AgentConfiguration,
    EvaluationCriteria,
    Job,
    JobConfiguration,
    JobType,
)
from copilot_eval.pipeline.processor import JobQueueConsumer
from copilot_eval.pipeline.recovery_manager import DeadLetterCompensator
from copilot_eval.services.blob_service import InMemoryBlobStore
from copilot_eval.services.copilot_service import ChatClient, KnowledgeSearchClient
from copilot_eval.services.evaluation_service import SimilarityScorer
from copilot_eval.services.execution_service import ExecutionEngine
from copilot_eval.services.job_repository import InMemoryJobRepository, JobRepository
from copilot_eval.services.queue_service import InMemoryQueueTransport, JobQueuePublisher
from copilot_eval.services.result_service import ResultMaterializer
from copilot_eval.services.state_service import JobStateService
from copilot_eval.utils.errors import CollaboratorError
from copilot_eval.utils.monitoring import InMemoryTelemetry

JUDGE_MARKER = "You are an expert evaluator"
THREE_ROW_CSV = (
    "prompt,expected_response\n"
    "What is the capital of France?,Paris\n"
    "What is 2 + 2?,4\n"
    "Name a primary color,Red\n"
)


class FakeChatClient(ChatClient):
    """
    Scripted chat collaborator

    Judge prompts get judge_reply; every other prompt gets answer. Prompts
    containing any fail_on substring raise CollaboratorError.
    """

    def __init__(self, answer="Paris", judge_reply="Score: 0.9\nReasoning: Same meaning\nDifferences: None",
                 fail_on=(), error=None, delay=0.0):
        self.answer = answer
        self.judge_reply = judge_reply
        self.fail_on = tuple(fail_on)
        self.error = error
        self.delay = delay
        self.requests = []
        self.conversations = 0
        self.closed = False

    @property
    def prompts(self):
        return [text for text in self.requests if JUDGE_MARKER not in text]

    async def create_conversation(self, auth_token):
        self.conversations += 1
        return f"conversation-{self.conversations}"

    async def chat(self, auth_token, conversation_id, request):
        self.requests.append(request.text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if any(marker in request.text for marker in self.fail_on):
            raise CollaboratorError("chat collaborator returned 500", status=500)
        reply = self.judge_reply if JUDGE_MARKER in request.text else self.answer
        return ChatConversation(
            id=conversation_id,
            messages=[ChatMessage(text=request.text), ChatMessage(text=reply)],
        )

    async def close(self):
        self.closed = True


class FakeSearchClient(KnowledgeSearchClient):
    def __init__(self, hits=None, error=None):
        self.hits = hits if hits is not None else [
            SearchHit(hit_id="1", rank=1, summary="Paris is the capital and largest city of France."),
        ]
        self.error = error
        self.queries = []

    async def search(self, auth_token, source_id, query, max_results=3):
        self.queries.append((source_id, query, max_results))
        if self.error is not None:
            raise self.error
        return self.hits[:max_results]


class FlakyRepository(JobRepository):
    """
    Delegates to another repository, raising error on the first get_failures
    reads and on update_failures writes after updates_before_failure good ones
    """

    def __init__(self, inner, error, get_failures=0, update_failures=0, updates_before_failure=0):
        self.inner = inner
        self.error = error
        self.get_failures = get_failures
        self.update_failures = update_failures
        self.updates_before_failure = updates_before_failure

    async def create(self, job):
        return await self.inner.create(job)

    async def get_by_id(self, job_id):
        if self.get_failures > 0:
            self.get_failures -= 1
            raise self.error
        return await self.inner.get_by_id(job_id)

    async def update(self, job):
        if self.updates_before_failure > 0:
            self.updates_before_failure -= 1
        elif self.update_failures > 0:
            self.update_failures -= 1
            raise self.error
        return await self.inner.update(job)

    async def list_jobs(self, page=1, page_size=20):
        return await self.inner.list_jobs(page, page_size)


@pytest.fixture
def telemetry():
    return InMemoryTelemetry()


@pytest.fixture
def repository():
    return InMemoryJobRepository()


@pytest.fixture
def state_service(repository):
    return JobStateService(repository)


@pytest.fixture
def transport():
    return InMemoryQueueTransport(
        lock_duration_seconds=30,
        max_delivery_count=10,
        duplicate_detection_window_seconds=600,
    )


@pytest.fixture
def publisher(transport, telemetry):
    return JobQueuePublisher(transport, telemetry)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def chat_client():
    return FakeChatClient()


@pytest.fixture
def search_client():
    return FakeSearchClient()


@pytest.fixture
def make_job():
    def _make(job_type=JobType.BULK_EVALUATION, data_source=None, prompt_template=None,
              similarity_threshold=None, use_semantic_scoring=True, additional_instructions=None,
              knowledge_source=None, **fields):
        return Job(
            name=fields.pop("name", f"{job_type.value} test job"),
            type=job_type,
            configuration=JobConfiguration(
                data_source=data_source,
                prompt_template=prompt_template,
                evaluation_criteria=EvaluationCriteria(
                    similarity_threshold=similarity_threshold,
                    use_semantic_scoring=use_semantic_scoring,
                ),
                agent_configuration=AgentConfiguration(
                    additional_instructions=additional_instructions,
                    knowledge_source=knowledge_source,
                ),
            ),
            **fields,
        )
    return _make


@pytest.fixture
def make_engine(state_service, chat_client, search_client, telemetry):
    def _make(blob_store=None, chat=chat_client, search=search_client, state=None, **kwargs):
        options = dict(
            auth_token="test-token",
            telemetry=telemetry,
            sample_data_fallback=True,
            progress_interval=5,
            default_threshold=0.8,
            knowledge_max_results=3,
            time_zone="UTC",
        )
        options.update(kwargs)
        materializer = ResultMaterializer(
            blob_store,
            container="job-results",
            retention_days=30,
            inline_threshold_bytes=0,
            telemetry=telemetry,
        )
        return ExecutionEngine(
            state or state_service,
            materializer,
            SimilarityScorer(chat, "test-token", "UTC"),
            chat_client=chat,
            search_client=search,
            blob_store=blob_store,
            **options,
        )
    return _make


@pytest.fixture
def make_consumer(transport, repository, state_service, publisher, telemetry, make_engine):
    def _make(engine=None, repository_override=None, **kwargs):
        options = dict(
            max_concurrent_calls=5,
            prefetch_count=10,
            max_delivery_count=3,
            lock_duration_seconds=30,
            max_auto_lock_renewal_seconds=600,
            receive_wait_seconds=0.05,
            error_backoff_seconds=0.01,
        )
        options.update(kwargs)
        return JobQueueConsumer(
            transport=transport,
            repository=repository_override or repository,
            engine=engine or make_engine(),
            publisher=publisher,
            compensator=DeadLetterCompensator(state_service, publisher, telemetry),
            telemetry=telemetry,
            **options,
        )
    return _make
