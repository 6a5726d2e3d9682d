"""
Job Execution Service
Runs a job according to its type and records the outcome on the job record
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional
import logging
from copilot_eval.config.settings import settings
from copilot_eval.models.copilot import ChatRequest, LocationHint
from copilot_eval.models.job import (
    EvaluationDetails,
    EvaluationResult,
    Job,
    JobConfiguration,
    JobErrorDetails,
    JobExecutionResult,
    JobProgress,
    JobResults,
    JobStatus,
    JobType,
    ResultsSummary,
)
from copilot_eval.services.blob_service import BlobStore, resolve_locator
from copilot_eval.services.copilot_service import ChatClient, KnowledgeSearchClient, format_search_context
from copilot_eval.services.evaluation_service import SimilarityScorer
from copilot_eval.services.result_service import ResultMaterializer
from copilot_eval.services.state_service import JobStateService
from copilot_eval.utils.cancellation import CancellationSignal
from copilot_eval.utils.errors import (
    CancellationRequested,
    ConfigurationError,
    InvalidStateTransitionError,
    JobStoreUnavailableError,
    MissingInputDataError,
    UnsupportedJobTypeError,
    is_retryable,
)
from copilot_eval.utils.helpers import new_request_id, parse_csv_text, pick_first, sample_rows, truncate
from copilot_eval.utils.monitoring import Telemetry

logger = logging.getLogger(__name__)

PROMPT_ALIASES = ("prompt", "Prompt", "PROMPT", "question", "Question", "input", "Input")
EXPECTED_ALIASES = (
    "expected_response", "Expected_Response", "expected", "Expected",
    "expected_output", "answer", "Answer", "reference",
)
BATCH_PHASES = ("Data Loading", "Processing", "Validation", "Output Generation")

Handler = Callable[[Job, CancellationSignal, str], Awaitable[JobExecutionResult]]


class ExecutionEngine:
    """
    Executes jobs dispatched by type

    execute_job never raises for execution errors: they are recorded on the
    job as Failed and returned as an unsuccessful result. Cancellation and
    job store failures propagate, so the message is retried or dead-lettered
    instead of acknowledged while the job record is stale.
    """


    def __init__(self,
                 state_service: JobStateService,
                 materializer: ResultMaterializer,
                 scorer: SimilarityScorer,
                 chat_client: Optional[ChatClient] = None,
                 search_client: Optional[KnowledgeSearchClient] = None,
                 blob_store: Optional[BlobStore] = None,
                 auth_token: Optional[str] = None,
                 telemetry: Optional[Telemetry] = None,
                 sample_data_fallback: Optional[bool] = None,
                 progress_interval: Optional[int] = None,
                 default_threshold: Optional[float] = None,
                 knowledge_max_results: Optional[int] = None,
                 time_zone: Optional[str] = None):
        self.state_service = state_service
        self.materializer = materializer
        self.scorer = scorer
        self.chat_client = chat_client
        self.search_client = search_client
        self.blob_store = blob_store
        self.auth_token = auth_token
        self.telemetry = telemetry or Telemetry()
        self.sample_data_fallback = (
            settings.SAMPLE_DATA_FALLBACK if sample_data_fallback is None else sample_data_fallback
        )
        self.progress_interval = max(1, progress_interval or settings.PROGRESS_UPDATE_INTERVAL)
        self.default_threshold = (
            settings.DEFAULT_SIMILARITY_THRESHOLD if default_threshold is None else default_threshold
        )
        self.knowledge_max_results = knowledge_max_results or settings.KNOWLEDGE_SEARCH_MAX_RESULTS
        self.time_zone = time_zone or settings.COPILOT_TIMEZONE

        self._handlers: Dict[JobType, Handler] = {
            JobType.BULK_EVALUATION: self._execute_bulk_evaluation,
            JobType.SINGLE_EVALUATION: self._execute_single_evaluation,
            JobType.BATCH_PROCESSING: self._execute_batch_processing,
        }
        missing = [t.value for t in JobType if t not in self._handlers]
        if missing:
            raise ConfigurationError(f"No execution handler for job types: {', '.join(missing)}")

    async def execute_job(self, job: Job, cancel_signal: Optional[CancellationSignal] = None) -> JobExecutionResult:
        """
        Run job to completion

        Args:
            job: Job to execute; it is moved to Running first
            cancel_signal: Checked at every row and phase boundary

        Returns:
            JobExecutionResult with results on success, error details otherwise

        Raises:
            CancellationRequested: cancellation was observed (job marked Cancelled)
            JobStoreUnavailableError: the job record could not be moved to Running,
                or its terminal state could not be recorded
            InvalidStateTransitionError: the job was no longer Pending
        """
        request_id = new_request_id()
        cancel_signal = cancel_signal or CancellationSignal()
        logger.info(f"[Execution {request_id}] Starting job execution - JobId: {job.id}, Type: {job.type.value}")

        updated = await self.state_service.update_job_status(job.id, JobStatus.RUNNING, progress=JobProgress.of(0, 0))
        if updated is None:
            logger.error(f"[Execution {request_id}] Job {job.id} not found")
            return JobExecutionResult.failed(JobErrorDetails(
                error_code="EXECUTION_FAILED",
                error_message=f"Job {job.id} not found",
                retry_possible=False,
            ))

        try:
            with self.telemetry.span("job.execute", job_type=job.type.value):
                handler = self._handlers.get(job.type)
                if handler is None:
                    raise UnsupportedJobTypeError(f"Job type {job.type} is not supported")
                result = await handler(job, cancel_signal, request_id)

            logger.info(f"[Execution {request_id}] Job execution completed successfully - JobId: {job.id}")
            self.telemetry.increment("jobs.completed", job_type=job.type.value)
            return result

        except (CancellationRequested, asyncio.CancelledError):
            logger.warning(f"[Execution {request_id}] Job execution cancelled - JobId: {job.id}")
            try:
                await self._mark_finished(job.id, JobStatus.CANCELLED, request_id)
            except JobStoreUnavailableError as e:
                logger.error(f"[Execution {request_id}] Could not record cancellation of job {job.id}: {e}")
            self.telemetry.increment("jobs.cancelled", job_type=job.type.value)
            raise

        except Exception as e:
            logger.error(f"[Execution {request_id}] Job execution failed - JobId: {job.id}, Error: {e}")
            error_details = JobErrorDetails(
                error_code="EXECUTION_FAILED",
                error_message=str(e) or type(e).__name__,
                retry_possible=is_retryable(e),
            )
            await self._mark_finished(job.id, JobStatus.FAILED, request_id, error_details=error_details)
            self.telemetry.increment("jobs.failed", job_type=job.type.value)
            return JobExecutionResult.failed(error_details)

    async def _mark_finished(self, job_id: str, status: JobStatus, request_id: str,
                             error_details: Optional[JobErrorDetails] = None) -> None:
        """Record a terminal status; a job already terminal is left as it is"""
        try:
            await self.state_service.update_job_status(job_id, status, error_details=error_details)
        except InvalidStateTransitionError as e:
            if not JobStatus(e.current).is_terminal():
                raise
            logger.warning(f"[Execution {request_id}] Job {job_id} already {JobStatus(e.current).value}, "
                           f"not marking {status.value}")

    # Job type handlers

    async def _execute_bulk_evaluation(self, job: Job, cancel_signal: CancellationSignal,
                                       request_id: str) -> JobExecutionResult:
        logger.info(f"[Execution {request_id}] Executing bulk evaluation job")

        rows = await self.parse_tabular_data(job.configuration.input_locator, request_id)
        if not rows:
            raise MissingInputDataError("No valid CSV data found for processing")

        total = len(rows)
        logger.info(f"[Execution {request_id}] Processing {total} prompts from CSV")
        results = await self._evaluate_rows(job, rows, cancel_signal, request_id, report_progress=True)

        summary = ResultsSummary.from_results(results)
        logger.info(f"[Execution {request_id}] Bulk evaluation completed - {total} items processed, "
                    f"{summary.passed_evaluations} passed, {summary.failed_evaluations} failed")
        return await self._complete(job, JobResults(summary=summary, detailed_results=results), total, request_id)

    async def _execute_single_evaluation(self, job: Job, cancel_signal: CancellationSignal,
                                         request_id: str) -> JobExecutionResult:
        logger.info(f"[Execution {request_id}] Executing single evaluation job")
        cancel_signal.raise_if_cancelled()

        result = await self.process_row(sample_rows()[0], "single_evaluation", job.configuration, request_id)
        results = JobResults(summary=ResultsSummary.from_results([result]), detailed_results=[result])
        return await self._complete(job, results, 1, request_id)

    async def _execute_batch_processing(self, job: Job, cancel_signal: CancellationSignal,
                                        request_id: str) -> JobExecutionResult:
        logger.info(f"[Execution {request_id}] Executing batch processing job")
        total_phases = len(BATCH_PHASES)
        rows: List[Dict[str, str]] = []
        results: List[EvaluationResult] = []
        summary = ResultsSummary()

        for index, phase in enumerate(BATCH_PHASES):
            cancel_signal.raise_if_cancelled()
            logger.info(f"[Execution {request_id}] Phase {index + 1}: {phase}")

            if phase == "Data Loading":
                rows = await self.parse_tabular_data(job.configuration.input_locator, request_id)
                if not rows:
                    raise MissingInputDataError("No valid CSV data found for processing")
            elif phase == "Processing":
                results = await self._evaluate_rows(job, rows, cancel_signal, request_id, report_progress=False)
            elif phase == "Validation":
                self._validate_results(results, len(rows))
            else:
                summary = ResultsSummary.from_results(results)

            await self.state_service.update_progress(job.id, JobProgress.of(total_phases, index + 1))

        return await self._complete(job, JobResults(summary=summary, detailed_results=results),
                                    total_phases, request_id)

    @staticmethod
    def _validate_results(results: List[EvaluationResult], expected_count: int) -> None:
        if len(results) != expected_count:
            raise ValueError(f"Expected {expected_count} results, got {len(results)}")
        item_ids = [r.item_id for r in results]
        if len(set(item_ids)) != len(item_ids):
            raise ValueError("Duplicate item ids in results")
        for r in results:
            if not 0.0 <= r.similarity_score <= 1.0:
                raise ValueError(f"Score out of range for {r.item_id}: {r.similarity_score}")

    async def _evaluate_rows(self, job: Job, rows: List[Dict[str, str]], cancel_signal: CancellationSignal,
                             request_id: str, report_progress: bool) -> List[EvaluationResult]:
        total = len(rows)
        results = []
        for i, row in enumerate(rows):
            cancel_signal.raise_if_cancelled()
            item_id = f"row_{i + 1:03d}"
            results.append(await self.process_row(row, item_id, job.configuration, request_id))

            if report_progress and ((i + 1) % self.progress_interval == 0 or i == total - 1):
                progress = JobProgress.of(total, i + 1)
                await self.state_service.update_progress(job.id, progress)
                logger.info(f"[Execution {request_id}] Progress update: {i + 1}/{total} ({progress.percentage:.1f}%)")
        return results

    async def _complete(self, job: Job, results: JobResults, total_items: int,
                        request_id: str) -> JobExecutionResult:
        blob_reference = await self.materializer.materialize(job.id, results)
        if blob_reference is not None:
            results = results.model_copy(update={"download_url": blob_reference.access_url})

        await self.state_service.update_job_status(
            job.id,
            JobStatus.COMPLETED,
            progress=JobProgress.of(total_items, total_items),
            results_summary=results.summary,
            results_blob_reference=blob_reference,
        )
        return JobExecutionResult.succeeded(results, blob_reference)

    # Input data

    async def parse_tabular_data(self, locator: Optional[str], request_id: Optional[str] = None) -> List[Dict[str, str]]:
        """
        Load CSV rows from the blob named by locator

        An unresolvable, missing, empty or unparseable source yields the
        built-in sample rows, or MissingInputDataError when sample fallback
        is disabled.
        """
        request_id = request_id or new_request_id()
        logger.info(f"[Execution {request_id}] Parsing CSV data from: {locator}")

        resolved = resolve_locator(locator)
        if self.blob_store is None or resolved is None:
            return self._fallback("No blob storage or data source configured", request_id)

        container, key = resolved
        logger.info(f"[Execution {request_id}] Reading from container: {container}, blob: {key}")
        if not await self.blob_store.exists(container, key):
            return self._fallback(f"Blob {container}/{key} not found", request_id)

        data = await self.blob_store.read(container, key)
        try:
            rows = parse_csv_text(data.decode("utf-8-sig"))
        except ValueError as e:
            return self._fallback(f"Failed to parse CSV data: {e}", request_id)

        if not rows:
            return self._fallback("Empty CSV file", request_id)

        logger.info(f"[Execution {request_id}] Successfully parsed {len(rows)} CSV rows")
        return rows

    def _fallback(self, reason: str, request_id: str) -> List[Dict[str, str]]:
        if not self.sample_data_fallback:
            raise MissingInputDataError(reason)
        logger.warning(f"[Execution {request_id}] {reason}, using sample data")
        return sample_rows()

    # Row processing

    async def process_row(self, row: Dict[str, str], item_id: str, config: JobConfiguration,
                          request_id: Optional[str] = None) -> EvaluationResult:
        """
        Evaluate one row: get an actual response and score it against the expected one

        A failed chat call yields a failed result for this row only.
        """
        request_id = request_id or new_request_id()
        prompt = self._apply_template(config.prompt_template, pick_first(row, PROMPT_ALIASES))
        expected = pick_first(row, EXPECTED_ALIASES)
        criteria = config.evaluation_criteria
        threshold = (
            criteria.similarity_threshold if criteria.similarity_threshold is not None
            else self.default_threshold
        )
        logger.info(f"[Execution {request_id}] Processing {item_id}: {truncate(prompt)}")

        if self.chat_client is None:
            raise ConfigurationError("No chat client configured to generate responses")

        try:
            actual = await self._generate_response(prompt, config, request_id)
        except (CancellationRequested, ConfigurationError):
            raise
        except Exception as e:
            logger.error(f"[Execution {request_id}] Failed to process prompt {item_id}: {e}")
            return EvaluationResult(
                item_id=item_id,
                prompt=prompt,
                expected_response=expected,
                actual_response="Error: Failed to generate response",
                similarity_score=0.0,
                passed=False,
                evaluation_details=EvaluationDetails(
                    reasoning=f"FAILED: response generation error ({type(e).__name__}: {e})",
                    differences="No actual response to compare",
                ),
            )

        outcome = await self.scorer.score(
            expected,
            actual,
            use_semantic=criteria.use_semantic_scoring,
            additional_instructions=config.agent_configuration.additional_instructions,
        )
        passed = outcome.score >= threshold
        verdict = (
            f"PASSED: similarity {outcome.score:.3f} meets threshold {threshold:.2f}" if passed
            else f"FAILED: similarity {outcome.score:.3f} below threshold {threshold:.2f}"
        )
        return EvaluationResult(
            item_id=item_id,
            prompt=prompt,
            expected_response=expected,
            actual_response=actual,
            similarity_score=outcome.score,
            passed=passed,
            evaluation_details=EvaluationDetails(
                reasoning=f"{verdict} ({outcome.method}). {outcome.reasoning}",
                differences=outcome.differences,
            ),
        )

    @staticmethod
    def _apply_template(template: Optional[str], prompt: str) -> str:
        if not template or not template.strip():
            return prompt
        if "{prompt}" in template:
            return template.replace("{prompt}", prompt)
        return f"{template.strip()}\n\n{prompt}"

    async def _generate_response(self, prompt: str, config: JobConfiguration, request_id: str) -> str:
        agent = config.agent_configuration
        parts = []
        if agent.additional_instructions and agent.additional_instructions.strip():
            parts.append(agent.additional_instructions.strip())

        if agent.knowledge_source and self.search_client is not None:
            try:
                hits = await self.search_client.search(
                    self.auth_token, agent.knowledge_source, prompt, self.knowledge_max_results
                )
                parts.append(format_search_context(hits, agent.knowledge_source))
                logger.info(f"[Execution {request_id}] Added {len(hits)} knowledge results from {agent.knowledge_source}")
            except Exception as e:
                logger.warning(f"[Execution {request_id}] Knowledge search failed, continuing without context: {e}")

        parts.append(prompt)
        conversation_id = await self.chat_client.create_conversation(self.auth_token)
        reply = await self.chat_client.chat(
            self.auth_token,
            conversation_id,
            ChatRequest(text="\n\n".join(parts), location_hint=LocationHint(time_zone=self.time_zone)),
        )
        return reply.reply_text
