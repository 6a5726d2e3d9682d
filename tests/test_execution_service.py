"""Tests for the execution engine: dispatch, input parsing, row scoring and results."""
import pytest

from copilot_eval.models.job import JobStatus, JobType
from copilot_eval.services.state_service import JobStateService
from copilot_eval.utils.cancellation import CancellationSignal
from copilot_eval.utils.errors import (
    CancellationRequested,
    CollaboratorError,
    JobStoreUnavailableError,
    TransientExternalError,
)

from tests.conftest import THREE_ROW_CSV, FakeChatClient, FakeSearchClient, FlakyRepository


async def _stored(repository, job):
    await repository.create(job)
    return job


async def test_bulk_evaluation_over_csv(repository, blob_store, make_engine, make_job, telemetry):
    await blob_store.write("inputs", "eval.csv", THREE_ROW_CSV.encode("utf-8"), content_type="text/csv")
    job = await _stored(repository, make_job(data_source="inputs/eval.csv"))

    result = await make_engine(blob_store=blob_store).execute_job(job)

    assert result.success
    assert result.results.summary.total_evaluations == 3
    assert 0.0 <= result.results.summary.average_score <= 1.0
    assert [r.item_id for r in result.results.detailed_results] == ["row_001", "row_002", "row_003"]
    assert result.blob_reference is not None
    assert result.results.download_url == result.blob_reference.access_url
    assert await blob_store.exists("job-results", f"{job.id}/results.json")

    stored = await repository.get_by_id(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress.completed_items == 3
    assert stored.progress.percentage == 100.0
    assert stored.results_summary.total_evaluations == 3
    assert stored.results_blob_reference == result.blob_reference
    assert telemetry.counters["jobs.completed"] == 1


async def test_bulk_evaluation_without_blob_store_uses_sample_rows(repository, make_engine, make_job):
    job = await _stored(repository, make_job(data_source="inputs/eval.csv"))
    result = await make_engine().execute_job(job)

    assert result.success
    assert result.results.summary.total_evaluations == 5
    assert result.blob_reference is None
    assert (await repository.get_by_id(job.id)).results_blob_reference is None


async def test_missing_input_blob_falls_back_to_sample_rows(repository, blob_store, make_engine, make_job):
    job = await _stored(repository, make_job(data_source="inputs/missing.csv"))
    result = await make_engine(blob_store=blob_store).execute_job(job)
    assert result.results.summary.total_evaluations == 5


async def test_missing_input_fails_when_fallback_disabled(repository, blob_store, make_engine, make_job, telemetry):
    job = await _stored(repository, make_job(data_source="inputs/missing.csv"))
    result = await make_engine(blob_store=blob_store, sample_data_fallback=False).execute_job(job)

    assert not result.success
    assert result.error_details.error_code == "EXECUTION_FAILED"
    assert result.error_details.retry_possible is False
    stored = await repository.get_by_id(job.id)
    assert stored.status == JobStatus.FAILED
    assert "inputs/missing.csv" in stored.error_details.error_message
    assert telemetry.counters["jobs.failed"] == 1


async def test_no_chat_client_is_a_configuration_failure(repository, make_engine, make_job):
    job = await _stored(repository, make_job())
    result = await make_engine(chat=None).execute_job(job)

    assert not result.success
    assert result.error_details.retry_possible is False
    assert "chat client" in result.error_details.error_message


async def test_failed_row_does_not_fail_the_job(repository, make_engine, make_job):
    chat = FakeChatClient(fail_on=["capital of France"])
    job = await _stored(repository, make_job())
    result = await make_engine(chat=chat).execute_job(job)

    assert result.success
    first = result.results.detailed_results[0]
    assert first.actual_response == "Error: Failed to generate response"
    assert first.similarity_score == 0.0
    assert not first.passed
    assert first.evaluation_details.reasoning.startswith("FAILED")
    assert result.results.summary.total_evaluations == 5


async def test_row_passes_against_threshold(repository, make_engine, make_job):
    job = await _stored(repository, make_job(similarity_threshold=0.95))
    result = await make_engine().execute_job(job)

    by_id = {r.item_id: r for r in result.results.detailed_results}
    # "Paris" is an exact match; the judge scores every other row 0.9
    assert by_id["row_001"].passed
    assert by_id["row_001"].similarity_score == 1.0
    assert not by_id["row_002"].passed
    assert by_id["row_002"].similarity_score == pytest.approx(0.9)
    assert "below threshold 0.95" in by_id["row_002"].evaluation_details.reasoning


async def test_single_evaluation_runs_one_synthetic_row(repository, make_engine, make_job):
    job = await _stored(repository, make_job(job_type=JobType.SINGLE_EVALUATION))
    result = await make_engine().execute_job(job)

    assert result.success
    [only] = result.results.detailed_results
    assert only.item_id == "single_evaluation"
    assert only.prompt == "What is the capital of France?"
    assert (await repository.get_by_id(job.id)).progress.total_items == 1


async def test_batch_processing_reports_each_phase(repository, make_engine, make_job):
    job = await _stored(repository, make_job(job_type=JobType.BATCH_PROCESSING))
    result = await make_engine().execute_job(job)

    assert result.success
    assert result.results.summary.total_evaluations == 5
    stored = await repository.get_by_id(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress.total_items == 4
    assert stored.progress.completed_items == 4


async def test_cancellation_marks_job_cancelled(repository, make_engine, make_job, telemetry):
    job = await _stored(repository, make_job())
    signal = CancellationSignal()
    signal.cancel()

    with pytest.raises(CancellationRequested):
        await make_engine().execute_job(job, signal)

    assert (await repository.get_by_id(job.id)).status == JobStatus.CANCELLED
    assert telemetry.counters["jobs.cancelled"] == 1


async def test_unknown_job_fails_without_raising(make_engine, make_job):
    result = await make_engine().execute_job(make_job())
    assert not result.success


async def test_prompt_template_placeholder(repository, chat_client, make_engine, make_job):
    job = await _stored(repository, make_job(job_type=JobType.SINGLE_EVALUATION,
                                             prompt_template="Answer in one word: {prompt}"))
    await make_engine().execute_job(job)
    assert chat_client.prompts == ["Answer in one word: What is the capital of France?"]


async def test_prompt_template_without_placeholder_is_prepended(repository, chat_client, make_engine, make_job):
    job = await _stored(repository, make_job(job_type=JobType.SINGLE_EVALUATION,
                                             prompt_template="You are a geography tutor."))
    await make_engine().execute_job(job)
    assert chat_client.prompts == ["You are a geography tutor.\n\nWhat is the capital of France?"]


async def test_instructions_and_knowledge_context_precede_prompt(repository, chat_client, search_client,
                                                                 make_engine, make_job):
    job = await _stored(repository, make_job(job_type=JobType.SINGLE_EVALUATION,
                                             additional_instructions="Be concise.",
                                             knowledge_source="geo-kb"))
    await make_engine().execute_job(job)

    [text] = chat_client.prompts
    assert text.startswith("Be concise.\n\nRelevant information from geo-kb knowledge source:")
    assert "Paris is the capital and largest city of France." in text
    assert text.endswith("What is the capital of France?")
    assert search_client.queries == [("geo-kb", "What is the capital of France?", 3)]


async def test_knowledge_search_failure_is_not_fatal(repository, chat_client, make_engine, make_job):
    search = FakeSearchClient(error=CollaboratorError("search down", status=503))
    job = await _stored(repository, make_job(job_type=JobType.SINGLE_EVALUATION, knowledge_source="geo-kb"))
    result = await make_engine(search=search).execute_job(job)

    assert result.success
    assert chat_client.prompts == ["What is the capital of France?"]


async def test_parse_tabular_data_reads_alias_columns(blob_store, make_engine):
    csv_text = 'Question,Answer\n"Capital of Italy, please",Rome\n'
    await blob_store.write("inputs", "aliases.csv", csv_text.encode("utf-8-sig"))
    rows = await make_engine(blob_store=blob_store).parse_tabular_data("inputs/aliases.csv")
    assert rows == [{"Question": "Capital of Italy, please", "Answer": "Rome"}]


class RecordingStateService(JobStateService):
    def __init__(self, repository):
        super().__init__(repository)
        self.progress_writes = []

    async def update_progress(self, job_id, progress):
        self.progress_writes.append((progress.completed_items, progress.total_items))
        return await super().update_progress(job_id, progress)


async def test_bulk_progress_written_every_five_rows_and_on_last(repository, blob_store, make_engine, make_job):
    lines = ["prompt,expected_response"] + [f"Question {i},Answer {i}" for i in range(1, 8)]
    await blob_store.write("inputs", "seven.csv", "\n".join(lines).encode("utf-8"))
    job = await _stored(repository, make_job(data_source="inputs/seven.csv"))
    state = RecordingStateService(repository)

    result = await make_engine(blob_store=blob_store, state=state).execute_job(job)

    assert result.results.summary.total_evaluations == 7
    assert state.progress_writes == [(5, 7), (7, 7)]


async def test_job_store_failure_on_running_transition_propagates(repository, make_engine, make_job, chat_client):
    job = await _stored(repository, make_job())
    flaky = FlakyRepository(repository, TransientExternalError("database unreachable"), update_failures=1)

    with pytest.raises(JobStoreUnavailableError):
        await make_engine(state=JobStateService(flaky)).execute_job(job)

    assert (await repository.get_by_id(job.id)).status == JobStatus.PENDING
    assert chat_client.requests == []


async def test_job_store_failure_mid_run_is_recorded_as_retryable(repository, make_engine, make_job):
    job = await _stored(repository, make_job())
    # Running succeeds, the first progress write fails, marking Failed succeeds
    flaky = FlakyRepository(repository, TransientExternalError("database unreachable"),
                            update_failures=1, updates_before_failure=1)

    result = await make_engine(state=JobStateService(flaky)).execute_job(job)

    assert not result.success
    assert result.error_details.retry_possible is True
    stored = await repository.get_by_id(job.id)
    assert stored.status == JobStatus.FAILED
    assert "database unreachable" in stored.error_details.error_message


async def test_unrecordable_failure_propagates(repository, make_engine, make_job):
    job = await _stored(repository, make_job())
    flaky = FlakyRepository(repository, TransientExternalError("database unreachable"),
                            update_failures=100, updates_before_failure=1)

    with pytest.raises(JobStoreUnavailableError):
        await make_engine(state=JobStateService(flaky)).execute_job(job)

    assert (await repository.get_by_id(job.id)).status == JobStatus.RUNNING
