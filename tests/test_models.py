"""Tests for job lifecycle, progress, summaries and the message envelope."""
import json

import pytest
from pydantic import ValidationError

from copilot_eval.models.job import (
    EvaluationResult,
    Job,
    JobConfiguration,
    JobErrorDetails,
    JobProgress,
    JobStatus,
    JobType,
    ResultsSummary,
)
from copilot_eval.models.message import JobMessage, JobMessageType, JobStartedPayload
from copilot_eval.models.queue import HandlerResult, MessageOutcome
from copilot_eval.utils.errors import InvalidStateTransitionError, PoisonMessageError


def _result(item_id, score, passed):
    return EvaluationResult(item_id=item_id, similarity_score=score, passed=passed)


def test_pending_only_moves_to_running():
    assert JobStatus.PENDING.can_transition_to(JobStatus.RUNNING)
    for target in (JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert not JobStatus.PENDING.can_transition_to(target)


def test_running_allows_progress_and_terminal_states():
    for target in (JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert JobStatus.RUNNING.can_transition_to(target)
    assert not JobStatus.RUNNING.can_transition_to(JobStatus.PENDING)


@pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
def test_terminal_states_are_final(terminal):
    assert terminal.is_terminal()
    assert not any(terminal.can_transition_to(target) for target in JobStatus)


def test_with_status_returns_updated_copy():
    job = Job(name="job", type=JobType.BULK_EVALUATION)
    running = job.with_status(JobStatus.RUNNING, progress=JobProgress.of(10, 0))
    completed = running.with_status(JobStatus.COMPLETED)

    assert job.status == JobStatus.PENDING
    assert running.progress.total_items == 10
    assert completed.completed_at is not None
    assert completed.updated_at >= job.updated_at


def test_with_status_rejects_skipping_running():
    job = Job(name="job", type=JobType.BULK_EVALUATION)
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        job.with_status(JobStatus.COMPLETED)
    assert exc_info.value.current == JobStatus.PENDING
    assert "pending -> completed" in str(exc_info.value)


def test_progress_percentage_is_derived():
    assert JobProgress.of(3, 1).percentage == 33.3
    assert JobProgress.of(4, 4).percentage == 100.0
    assert JobProgress.of(0, 0).percentage == 0.0


def test_progress_rejects_completed_over_total():
    with pytest.raises(ValidationError):
        JobProgress(total_items=2, completed_items=3)
    with pytest.raises(ValidationError):
        JobProgress(total_items=2, completed_items=1, percentage=120.0)


def test_results_summary_aggregates():
    summary = ResultsSummary.from_results([
        _result("row_001", 1.0, True),
        _result("row_002", 0.5, False),
        _result("row_003", 0.0, False),
    ])
    assert summary.total_evaluations == 3
    assert summary.passed_evaluations == 1
    assert summary.failed_evaluations == 2
    assert summary.average_score == 0.5
    assert summary.pass_rate == 33.3


def test_results_summary_of_nothing_is_zero():
    summary = ResultsSummary.from_results([])
    assert summary.total_evaluations == 0
    assert summary.average_score == 0.0


def test_input_locator_prefers_uploaded_blob():
    config = JobConfiguration(data_source="inputs/a.csv", data_source_blob_ref="uploads/b.csv")
    assert config.input_locator == "uploads/b.csv"
    assert JobConfiguration(data_source="inputs/a.csv").input_locator == "inputs/a.csv"
    assert JobConfiguration().input_locator is None


def test_error_message_is_capped():
    details = JobErrorDetails(error_code="EXECUTION_FAILED", error_message="x" * 6000)
    assert len(details.error_message) == 5000
    assert details.error_timestamp.tzinfo is not None


def test_job_document_uses_id_as_key():
    job = Job(name="job", type=JobType.BATCH_PROCESSING)
    doc = job.to_document()
    assert doc["_id"] == job.id
    assert "id" not in doc
    assert doc["status"] == "pending"
    assert Job.from_document(doc).type == JobType.BATCH_PROCESSING


def test_job_message_wire_format():
    message = JobMessage.create(
        "job-1",
        JobMessageType.JOB_STARTED,
        JobStartedPayload(id="job-1", name="Nightly", type=JobType.BULK_EVALUATION),
        correlation_id="corr-1",
    )
    body = json.loads(message.to_wire())
    assert body["message_type"] == "job_started"
    assert body["payload"] == {"id": "job-1", "name": "Nightly", "type": "bulk_evaluation"}

    parsed = JobMessage.from_wire(message.to_wire().encode("utf-8"))
    assert parsed.correlation_id == "corr-1"
    assert parsed.payload_as(JobStartedPayload).name == "Nightly"


def test_job_message_is_immutable():
    message = JobMessage(job_id="job-1", message_type=JobMessageType.JOB_CREATED)
    with pytest.raises(ValidationError):
        message.retry_count = 5


@pytest.mark.parametrize("body", [
    "{not json",
    "[1, 2, 3]",
    '{"job_id": "job-1"}',
    '{"job_id": "job-1", "message_type": "job_exploded"}',
    b"\xff\xfe\xfa",
])
def test_undeserializable_bodies_are_poison(body):
    with pytest.raises(PoisonMessageError):
        JobMessage.from_wire(body)


def test_handler_result_dead_letter_carries_reason():
    result = HandlerResult.dead_letter("ValueError", "bad input")
    assert result.outcome == MessageOutcome.DEAD_LETTER
    assert result.reason == "ValueError"
    assert HandlerResult.abandon().reason is None
