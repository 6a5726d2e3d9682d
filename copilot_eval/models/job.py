"""
Job data models
Defines jobs, their lifecycle, configuration and evaluation results
"""
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum
import copy
import uuid

from copilot_eval.utils.errors import InvalidStateTransitionError
from copilot_eval.utils.helpers import utcnow


class JobType(str, Enum):
    """Kind of work a job performs"""
    BULK_EVALUATION = "bulk_evaluation"        # Score every row of a CSV data source
    SINGLE_EVALUATION = "single_evaluation"    # One synthetic evaluation (pipeline smoke test)
    BATCH_PROCESSING = "batch_processing"      # Fixed sequence of named phases


class JobStatus(str, Enum):
    """Job lifecycle status"""
    PENDING = "pending"          # Accepted, not yet picked up by a worker
    RUNNING = "running"          # Currently being executed
    COMPLETED = "completed"      # Finished successfully
    FAILED = "failed"            # Finished with an error
    CANCELLED = "cancelled"      # Stopped by a cancellation signal

    def is_terminal(self) -> bool:
        """Check if this is a terminal state"""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def can_transition_to(self, new_status: "JobStatus") -> bool:
        """Check if moving to new_status is allowed by the lifecycle table"""
        return new_status in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({
        JobStatus.RUNNING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobPriority(str, Enum):
    """Priority attached to a JobCreated message"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class JobProgress(BaseModel):
    """Item-level progress of a running job"""
    total_items: int = Field(default=0, ge=0)
    completed_items: int = Field(default=0, ge=0)
    percentage: float = Field(default=0.0, ge=0.0, le=100.0)

    @model_validator(mode='after')
    def check_completed_within_total(self):
        """completed_items may never exceed total_items"""
        if self.completed_items > self.total_items:
            raise ValueError(
                f"completed_items ({self.completed_items}) exceeds total_items ({self.total_items})"
            )
        return self

    @classmethod
    def of(cls, total: int, completed: int) -> "JobProgress":
        """Build progress from counts, deriving the percentage"""
        percentage = round(completed / total * 100, 1) if total else 0.0
        return cls(total_items=total, completed_items=completed, percentage=percentage)


class EvaluationCriteria(BaseModel):
    """How actual responses are judged"""
    similarity_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    use_semantic_scoring: bool = Field(default=True, description="Ask the chat collaborator to judge similarity")
    custom_evaluators: List[str] = Field(default_factory=list)


class AgentConfiguration(BaseModel):
    """Agent used to produce actual responses"""
    selected_agent_id: Optional[str] = None
    additional_instructions: Optional[str] = Field(None, description="Prepended to every prompt")
    knowledge_source: Optional[str] = Field(None, description="Knowledge-source id searched for context")


class JobConfiguration(BaseModel):
    """Everything a worker needs to execute a job"""
    data_source: Optional[str] = Field(None, description="Locator of the CSV input")
    data_source_blob_ref: Optional[str] = Field(None, description="Blob key of an uploaded CSV input")
    prompt_template: Optional[str] = None
    evaluation_criteria: EvaluationCriteria = Field(default_factory=EvaluationCriteria)
    agent_configuration: AgentConfiguration = Field(default_factory=AgentConfiguration)

    @property
    def input_locator(self) -> Optional[str]:
        """Uploaded blob takes precedence over a plain data source"""
        return self.data_source_blob_ref or self.data_source


class JobErrorDetails(BaseModel):
    """Error recorded on a failed job"""
    error_code: str = Field(..., description="Machine-readable error code")
    error_message: str = Field(..., max_length=5000)
    error_timestamp: datetime = Field(default_factory=utcnow)
    retry_possible: bool = False

    @field_validator('error_message', mode='before')
    def limit_message(cls, v):
        """Limit length"""
        return str(v)[:5000] if v is not None else ""


class EvaluationDetails(BaseModel):
    """Narrative explaining a score"""
    reasoning: Optional[str] = None
    differences: Optional[str] = None


class EvaluationResult(BaseModel):
    """Outcome of evaluating a single row"""
    item_id: str = Field(..., description="Row identifier, e.g. row_001")
    prompt: str = ""
    expected_response: str = ""
    actual_response: str = ""
    similarity_score: float = Field(default=0.0, ge=0.0, le=1.0)
    passed: bool = False
    evaluation_details: EvaluationDetails = Field(default_factory=EvaluationDetails)


class ResultsSummary(BaseModel):
    """Aggregate figures over all evaluation results of a job"""
    total_evaluations: int = Field(default=0, ge=0)
    passed_evaluations: int = Field(default=0, ge=0)
    failed_evaluations: int = Field(default=0, ge=0)
    average_score: float = Field(default=0.0, ge=0.0, le=1.0)
    pass_rate: float = Field(default=0.0, ge=0.0, le=100.0, description="Percentage of passed evaluations")

    @classmethod
    def from_results(cls, results: List[EvaluationResult]) -> "ResultsSummary":
        """
        Aggregate evaluation results

        Average score is rounded to 3 decimals, pass rate is a percentage
        rounded to 1 decimal.
        """
        total = len(results)
        if total == 0:
            return cls()
        passed = sum(1 for r in results if r.passed)
        average = sum(r.similarity_score for r in results) / total
        return cls(
            total_evaluations=total,
            passed_evaluations=passed,
            failed_evaluations=total - passed,
            average_score=round(average, 3),
            pass_rate=round(passed / total * 100, 1),
        )


class JobResults(BaseModel):
    """Full results of a job: summary plus per-item detail"""
    summary: ResultsSummary = Field(default_factory=ResultsSummary)
    download_url: Optional[str] = None
    detailed_results: List[EvaluationResult] = Field(default_factory=list)


class BlobReference(BaseModel):
    """
    Pointer to content materialized in the blob store
    Immutable once created
    """
    model_config = ConfigDict(frozen=True)

    blob_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    storage_account: str = ""
    container: str
    blob_name: str
    content_type: str = "application/json"
    size_bytes: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    access_url: Optional[str] = None


class Job(BaseModel):
    """
    Evaluation job record as stored in the job repository
    Status changes go through with_status so the lifecycle table is enforced
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    type: JobType
    status: JobStatus = JobStatus.PENDING

    # Timing information
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None

    progress: JobProgress = Field(default_factory=JobProgress)
    configuration: JobConfiguration = Field(default_factory=JobConfiguration)
    error_details: Optional[JobErrorDetails] = None

    # Results
    results_summary: Optional[ResultsSummary] = None
    results_blob_reference: Optional[BlobReference] = None

    def with_status(self, status: JobStatus, **changes: Any) -> "Job":
        """
        Return a copy moved to status with the given field changes applied

        Raises:
            InvalidStateTransitionError: if the lifecycle table forbids the move
        """
        if not self.status.can_transition_to(status):
            raise InvalidStateTransitionError(self.id, self.status, status)
        now = utcnow()
        update: Dict[str, Any] = {"status": status, "updated_at": now}
        if status == JobStatus.COMPLETED:
            update["completed_at"] = now
        update.update(changes)
        return self.model_copy(update=update, deep=True)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the document store (_id = job id)"""
        doc = self.model_dump(mode="python")
        doc["_id"] = doc.pop("id")
        doc["type"] = self.type.value
        doc["status"] = self.status.value
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Job":
        """Inverse of to_document"""
        doc = copy.deepcopy(doc)
        doc["id"] = doc.pop("_id", doc.get("id"))
        return cls(**doc)


class JobExecutionResult(BaseModel):
    """Outcome of one execution attempt, translated by the caller into updates and messages"""
    success: bool
    results: Optional[JobResults] = None
    blob_reference: Optional[BlobReference] = None
    error_details: Optional[JobErrorDetails] = None

    @classmethod
    def succeeded(cls, results: JobResults, blob_reference: Optional[BlobReference] = None):
        return cls(success=True, results=results, blob_reference=blob_reference)

    @classmethod
    def failed(cls, error_details: JobErrorDetails):
        return cls(success=False, error_details=error_details)
