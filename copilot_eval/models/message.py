"""
Queue message models
Lifecycle messages exchanged between the publisher and the consumers
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from enum import Enum
import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from copilot_eval.models.job import (
    BlobReference,
    Job,
    JobErrorDetails,
    JobPriority,
    JobProgress,
    JobType,
    ResultsSummary,
)
from copilot_eval.utils.errors import PoisonMessageError
from copilot_eval.utils.helpers import utcnow

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class JobMessageType(str, Enum):
    """Lifecycle message types"""
    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"


class JobCreatedPayload(BaseModel):
    job: Job
    priority: JobPriority = JobPriority.NORMAL


class JobStartedPayload(BaseModel):
    id: str
    name: str
    type: JobType


class JobProgressPayload(BaseModel):
    progress: JobProgress
    current_item: Optional[str] = None
    estimated_time_remaining: Optional[str] = None


class JobCompletedPayload(BaseModel):
    results_summary: Optional[ResultsSummary] = None
    results_blob_ref: Optional[BlobReference] = None


class JobFailedPayload(BaseModel):
    error_details: Optional[JobErrorDetails] = None
    partial_results: Optional[BlobReference] = None


class JobCancelledPayload(BaseModel):
    reason: Optional[str] = None


class JobMessage(BaseModel):
    """
    Immutable queue envelope

    The correlation id is carried across every message of one job; the retry
    count is bumped by the producer when it republishes after a failure.
    """
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(..., min_length=1)
    message_type: JobMessageType
    created_at: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    blob_references: Optional[List[BlobReference]] = None

    @classmethod
    def create(cls, job_id: str, message_type: JobMessageType, payload: Optional[BaseModel] = None,
               **kwargs: Any) -> "JobMessage":
        """Build a message from a typed payload model"""
        data = payload.model_dump(mode="json") if payload is not None else {}
        return cls(job_id=job_id, message_type=message_type, payload=data, **kwargs)

    def payload_as(self, model: Type[PayloadT]) -> PayloadT:
        """Validate the payload against its typed model"""
        return model.model_validate(self.payload)

    def to_wire(self) -> str:
        """JSON body with snake_case field names"""
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, body: Union[str, bytes]) -> "JobMessage":
        """
        Parse a queue body

        Raises:
            PoisonMessageError: body is not a valid JobMessage
        """
        try:
            if isinstance(body, bytes):
                body = body.decode("utf-8")
            data = json.loads(body)
            if not isinstance(data, dict):
                raise ValueError("message body is not a JSON object")
            return cls.model_validate(data)
        except (UnicodeDecodeError, ValueError, ValidationError) as e:
            raise PoisonMessageError(f"Unable to deserialize JobMessage from message body: {e}") from e
