"""
Data models for the evaluation job pipeline
"""
from .job import (
    JobType,
    JobStatus,
    JobPriority,
    JobProgress,
    EvaluationCriteria,
    AgentConfiguration,
    JobConfiguration,
    JobErrorDetails,
    EvaluationDetails,
    EvaluationResult,
    ResultsSummary,
    JobResults,
    BlobReference,
    Job,
    JobExecutionResult,
)
from .message import (
    JobMessageType,
    JobMessage,
    JobCreatedPayload,
    JobStartedPayload,
    JobProgressPayload,
    JobCompletedPayload,
    JobFailedPayload,
    JobCancelledPayload,
)
from .queue import QueueMessage, ReceivedMessage, MessageOutcome, HandlerResult

__all__ = [
    'JobType',
    'JobStatus',
    'JobPriority',
    'JobProgress',
    'EvaluationCriteria',
    'AgentConfiguration',
    'JobConfiguration',
    'JobErrorDetails',
    'EvaluationDetails',
    'EvaluationResult',
    'ResultsSummary',
    'JobResults',
    'BlobReference',
    'Job',
    'JobExecutionResult',
    'JobMessageType',
    'JobMessage',
    'JobCreatedPayload',
    'JobStartedPayload',
    'JobProgressPayload',
    'JobCompletedPayload',
    'JobFailedPayload',
    'JobCancelledPayload',
    'QueueMessage',
    'ReceivedMessage',
    'MessageOutcome',
    'HandlerResult',
]
