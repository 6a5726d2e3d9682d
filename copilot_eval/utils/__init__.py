"""
Utility modules for the job pipeline
"""
from .cancellation import CancellationSignal
from .errors import (
    JobPipelineError,
    PoisonMessageError,
    ConfigurationError,
    UnsupportedJobTypeError,
    MissingInputDataError,
    InvalidStateTransitionError,
    TransientExternalError,
    BlobStoreUnavailableError,
    JobStoreUnavailableError,
    CollaboratorError,
    CancellationRequested,
    is_retryable,
    error_kind,
)
from .monitoring import Telemetry, InMemoryTelemetry

__all__ = [
    'CancellationSignal',
    'JobPipelineError',
    'PoisonMessageError',
    'ConfigurationError',
    'UnsupportedJobTypeError',
    'MissingInputDataError',
    'InvalidStateTransitionError',
    'TransientExternalError',
    'BlobStoreUnavailableError',
    'JobStoreUnavailableError',
    'CollaboratorError',
    'CancellationRequested',
    'is_retryable',
    'error_kind',
    'Telemetry',
    'InMemoryTelemetry',
]
