"""
Error taxonomy for the job pipeline
Decides which failures are worth another delivery attempt
"""


class JobPipelineError(Exception):
    """Base class for pipeline errors"""
    retryable: bool = True


class PoisonMessageError(JobPipelineError):
    """Message body cannot be turned into a JobMessage"""
    retryable = False


class ConfigurationError(JobPipelineError, ValueError):
    """Job configuration or input data is unusable; retrying will not help"""
    retryable = False


class UnsupportedJobTypeError(ConfigurationError):
    """No execution handler exists for the job type"""


class MissingInputDataError(ConfigurationError):
    """The job's data source could not be resolved"""


class InvalidStateTransitionError(JobPipelineError):
    """Rejected job status change (see JobStatus.can_transition_to)"""
    retryable = False

    def __init__(self, job_id: str, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Job {job_id}: invalid status transition {_label(current)} -> {_label(requested)}"
        )


class TransientExternalError(JobPipelineError):
    """Connectivity problem with an external collaborator"""
    retryable = True


class BlobStoreUnavailableError(TransientExternalError):
    """Blob store could not be reached"""


class JobStoreUnavailableError(TransientExternalError):
    """Job repository read or write failed"""


class CollaboratorError(TransientExternalError):
    """Chat or knowledge-search call failed"""

    def __init__(self, message: str, status: int = None):
        self.status = status
        super().__init__(message)


class CancellationRequested(Exception):
    """Cooperative cancellation observed at a row or phase boundary"""


_NON_RETRYABLE_BUILTINS = (ValueError, TypeError, NotImplementedError, KeyError)


def is_retryable(exception: BaseException) -> bool:
    """
    Determine if another delivery attempt could succeed

    Argument, validation, unsupported-operation and invalid-state errors are
    permanent; everything else is assumed transient.
    """
    if isinstance(exception, JobPipelineError):
        return exception.retryable
    if isinstance(exception, _NON_RETRYABLE_BUILTINS):
        return False
    return True


def error_kind(exception: BaseException) -> str:
    """Exception class name, used as the dead-letter reason"""
    return type(exception).__name__


def _label(status) -> str:
    return getattr(status, "value", str(status))
