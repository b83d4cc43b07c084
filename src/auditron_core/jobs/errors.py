"""
Job error taxonomy.

ValidationError is returned synchronously to the submitter. Everything a
handler raises is classified TRANSIENT (retried) or FATAL (not retried) and
recorded on the job's `error` field.
"""


class JobError(Exception):
    """Base error for job orchestration."""

    pass


class ValidationError(JobError):
    """Submission rejected before enqueue."""

    pass


class TransientError(JobError):
    """Temporary failure inside a handler (network, store hiccup). Retried."""

    pass


class FatalError(JobError):
    """Handler logic error or invalid input semantics. Never retried."""

    pass


class Cancelled(FatalError):
    """Job was cancelled and the handler stopped cooperatively."""

    pass


class LeaseLost(JobError):
    """The worker no longer owns the job; local work must be discarded."""

    def __init__(self, job_id: str, worker_id: str, detail: str = ""):
        self.job_id = job_id
        self.worker_id = worker_id
        message = f"Worker {worker_id} lost lease on job {job_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidProgress(JobError):
    """Progress update out of range, decreasing, or outside RUNNING."""

    pass


class InvalidTransition(JobError):
    """Status change not allowed by the job state machine."""

    pass


class JobNotFound(JobError):
    """No job with this id exists for the organization."""

    pass


TRANSIENT = "TRANSIENT"
FATAL = "FATAL"


def classify_error(error: BaseException) -> str:
    """Classify a handler exception as TRANSIENT or FATAL."""
    if isinstance(error, (TransientError, ConnectionError, TimeoutError)):
        return TRANSIENT
    return FATAL


def describe_error(error: BaseException) -> str:
    """Human-readable error text stored on a FAILED job."""
    message = str(error) or "no details"
    return f"{type(error).__name__}: {message}"
