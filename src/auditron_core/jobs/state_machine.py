"""
Job state machine.

    QUEUED ──lease──> RUNNING ──complete──> COMPLETED
      │                │  │
      │ cancel         │  └──fail──> FAILED
      v                │
    FAILED             └──transient failure──> QUEUED (retry, after backoff)

RUNNING -> RUNNING is the re-lease of a job whose lease expired. Nothing
leaves a terminal state. Each helper validates the move and returns the
field changes to apply with a version-checked write; none of them touch the
store.
"""

from typing import Any, Optional

from ..schemas.job import Job, JobStatus
from .errors import InvalidProgress, InvalidTransition

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.RUNNING, JobStatus.QUEUED, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

_RELEASED_LEASE = {"lease_owner": None, "lease_expires_at": None}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True if the move is allowed."""
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidTransition if the move is not allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move job from {current.value} to {target.value}")


def completion_changes(job: Job, output: Optional[dict[str, Any]], now: str) -> dict[str, Any]:
    """RUNNING -> COMPLETED."""
    validate_transition(job.status, JobStatus.COMPLETED)
    return {
        "status": JobStatus.COMPLETED,
        "output": output if output is not None else {},
        "error": None,
        "completed_at": now,
        **_RELEASED_LEASE,
    }


def failure_changes(job: Job, error: str, now: str) -> dict[str, Any]:
    """QUEUED/RUNNING -> FAILED. A failed job always carries an error text."""
    validate_transition(job.status, JobStatus.FAILED)
    return {
        "status": JobStatus.FAILED,
        "output": None,
        "error": error or "Unknown error",
        "completed_at": now,
        **_RELEASED_LEASE,
    }


def requeue_changes(job: Job, available_at: str) -> dict[str, Any]:
    """RUNNING -> QUEUED for a retry. Progress is kept (never decreases)."""
    validate_transition(job.status, JobStatus.QUEUED)
    return {
        "status": JobStatus.QUEUED,
        "available_at": available_at,
        **_RELEASED_LEASE,
    }


def validate_progress(job: Job, value: int) -> None:
    """Raise InvalidProgress unless `value` may be recorded on `job`."""
    if job.status != JobStatus.RUNNING:
        raise InvalidProgress(
            f"Progress only accepted while RUNNING (job {job.id} is {job.status.value})"
        )
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise InvalidProgress(f"Progress must be an integer in [0, 100], got {value!r}")
    if value < job.progress:
        raise InvalidProgress(f"Progress cannot decrease ({job.progress} -> {value})")
