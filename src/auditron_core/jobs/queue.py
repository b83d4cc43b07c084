"""
Job queue / scheduler.

Provides durable, leased job scheduling on top of a JobRecordStore:

- submit: persist a QUEUED job (validated, returns immediately)
- lease: atomically claim the next eligible job for a worker
- heartbeat / report_progress: extend the lease (check-and-set on version)
- complete / fail: terminal transitions, idempotent against late workers
- retry: TRANSIENT failures are re-queued with capped exponential backoff
- cancel, pause/resume, dead-letter listing, resubmission, statistics

The queue holds no job state of its own; it is an explicit object injected
into workers and services, so several isolated queues can coexist.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from ..config import Config, RetryConfig
from ..schemas.job import Job, JobStatus, JobType, LogEntry, format_timestamp
from ..state_store.base import JobRecordStore
from . import state_machine
from .errors import (
    FATAL,
    TRANSIENT,
    Cancelled,
    JobNotFound,
    LeaseLost,
    ValidationError,
    classify_error,
    describe_error,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
JobListener = Callable[[Job], None]

# Bound on optimistic-concurrency retries for a single queue operation
MAX_CAS_RETRIES = 20


def utcnow() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


@dataclass
class RetryPolicy:
    """Capped exponential backoff for TRANSIENT failures."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 60.0

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        delay = self.base_delay_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.max_delay_seconds)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
        )


class JobQueue:
    """
    Leased work queue for agentic jobs.

    Args:
        store: Job Record Store (must support compare-and-set and lease)
        retry_policy: Backoff and attempt bound for TRANSIENT failures
        visibility_timeout: Default lease duration in seconds
        default_priority: Priority for submissions that do not set one
        clock: Returns the current UTC datetime (injectable for tests)
    """

    def __init__(
        self,
        store: JobRecordStore,
        retry_policy: Optional[RetryPolicy] = None,
        visibility_timeout: float = 30.0,
        default_priority: int = 0,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.visibility_timeout = visibility_timeout
        self.default_priority = default_priority
        self._clock = clock or utcnow
        self._paused = False
        self._listeners: list[JobListener] = []

    @classmethod
    def from_config(
        cls,
        store: JobRecordStore,
        config: Config,
        clock: Optional[Clock] = None,
    ) -> "JobQueue":
        return cls(
            store=store,
            retry_policy=RetryPolicy.from_config(config.retry),
            visibility_timeout=config.queue.visibility_timeout_seconds,
            default_priority=config.queue.default_priority,
            clock=clock,
        )

    # Time helpers

    def now(self) -> datetime:
        return self._clock()

    def _timestamp(self, offset_seconds: float = 0.0) -> str:
        return format_timestamp(self._clock() + timedelta(seconds=offset_seconds))

    # Listeners

    def add_listener(self, listener: JobListener) -> None:
        """Register a callback invoked after a job reaches a terminal state."""
        self._listeners.append(listener)

    def _notify(self, job: Job) -> None:
        for listener in self._listeners:
            try:
                listener(job)
            except Exception:
                logger.exception(f"Job listener failed for job {job.id}")

    # Pause / resume

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Stop handing out leases. Running jobs are unaffected."""
        self._paused = True
        logger.warning("Job queue paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Job queue resumed")

    # Submission

    def submit(
        self,
        job_type: Union[JobType, str, None],
        input: Optional[dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
        priority: Optional[int] = None,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Persist a new job in QUEUED state.

        Args:
            job_type: One of JobType (enum or its string value)
            input: JSON-serializable payload for the handler
            organization_id: Owning tenant
            triggered_by: Optional actor reference
            priority: Higher is leased first (defaults to the queue default)
            delay_seconds: Do not lease before now + delay
            max_attempts: Override the retry policy's attempt bound

        Returns:
            The stored job

        Raises:
            ValidationError: if type or organization is missing/invalid,
                or the payload is not a JSON object
        """
        resolved_type = self._validate_type(job_type)
        if not organization_id or not str(organization_id).strip():
            raise ValidationError("organizationId is required")
        payload = {} if input is None else input
        if not isinstance(payload, dict):
            raise ValidationError("input must be a JSON object")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"input is not JSON-serializable: {e}") from e
        if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
            raise ValidationError("priority must be an integer")
        if delay_seconds < 0:
            raise ValidationError("delay_seconds must be >= 0")
        attempts_bound = max_attempts if max_attempts is not None else self.retry_policy.max_attempts
        if attempts_bound < 1:
            raise ValidationError("max_attempts must be >= 1")

        now = self._timestamp()
        job = Job(
            id=str(uuid.uuid4()),
            type=resolved_type,
            organization_id=str(organization_id),
            input=payload,
            created_at=now,
            triggered_by=triggered_by,
            priority=self.default_priority if priority is None else priority,
            available_at=self._timestamp(delay_seconds),
            max_attempts=attempts_bound,
        )
        stored = self.store.create_job(job)
        self.store.append_log(stored.id, f"Job submitted ({resolved_type.value})", now)
        logger.info(
            f"Submitted job {stored.id} type={resolved_type.value} "
            f"org={stored.organization_id} priority={stored.priority}"
        )
        return self.store.get_job(stored.id) or stored

    @staticmethod
    def _validate_type(job_type: Union[JobType, str, None]) -> JobType:
        if not job_type:
            raise ValidationError("type is required")
        try:
            return JobType(job_type)
        except ValueError as e:
            allowed = ", ".join(t.value for t in JobType)
            raise ValidationError(f"Unknown job type {job_type!r} (allowed: {allowed})") from e

    # Reads

    def get(self, job_id: str, organization_id: Optional[str] = None) -> Job:
        """Get a job or raise JobNotFound."""
        job = self.store.get_job(job_id, organization_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_jobs(
        self,
        organization_id: str,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        return self.store.list_by_organization(
            organization_id, status=status, job_type=job_type, limit=limit, offset=offset
        )

    def list_dead_letter(
        self,
        organization_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """FAILED jobs that exhausted their attempts."""
        return self.store.list_by_organization(
            organization_id,
            status=JobStatus.FAILED,
            dead_lettered=True,
            limit=limit,
            offset=offset,
        )

    def stats(self, organization_id: Optional[str] = None) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.store.queue_stats(self._timestamp(), organization_id))
        stats["paused"] = self._paused
        return stats

    def append_log(self, job_id: str, message: str) -> LogEntry:
        """Append a line to a job's history (any state after creation)."""
        try:
            return self.store.append_log(job_id, message, self._timestamp())
        except KeyError as e:
            raise JobNotFound(f"Job {job_id} not found") from e

    # Leasing

    def lease(
        self,
        worker_id: str,
        visibility_timeout: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Claim the next eligible job for `worker_id` (or only `job_id`).

        Returns None when the queue is paused or nothing is eligible. A job
        whose lease expired once too often is failed here instead of being
        handed out again.
        """
        if self._paused:
            return None
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout

        while True:
            job = self.store.lease_next(
                worker_id, self._timestamp(), self._timestamp(timeout), job_id=job_id
            )
            if job is None:
                return None

            if job.attempts > job.max_attempts:
                self._fail_leased(
                    job,
                    f"LeaseLost: lease expired after {job.max_attempts} attempt(s)",
                    dead_lettered=True,
                )
                continue
            if job.cancel_requested:
                self._fail_leased(job, describe_error(Cancelled("cancelled before start")))
                continue

            self.append_log(
                job.id, f"Attempt {job.attempts}/{job.max_attempts} started by {worker_id}"
            )
            logger.info(
                f"Worker {worker_id} leased job {job.id} "
                f"(attempt {job.attempts}/{job.max_attempts})"
            )
            return self.store.get_job(job.id) or job

    def _fail_leased(self, job: Job, error: str, dead_lettered: bool = False) -> None:
        """Fail a job we hold by virtue of having just leased it."""
        changes = state_machine.failure_changes(job, error, self._timestamp())
        changes["dead_lettered"] = dead_lettered
        failed = self.store.compare_and_set(job.id, job.version, changes)
        if failed is None:
            logger.warning(f"Job {job.id} changed while failing it; leaving it to the next lease")
            return
        self.append_log(job.id, f"Job failed: {error}")
        logger.warning(f"Job {job.id} failed at lease time: {error}")
        self._notify(failed)

    @staticmethod
    def _check_owner(job: Job, worker_id: str) -> None:
        if job.status != JobStatus.RUNNING or job.lease_owner != worker_id:
            holder = job.lease_owner or "nobody"
            raise LeaseLost(job.id, worker_id, f"status={job.status.value}, held by {holder}")

    def heartbeat(
        self,
        job_id: str,
        worker_id: str,
        visibility_timeout: Optional[float] = None,
    ) -> Job:
        """
        Extend the lease held by `worker_id`.

        Returns:
            The refreshed job (callers check `cancel_requested` on it)

        Raises:
            LeaseLost: if the job is no longer RUNNING under this worker
        """
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        for _ in range(MAX_CAS_RETRIES):
            job = self.get(job_id)
            self._check_owner(job, worker_id)
            updated = self.store.compare_and_set(
                job.id, job.version, {"lease_expires_at": self._timestamp(timeout)}
            )
            if updated is not None:
                return updated
        raise LeaseLost(job_id, worker_id, "too much contention while extending lease")

    def report_progress(
        self,
        job_id: str,
        worker_id: str,
        progress: int,
        visibility_timeout: Optional[float] = None,
    ) -> Job:
        """
        Record progress and extend the lease in one version-checked write.

        Raises:
            LeaseLost: if the worker no longer owns the job
            InvalidProgress: if the value is out of range or decreasing
        """
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        for _ in range(MAX_CAS_RETRIES):
            job = self.get(job_id)
            state_machine.validate_progress(job, progress)
            self._check_owner(job, worker_id)
            updated = self.store.set_progress(
                job.id,
                job.version,
                progress,
                lease_expires_at=self._timestamp(timeout),
            )
            if updated is not None:
                return updated
        raise LeaseLost(job_id, worker_id, "too much contention while reporting progress")

    # Terminal transitions

    def complete(self, job_id: str, worker_id: str, output: Optional[dict[str, Any]] = None) -> Job:
        """
        RUNNING -> COMPLETED.

        A no-op (with a warning) when the job is already terminal, so a
        delayed duplicate completion never overwrites the recorded outcome.
        """
        for _ in range(MAX_CAS_RETRIES):
            job = self.get(job_id)
            if job.is_terminal:
                logger.warning(
                    f"Ignoring completion of job {job_id} by {worker_id}: "
                    f"already {job.status.value}"
                )
                return job
            self._check_owner(job, worker_id)
            changes = state_machine.completion_changes(job, output, self._timestamp())
            done = self.store.compare_and_set(job.id, job.version, changes)
            if done is not None:
                self.append_log(job.id, f"Job completed by {worker_id}")
                logger.info(f"Job {job.id} completed by {worker_id}")
                self._notify(done)
                return self.get(job.id)
        raise LeaseLost(job_id, worker_id, "too much contention while completing")

    def fail(
        self,
        job_id: str,
        worker_id: str,
        error: Union[BaseException, str],
        transient: Optional[bool] = None,
    ) -> Job:
        """
        Record a failed attempt.

        TRANSIENT failures with attempts left go back to QUEUED after a
        backoff delay; everything else ends FAILED. A no-op (with a warning)
        when the job is already terminal.

        Args:
            error: The exception (classified automatically) or an error text
            transient: Force the classification (default: classify `error`)
        """
        if isinstance(error, BaseException):
            text = describe_error(error)
            kind = classify_error(error)
        else:
            text = error or "Unknown error"
            kind = FATAL
        if transient is not None:
            kind = TRANSIENT if transient else FATAL

        for _ in range(MAX_CAS_RETRIES):
            job = self.get(job_id)
            if job.is_terminal:
                logger.warning(
                    f"Ignoring failure of job {job_id} by {worker_id}: already {job.status.value}"
                )
                return job
            self._check_owner(job, worker_id)

            attempt_note = f"Attempt {job.attempts}/{job.max_attempts} failed ({kind}): {text}"
            retry = kind == TRANSIENT and not job.attempts_exhausted and not job.cancel_requested
            if retry:
                delay = self.retry_policy.backoff_seconds(job.attempts)
                changes = state_machine.requeue_changes(job, self._timestamp(delay))
                note = f"{attempt_note}; retrying in {delay:g}s"
            else:
                changes = state_machine.failure_changes(job, text, self._timestamp())
                changes["dead_lettered"] = kind == TRANSIENT and job.attempts_exhausted
                note = attempt_note

            updated = self.store.compare_and_set(job.id, job.version, changes)
            if updated is None:
                continue
            self.append_log(job.id, note)
            if retry:
                logger.warning(f"Job {job.id} will be retried: {note}")
            else:
                logger.error(f"Job {job.id} failed permanently: {text}")
                self._notify(updated)
            return self.get(job.id)
        raise LeaseLost(job_id, worker_id, "too much contention while failing")

    # Cancellation and resubmission

    def cancel(self, job_id: str, organization_id: Optional[str] = None) -> Job:
        """
        Request cancellation.

        QUEUED jobs fail immediately with a Cancelled error. RUNNING jobs are
        flagged; the handler observes the flag at its next progress
        checkpoint. Terminal jobs are returned unchanged.
        """
        for _ in range(MAX_CAS_RETRIES):
            job = self.get(job_id, organization_id)
            if job.is_terminal or job.cancel_requested:
                return job
            if job.status == JobStatus.QUEUED:
                changes = state_machine.failure_changes(
                    job, describe_error(Cancelled("cancelled while queued")), self._timestamp()
                )
                changes["cancel_requested"] = True
            else:
                changes = {"cancel_requested": True}
            updated = self.store.compare_and_set(job.id, job.version, changes)
            if updated is None:
                continue
            if updated.is_terminal:
                self.append_log(job.id, "Job cancelled while queued")
                logger.info(f"Job {job.id} cancelled while queued")
                self._notify(updated)
            else:
                self.append_log(job.id, "Cancellation requested")
                logger.info(f"Cancellation requested for running job {job.id}")
            return self.get(job.id)
        raise JobNotFound(f"Job {job_id} kept changing while cancelling")

    def resubmit(
        self,
        job_id: str,
        organization_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> Job:
        """
        Submit a fresh copy of a FAILED job.

        The failed job stays untouched (terminal jobs are immutable); the
        copy gets a new id and a full attempt budget.
        """
        original = self.get(job_id, organization_id)
        if original.status != JobStatus.FAILED:
            raise ValidationError(
                f"Only FAILED jobs can be resubmitted (job {job_id} is {original.status.value})"
            )
        job = self.submit(
            original.type,
            input=original.input,
            organization_id=original.organization_id,
            triggered_by=triggered_by or original.triggered_by,
            priority=original.priority,
        )
        self.append_log(job.id, f"Resubmitted from failed job {original.id}")
        logger.info(f"Resubmitted failed job {original.id} as {job.id}")
        return self.get(job.id)
