"""
Job Record Store interface.

The queue and the services treat durable storage as a capability. Every
backend must provide:

- organization-scoped reads and listings
- append-only job logs
- version-checked (compare-and-set) job updates
- an atomic lease: select-and-claim of the next eligible job in one step
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..schemas.job import Job, JobStatus, JobType, LogEntry
from ..schemas.reconciliation import Reconciliation, ReconciliationStatus

# Job fields a compare-and-set may change
MUTABLE_JOB_FIELDS = frozenset(
    {
        "status",
        "output",
        "error",
        "progress",
        "started_at",
        "completed_at",
        "available_at",
        "attempts",
        "lease_owner",
        "lease_expires_at",
        "cancel_requested",
        "dead_lettered",
    }
)


class JobRecordStore(ABC):
    """Durable storage of jobs and reconciliations."""

    # Jobs

    @abstractmethod
    def create_job(self, job: Job) -> Job:
        """Persist a new job. Returns the stored copy (with `seq` assigned)."""
        pass

    @abstractmethod
    def get_job(self, job_id: str, organization_id: Optional[str] = None) -> Optional[Job]:
        """Get a job with its logs. Scoped to the organization when given."""
        pass

    @abstractmethod
    def compare_and_set(
        self,
        job_id: str,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Optional[Job]:
        """
        Apply `changes` only if the stored version equals `expected_version`.

        Bumps the version on success.

        Returns:
            The updated job, or None if the version check failed
        """
        pass

    @abstractmethod
    def append_log(self, job_id: str, message: str, timestamp: str) -> LogEntry:
        """Append one line to the job's history. Never reorders or deletes."""
        pass

    @abstractmethod
    def list_by_organization(
        self,
        organization_id: str,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first. Returns (page, total matching)."""
        pass

    @abstractmethod
    def lease_next(
        self,
        worker_id: str,
        now: str,
        lease_expires_at: str,
        job_id: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Atomically claim the next eligible job.

        Eligible: QUEUED with available_at <= now, or RUNNING with an expired
        lease. Ordered by priority (desc), then created_at, then insertion.
        With `job_id` only that job is considered.
        The claimed job becomes RUNNING, owned by `worker_id`, with
        started_at=now and attempts incremented.
        """
        pass

    @abstractmethod
    def queue_stats(self, now: str, organization_id: Optional[str] = None) -> dict[str, int]:
        """Counts: queued, delayed, running, completed, failed, dead_letter."""
        pass

    def update_status(
        self,
        job_id: str,
        expected_version: int,
        status: JobStatus,
        **fields: Any,
    ) -> Optional[Job]:
        """Version-checked status change."""
        return self.compare_and_set(job_id, expected_version, {"status": status, **fields})

    def set_progress(
        self,
        job_id: str,
        expected_version: int,
        progress: int,
        **fields: Any,
    ) -> Optional[Job]:
        """Version-checked progress write (usually with a lease extension)."""
        return self.compare_and_set(job_id, expected_version, {"progress": progress, **fields})

    # Reconciliations

    @abstractmethod
    def create_reconciliation(self, reconciliation: Reconciliation) -> None:
        pass

    @abstractmethod
    def get_reconciliation(
        self,
        reconciliation_id: str,
        organization_id: Optional[str] = None,
    ) -> Optional[Reconciliation]:
        pass

    @abstractmethod
    def save_reconciliation(self, reconciliation: Reconciliation) -> None:
        """Overwrite status, totals and the match set of a reconciliation.

        The stored job_id is left alone; use set_reconciliation_job_id.
        """
        pass

    @abstractmethod
    def set_reconciliation_job_id(self, reconciliation_id: str, job_id: str) -> None:
        """Link a reconciliation to its job without touching anything else."""
        pass

    @abstractmethod
    def list_reconciliations(
        self,
        organization_id: str,
        status: Optional[ReconciliationStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Reconciliation], int]:
        pass


def check_changes(changes: dict[str, Any]) -> None:
    """Reject writes to immutable or unknown job fields."""
    unknown = set(changes) - MUTABLE_JOB_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
