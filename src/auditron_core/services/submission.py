"""
Job submission API.

Organization-scoped facade over the queue: submit, status, listing,
cancellation, dead-letter review and resubmission. Every read is scoped to
the caller's organization; a job of another tenant is reported as not found.
"""

import logging
import math
from typing import Any, Optional, Union

from ..jobs.errors import ValidationError
from ..jobs.queue import JobQueue
from ..schemas.job import Job, JobStatus, JobType

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def paginate(items: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    """Standard paginated collection envelope."""
    return {
        "data": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


def check_page(page: int, limit: int) -> tuple[int, int]:
    """Validate page/limit and return (limit, offset)."""
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit, (page - 1) * limit


def _parse_enum(enum_cls, value, label: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError as e:
        raise ValidationError(f"Unknown {label} {value!r}") from e


class JobService:
    """Submission API for asynchronous jobs."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    def submit(
        self,
        organization_id: str,
        job_type: Union[JobType, str],
        input: Optional[dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        priority: Optional[int] = None,
        delay_seconds: float = 0,
    ) -> dict[str, str]:
        """
        Enqueue a job and return immediately.

        Returns:
            {"jobId": ..., "status": "QUEUED"}

        Raises:
            ValidationError: on missing/invalid type, organization or input
        """
        job = self.queue.submit(
            job_type,
            input=input,
            organization_id=organization_id,
            triggered_by=triggered_by,
            priority=priority,
            delay_seconds=delay_seconds,
        )
        return {"jobId": job.id, "status": job.status.value}

    def get_status(self, organization_id: str, job_id: str) -> dict[str, Any]:
        """Full job projection (status, progress, logs, output or error)."""
        return self.queue.get(job_id, organization_id).to_projection()

    def list_jobs(
        self,
        organization_id: str,
        status: Union[JobStatus, str, None] = None,
        job_type: Union[JobType, str, None] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Paginated jobs of an organization, newest first."""
        page_size, offset = check_page(page, limit)
        jobs, total = self.queue.list_jobs(
            organization_id,
            status=_parse_enum(JobStatus, status, "status"),
            job_type=_parse_enum(JobType, job_type, "job type"),
            limit=page_size,
            offset=offset,
        )
        return paginate([self._summary(j) for j in jobs], total, page, page_size)

    def cancel(self, organization_id: str, job_id: str) -> dict[str, Any]:
        """Request cancellation; returns the job projection afterwards."""
        return self.queue.cancel(job_id, organization_id).to_projection()

    def list_dead_letter(self, organization_id: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
        """Paginated FAILED jobs that exhausted their retries."""
        page_size, offset = check_page(page, limit)
        jobs, total = self.queue.list_dead_letter(organization_id, limit=page_size, offset=offset)
        return paginate([self._summary(j) for j in jobs], total, page, page_size)

    def resubmit(
        self,
        organization_id: str,
        job_id: str,
        triggered_by: Optional[str] = None,
    ) -> dict[str, str]:
        """Enqueue a fresh copy of a FAILED job."""
        job = self.queue.resubmit(job_id, organization_id, triggered_by=triggered_by)
        return {"jobId": job.id, "status": job.status.value, "resubmittedFrom": job_id}

    def stats(self, organization_id: Optional[str] = None) -> dict[str, Any]:
        return self.queue.stats(organization_id)

    @staticmethod
    def _summary(job: Job) -> dict[str, Any]:
        # List entries leave out logs and payloads
        return {
            "id": job.id,
            "type": job.type.value,
            "status": job.status.value,
            "progress": job.progress,
            "error": job.error,
            "attempts": job.attempts,
            "maxAttempts": job.max_attempts,
            "triggeredBy": job.triggered_by,
            "createdAt": job.created_at,
            "completedAt": job.completed_at,
        }
