"""
In-memory Job Record Store.

An arena of job records guarded by a single lock, with a monotonically
increasing version per job. Used by tests and by single-process runs that
do not need durability. Records are deep-copied in and out, so callers never
share mutable state with the arena.
"""

import copy
import threading
from typing import Any, Optional

from ..schemas.job import Job, JobStatus, JobType, LogEntry
from ..schemas.reconciliation import Reconciliation, ReconciliationStatus
from .base import JobRecordStore, check_changes


class InMemoryJobStore(JobRecordStore):
    """Thread-safe in-memory store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._reconciliations: dict[str, Reconciliation] = {}
        self._seq = 0

    def create_job(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._seq += 1
            stored = copy.deepcopy(job)
            stored.seq = self._seq
            self._jobs[job.id] = stored
            return copy.deepcopy(stored)

    def get_job(self, job_id: str, organization_id: Optional[str] = None) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if organization_id is not None and job.organization_id != organization_id:
                return None
            return copy.deepcopy(job)

    def compare_and_set(
        self,
        job_id: str,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Optional[Job]:
        check_changes(changes)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.version != expected_version:
                return None
            for name, value in changes.items():
                setattr(job, name, copy.deepcopy(value))
            job.version += 1
            return copy.deepcopy(job)

    def append_log(self, job_id: str, message: str, timestamp: str) -> LogEntry:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Job {job_id} not found")
            entry = LogEntry(timestamp=timestamp, message=message)
            job.logs.append(entry)
            return copy.deepcopy(entry)

    def list_by_organization(
        self,
        organization_id: str,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if job.organization_id == organization_id
                and (status is None or job.status == status)
                and (job_type is None or job.type == job_type)
                and (dead_lettered is None or job.dead_lettered == dead_lettered)
            ]
            jobs.sort(key=lambda j: (j.created_at, j.seq), reverse=True)
            page = jobs[offset : offset + limit]
            return [copy.deepcopy(j) for j in page], len(jobs)

    def lease_next(
        self,
        worker_id: str,
        now: str,
        lease_expires_at: str,
        job_id: Optional[str] = None,
    ) -> Optional[Job]:
        with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if (job_id is None or job.id == job_id) and self._is_eligible(job, now)
            ]
            if not eligible:
                return None
            job = min(eligible, key=lambda j: (-j.priority, j.created_at, j.seq))
            job.status = JobStatus.RUNNING
            job.lease_owner = worker_id
            job.lease_expires_at = lease_expires_at
            job.started_at = now
            job.attempts += 1
            job.version += 1
            return copy.deepcopy(job)

    @staticmethod
    def _is_eligible(job: Job, now: str) -> bool:
        if job.status == JobStatus.QUEUED:
            return job.available_at <= now
        if job.status == JobStatus.RUNNING:
            return job.lease_expires_at is not None and job.lease_expires_at < now
        return False

    def queue_stats(self, now: str, organization_id: Optional[str] = None) -> dict[str, int]:
        stats = {
            "queued": 0,
            "delayed": 0,
            "running": 0,
            "completed": 0,
            "failed": 0,
            "dead_letter": 0,
        }
        with self._lock:
            for job in self._jobs.values():
                if organization_id is not None and job.organization_id != organization_id:
                    continue
                if job.status == JobStatus.QUEUED:
                    stats["queued" if job.available_at <= now else "delayed"] += 1
                elif job.status == JobStatus.RUNNING:
                    stats["running"] += 1
                elif job.status == JobStatus.COMPLETED:
                    stats["completed"] += 1
                else:
                    stats["failed"] += 1
                    if job.dead_lettered:
                        stats["dead_letter"] += 1
        return stats

    # Reconciliations

    def create_reconciliation(self, reconciliation: Reconciliation) -> None:
        with self._lock:
            if reconciliation.id in self._reconciliations:
                raise ValueError(f"Reconciliation {reconciliation.id} already exists")
            self._reconciliations[reconciliation.id] = copy.deepcopy(reconciliation)

    def get_reconciliation(
        self,
        reconciliation_id: str,
        organization_id: Optional[str] = None,
    ) -> Optional[Reconciliation]:
        with self._lock:
            rec = self._reconciliations.get(reconciliation_id)
            if rec is None:
                return None
            if organization_id is not None and rec.organization_id != organization_id:
                return None
            return copy.deepcopy(rec)

    def save_reconciliation(self, reconciliation: Reconciliation) -> None:
        with self._lock:
            if reconciliation.id not in self._reconciliations:
                raise KeyError(f"Reconciliation {reconciliation.id} not found")
            saved = copy.deepcopy(reconciliation)
            saved.job_id = self._reconciliations[reconciliation.id].job_id
            self._reconciliations[reconciliation.id] = saved

    def set_reconciliation_job_id(self, reconciliation_id: str, job_id: str) -> None:
        with self._lock:
            rec = self._reconciliations.get(reconciliation_id)
            if rec is None:
                raise KeyError(f"Reconciliation {reconciliation_id} not found")
            rec.job_id = job_id

    def list_reconciliations(
        self,
        organization_id: str,
        status: Optional[ReconciliationStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Reconciliation], int]:
        with self._lock:
            recs = [
                rec
                for rec in self._reconciliations.values()
                if rec.organization_id == organization_id
                and (status is None or rec.status == status)
            ]
            recs.sort(key=lambda r: (r.created_at, r.id), reverse=True)
            return [copy.deepcopy(r) for r in recs[offset : offset + limit]], len(recs)
