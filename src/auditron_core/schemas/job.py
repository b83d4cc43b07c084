"""
Canonical job record.

A Job is the unit of asynchronous work tracked by the queue. Everything the
store persists, the queue leases and the API projects maps into/out of this.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class JobType(str, Enum):
    """Kinds of agentic work the queue accepts."""

    OCR = "OCR"
    CATEGORIZATION = "CATEGORIZATION"
    RECONCILIATION = "RECONCILIATION"
    COMPLIANCE = "COMPLIANCE"
    REPORTING = "REPORTING"


class JobStatus(str, Enum):
    """
    Lifecycle status of a job.

    QUEUED: waiting to be leased (possibly delayed by backoff)
    RUNNING: leased by a worker
    COMPLETED / FAILED: terminal, never mutated again
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexicographic order equal to chronological order,
    which the SQLite lease query relies on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class LogEntry:
    """One timestamped line of a job's append-only history."""

    timestamp: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"timestamp": self.timestamp, "message": self.message}


@dataclass
class Job:
    """A unit of asynchronous work with a tracked lifecycle."""

    id: str
    type: JobType
    organization_id: str
    input: dict[str, Any]
    created_at: str
    status: JobStatus = JobStatus.QUEUED
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    logs: list[LogEntry] = field(default_factory=list)
    progress: int = 0
    triggered_by: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    # Scheduling
    priority: int = 0
    available_at: str = ""  # QUEUED jobs are not leased before this
    attempts: int = 0
    max_attempts: int = 3

    # Lease and optimistic concurrency
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[str] = None
    version: int = 0
    cancel_requested: bool = False
    # FAILED after exhausting its attempts (dead-letter view)
    dead_lettered: bool = False

    # Insertion order, assigned by the store (FIFO tie-break)
    seq: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_projection(self) -> dict[str, Any]:
        """Public projection returned by the submission API."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "logs": [entry.to_dict() for entry in self.logs],
            "progress": self.progress,
            "organizationId": self.organization_id,
            "triggeredBy": self.triggered_by,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "priority": self.priority,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "cancelling": self.cancel_requested and not self.is_terminal,
            "deadLettered": self.dead_lettered,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row, logs: Optional[list[LogEntry]] = None) -> "Job":
        """Create from database row."""
        return cls(
            id=row["id"],
            type=JobType(row["type"]),
            organization_id=row["organization_id"],
            input=json.loads(row["input_json"]) if row["input_json"] else {},
            created_at=row["created_at"],
            status=JobStatus(row["status"]),
            output=json.loads(row["output_json"]) if row["output_json"] else None,
            error=row["error"],
            logs=logs or [],
            progress=row["progress"],
            triggered_by=row["triggered_by"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            priority=row["priority"],
            available_at=row["available_at"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            version=row["version"],
            cancel_requested=bool(row["cancel_requested"]),
            dead_lettered=bool(row["dead_lettered"]),
            seq=row["seq"],
        )
