"""Canonical data contracts for jobs and reconciliations."""

from .job import Job, JobStatus, JobType, LogEntry, format_timestamp
from .reconciliation import (
    Direction,
    LedgerEntry,
    Match,
    MatchFlag,
    MatchType,
    Period,
    Reconciliation,
    ReconciliationResult,
    ReconciliationStatus,
    Transaction,
)

__all__ = [
    "Direction",
    "Job",
    "JobStatus",
    "JobType",
    "LedgerEntry",
    "LogEntry",
    "Match",
    "MatchFlag",
    "MatchType",
    "Period",
    "Reconciliation",
    "ReconciliationResult",
    "ReconciliationStatus",
    "Transaction",
    "format_timestamp",
]
