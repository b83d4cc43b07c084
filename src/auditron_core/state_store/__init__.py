"""
Job Record Store.

Durable storage for jobs and reconciliations behind one interface:
- SQLiteJobStore: file-backed, safe across threads and processes
- InMemoryJobStore: versioned in-memory arena for tests and single-process runs
"""

from .base import JobRecordStore
from .memory_store import InMemoryJobStore
from .sqlite_store import SQLiteJobStore

__all__ = [
    "InMemoryJobStore",
    "JobRecordStore",
    "SQLiteJobStore",
]
