"""
Job orchestration.

Queue/scheduler, state machine, handler registry and worker pool for
long-running asynchronous jobs.
"""

from .errors import (
    Cancelled,
    FatalError,
    InvalidProgress,
    InvalidTransition,
    JobError,
    JobNotFound,
    LeaseLost,
    TransientError,
    ValidationError,
)
from .queue import JobQueue, RetryPolicy
from .registry import CapabilityHandler, HandlerRegistry, JobHandler
from .worker import JobContext, WorkerPool

__all__ = [
    "Cancelled",
    "CapabilityHandler",
    "FatalError",
    "HandlerRegistry",
    "InvalidProgress",
    "InvalidTransition",
    "JobContext",
    "JobError",
    "JobHandler",
    "JobNotFound",
    "JobQueue",
    "LeaseLost",
    "RetryPolicy",
    "TransientError",
    "ValidationError",
    "WorkerPool",
]
