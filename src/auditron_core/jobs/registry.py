"""
Job handler interface and registry.

A handler turns a job's input into an output dict. It receives two
callbacks from the worker:

- progress(value): records progress, extends the lease, and raises
  Cancelled when cancellation was requested
- log(message): appends to the job's history
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Optional

from ..schemas.job import JobType
from .errors import FatalError

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[int], None]
LogAppender = Callable[[str], None]
HandlerFunc = Callable[[dict[str, Any], ProgressReporter, LogAppender], Optional[dict[str, Any]]]


class JobHandler(ABC):
    """Base class for all job handlers (one per job type)."""

    @property
    @abstractmethod
    def job_type(self) -> JobType:
        """Job type this handler executes."""
        pass

    @abstractmethod
    def run(
        self,
        payload: dict[str, Any],
        progress: ProgressReporter,
        log: LogAppender,
    ) -> Optional[dict[str, Any]]:
        """
        Execute one attempt of a job.

        Args:
            payload: The job's input
            progress: Progress reporter / heartbeat (0-100, non-decreasing)
            log: Appends a line to the job's history

        Returns:
            Output dict stored on the COMPLETED job

        Raises:
            TransientError: to request a retry
            FatalError: (or anything else) to fail the job
        """
        pass


class CapabilityHandler(JobHandler):
    """
    Adapter that plugs a plain callable in as a handler.

    Used for the capability-backed job types (OCR, categorization,
    compliance, reporting), whose logic lives outside the core.
    """

    def __init__(self, job_type: JobType, func: HandlerFunc, name: Optional[str] = None):
        self._job_type = JobType(job_type)
        self._func = func
        self.name = name or getattr(func, "__name__", self._job_type.value.lower())

    @property
    def job_type(self) -> JobType:
        return self._job_type

    def run(
        self,
        payload: dict[str, Any],
        progress: ProgressReporter,
        log: LogAppender,
    ) -> Optional[dict[str, Any]]:
        return self._func(payload, progress, log)


class HandlerRegistry:
    """Explicit job type -> handler mapping."""

    def __init__(self, handlers: Optional[list[JobHandler]] = None):
        self._handlers: dict[JobType, JobHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: JobHandler, replace: bool = False) -> None:
        """
        Register a handler for its job type.

        Raises:
            ValueError: if a handler is already registered and replace=False
        """
        job_type = handler.job_type
        if job_type in self._handlers and not replace:
            raise ValueError(f"Handler for {job_type.value} already registered")
        self._handlers[job_type] = handler
        logger.debug(f"Registered {type(handler).__name__} for {job_type.value}")

    def register_function(self, job_type: JobType, func: HandlerFunc, replace: bool = False) -> None:
        """Register a plain callable as the handler of `job_type`."""
        self.register(CapabilityHandler(job_type, func), replace=replace)

    def get(self, job_type: JobType) -> JobHandler:
        """
        Resolve the handler for a job type.

        Raises:
            FatalError: if no handler is registered (not retried)
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise FatalError(f"No handler registered for job type {job_type.value}")
        return handler

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> list[JobType]:
        return sorted(self._handlers, key=lambda t: t.value)
