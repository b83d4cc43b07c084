"""
Worker pool.

A fixed number of threads poll the queue independently. For each leased
job the worker resolves the handler from the registry and runs it in a
separate thread, watching it for stalls:

- every progress report or heartbeat from the handler extends the lease
- a handler silent for longer than the visibility timeout is abandoned;
  the lease is considered lost and whatever it produces later is discarded
- handler errors are classified TRANSIENT (retried) or FATAL (not retried)
"""

import logging
import threading
import time
from typing import Any, Optional

from ..config import Config
from ..schemas.job import Job
from .errors import (
    TRANSIENT,
    Cancelled,
    FatalError,
    InvalidProgress,
    LeaseLost,
    classify_error,
    describe_error,
)
from .queue import JobQueue
from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class JobContext:
    """
    Callbacks handed to a handler for one leased execution.

    Tracks the last moment the handler showed signs of life and whether the
    lease is still ours.
    """

    def __init__(self, queue: JobQueue, job: Job, worker_id: str):
        self.queue = queue
        self.job_id = job.id
        self.worker_id = worker_id
        self.lost = threading.Event()
        self._last_seen = time.monotonic()
        self._lock = threading.Lock()

    def touch(self) -> None:
        with self._lock:
            self._last_seen = time.monotonic()

    def idle_seconds(self) -> float:
        with self._lock:
            return time.monotonic() - self._last_seen

    def mark_lost(self) -> None:
        self.lost.set()

    def _ensure_owned(self) -> None:
        if self.lost.is_set():
            raise LeaseLost(self.job_id, self.worker_id, "execution abandoned")

    def _check_cancel(self, job: Job) -> None:
        if job.cancel_requested:
            raise Cancelled(f"Job {job.id} was cancelled")

    def progress(self, value: int) -> None:
        """
        Report progress (also a heartbeat).

        An invalid value is logged and ignored; the lease is still extended.

        Raises:
            LeaseLost: if another worker took the job over
            Cancelled: if cancellation was requested
        """
        self._ensure_owned()
        try:
            job = self.queue.report_progress(self.job_id, self.worker_id, value)
        except InvalidProgress as e:
            logger.warning(f"Ignoring progress update for job {self.job_id}: {e}")
            job = self._heartbeat()
        except LeaseLost:
            self.mark_lost()
            raise
        self.touch()
        self._check_cancel(job)

    def heartbeat(self) -> None:
        """Extend the lease without reporting progress."""
        self._ensure_owned()
        job = self._heartbeat()
        self.touch()
        self._check_cancel(job)

    def _heartbeat(self) -> Job:
        try:
            return self.queue.heartbeat(self.job_id, self.worker_id)
        except LeaseLost:
            self.mark_lost()
            raise

    def log(self, message: str) -> None:
        """Append a line to the job's history."""
        if self.lost.is_set():
            logger.debug(f"Dropping log line for abandoned job {self.job_id}: {message}")
            return
        self.queue.append_log(self.job_id, message)


class WorkerPool:
    """
    Fixed-size pool of worker threads.

    Args:
        queue: Job queue to lease from
        registry: Handler registry (one handler per job type)
        worker_count: Number of worker threads
        poll_interval: Idle sleep between lease attempts (seconds)
        stall_check_interval: How often a running handler is checked (seconds)
        visibility_timeout: Lease duration; defaults to the queue's
        name: Prefix for worker ids
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        worker_count: int = 4,
        poll_interval: float = 1.0,
        stall_check_interval: float = 0.5,
        visibility_timeout: Optional[float] = None,
        name: str = "worker",
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.queue = queue
        self.registry = registry
        self.worker_count = worker_count
        self.poll_interval = poll_interval
        self.stall_check_interval = stall_check_interval
        self.visibility_timeout = (
            queue.visibility_timeout if visibility_timeout is None else visibility_timeout
        )
        self.name = name
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_config(
        cls,
        queue: JobQueue,
        registry: HandlerRegistry,
        config: Config,
        name: str = "worker",
    ) -> "WorkerPool":
        return cls(
            queue=queue,
            registry=registry,
            worker_count=config.workers.count,
            poll_interval=config.queue.poll_interval_seconds,
            stall_check_interval=config.workers.stall_check_interval_seconds,
            visibility_timeout=config.queue.visibility_timeout_seconds,
            name=name,
        )

    @property
    def worker_ids(self) -> list[str]:
        return [f"{self.name}-{n}" for n in range(1, self.worker_count + 1)]

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Start the worker threads."""
        if self.running:
            raise RuntimeError("Worker pool already running")
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True)
            for worker_id in self.worker_ids
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Started {self.worker_count} worker(s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the workers to stop after their current job and wait for them."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        still_running = [t.name for t in self._threads if t.is_alive()]
        if still_running:
            logger.warning(f"Workers still busy after stop: {', '.join(still_running)}")
        else:
            logger.info("Worker pool stopped")

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job_id = self.run_once(worker_id)
            except Exception:
                logger.exception(f"Worker {worker_id} failed to process a job")
                job_id = None
            if job_id is None:
                self._stop.wait(self.poll_interval)

    def run_until_idle(self, worker_id: Optional[str] = None, max_jobs: Optional[int] = None) -> int:
        """
        Process jobs in the calling thread until none is eligible.

        Returns:
            Number of jobs processed
        """
        worker_id = worker_id or self.worker_ids[0]
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if self.run_once(worker_id) is None:
                break
            processed += 1
        return processed

    def run_job(self, job_id: str, worker_id: Optional[str] = None) -> Job:
        """
        Work a single job in the calling thread until it is terminal.

        Other jobs are left alone. Retry backoff is waited out; a paused
        queue returns the job as it stands.
        """
        worker_id = worker_id or self.worker_ids[0]
        while True:
            job = self.queue.get(job_id)
            if job.is_terminal or self.queue.paused:
                return job
            if self.run_once(worker_id, job_id=job_id) is None:
                time.sleep(self.poll_interval)

    def run_once(self, worker_id: str, job_id: Optional[str] = None) -> Optional[str]:
        """
        Lease and execute at most one job.

        Returns:
            The processed job id, or None if nothing was eligible
        """
        job = self.queue.lease(worker_id, self.visibility_timeout, job_id=job_id)
        if job is None:
            return None
        self._execute(job, worker_id)
        return job.id

    def _execute(self, job: Job, worker_id: str) -> None:
        context = JobContext(self.queue, job, worker_id)

        try:
            handler = self.registry.get(job.type)
        except FatalError as e:
            logger.error(f"Job {job.id}: {e}")
            self._record_failure(job, worker_id, e)
            return

        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["output"] = handler.run(dict(job.input), context.progress, context.log)
            except Exception as e:
                outcome["error"] = e

        runner = threading.Thread(target=target, name=f"{worker_id}:{job.id}", daemon=True)
        runner.start()

        while True:
            runner.join(self.stall_check_interval)
            if not runner.is_alive():
                break
            if context.lost.is_set() or context.idle_seconds() > self.visibility_timeout:
                context.mark_lost()
                logger.warning(
                    describe_error(
                        LeaseLost(
                            job.id,
                            worker_id,
                            f"handler silent for more than {self.visibility_timeout:g}s; abandoned",
                        )
                    )
                )
                return

        if context.lost.is_set():
            logger.warning(f"Discarding result of job {job.id}: lease lost by {worker_id}")
            return

        error = outcome.get("error")
        if error is None:
            output = outcome.get("output")
            if output is not None and not isinstance(output, dict):
                error = FatalError(f"Handler returned {type(output).__name__}, expected a dict")
            else:
                self._record_completion(job, worker_id, output)
                return

        if isinstance(error, LeaseLost):
            logger.warning(f"Discarding work on job {job.id}: {error}")
            return
        if isinstance(error, Cancelled):
            logger.info(f"Job {job.id} stopped after cancellation")
        elif classify_error(error) == TRANSIENT:
            logger.warning(f"Job {job.id} hit a transient error: {describe_error(error)}")
        else:
            logger.error(f"Handler for job {job.id} crashed", exc_info=error)
        self._record_failure(job, worker_id, error)

    def _record_completion(self, job: Job, worker_id: str, output: Optional[dict[str, Any]]) -> None:
        try:
            self.queue.complete(job.id, worker_id, output)
        except LeaseLost as e:
            logger.warning(f"Could not complete job {job.id}: {e}")

    def _record_failure(self, job: Job, worker_id: str, error: BaseException) -> None:
        try:
            self.queue.fail(job.id, worker_id, error)
        except LeaseLost as e:
            logger.warning(f"Could not record failure of job {job.id}: {e}")
