"""Tests for the worker pool."""

import threading
import time

import pytest

from auditron_core.config import Config
from auditron_core.jobs import (
    CapabilityHandler,
    HandlerRegistry,
    JobQueue,
    RetryPolicy,
    TransientError,
    WorkerPool,
)
from auditron_core.jobs.errors import FatalError
from auditron_core.schemas.job import JobStatus, JobType
from auditron_core.state_store import InMemoryJobStore
from conftest import ORG


@pytest.fixture
def fast_queue(store, clock) -> JobQueue:
    """Queue whose retries become eligible immediately."""
    return JobQueue(
        store,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0),
        visibility_timeout=30,
        clock=clock,
    )


def messages(job) -> list[str]:
    return [entry.message for entry in job.logs]


class TestRunOnce:
    """Single lease-and-execute cycles."""

    def test_completes_job(self, queue, registry):
        def ocr(payload, progress, log):
            progress(25)
            log(f"Reading {payload['documentId']}")
            progress(100)
            return {"pages": 2}

        registry.register_function(JobType.OCR, ocr)
        job = queue.submit(JobType.OCR, {"documentId": "doc-1"}, organization_id=ORG)
        pool = WorkerPool(queue, registry, worker_count=1)

        assert pool.run_once("worker-1") == job.id

        done = queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.output == {"pages": 2}
        assert done.progress == 100
        assert done.lease_owner is None
        assert "Reading doc-1" in messages(done)
        assert "Job completed by worker-1" in messages(done)

    def test_nothing_to_do(self, queue, registry):
        assert WorkerPool(queue, registry).run_once("worker-1") is None

    def test_paused_queue_is_not_leased(self, queue, registry):
        registry.register_function(JobType.OCR, lambda payload, progress, log: {})
        queue.submit(JobType.OCR, organization_id=ORG)
        pool = WorkerPool(queue, registry)

        queue.pause()
        assert pool.run_once("worker-1") is None
        queue.resume()
        assert pool.run_once("worker-1") is not None

    def test_missing_handler_fails_without_retry(self, queue, registry):
        job = queue.submit(JobType.COMPLIANCE, organization_id=ORG)

        WorkerPool(queue, registry).run_once("worker-1")

        failed = queue.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error.startswith("FatalError: No handler registered")
        assert failed.attempts == 1
        assert not failed.dead_lettered

    def test_handler_crash_is_fatal(self, queue, registry):
        def broken(payload, progress, log):
            raise KeyError("documentId")

        registry.register_function(JobType.OCR, broken)
        job = queue.submit(JobType.OCR, organization_id=ORG)

        WorkerPool(queue, registry).run_once("worker-1")

        failed = queue.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error.startswith("KeyError")
        assert failed.output is None

    def test_non_dict_output_fails(self, queue, registry):
        registry.register_function(JobType.REPORTING, lambda payload, progress, log: "done")
        job = queue.submit(JobType.REPORTING, organization_id=ORG)

        WorkerPool(queue, registry).run_once("worker-1")

        failed = queue.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "FatalError: Handler returned str, expected a dict"

    def test_none_output_completes_with_empty_dict(self, queue, registry):
        registry.register_function(JobType.REPORTING, lambda payload, progress, log: None)
        job = queue.submit(JobType.REPORTING, organization_id=ORG)

        WorkerPool(queue, registry).run_once("worker-1")

        assert queue.get(job.id).output == {}

    def test_invalid_progress_is_ignored(self, queue, registry):
        def wobbly(payload, progress, log):
            progress(50)
            progress(10)
            progress(150)
            return {"ok": True}

        registry.register_function(JobType.CATEGORIZATION, wobbly)
        job = queue.submit(JobType.CATEGORIZATION, organization_id=ORG)

        WorkerPool(queue, registry).run_once("worker-1")

        done = queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 50

    def test_handler_sees_a_copy_of_the_input(self, queue, registry):
        def mutating(payload, progress, log):
            payload["extra"] = True
            return {}

        registry.register_function(JobType.OCR, mutating)
        job = queue.submit(JobType.OCR, {"documentId": "doc-1"}, organization_id=ORG)

        WorkerPool(queue, registry).run_once("worker-1")

        assert queue.get(job.id).input == {"documentId": "doc-1"}


    def test_run_job_works_only_that_job(self, fast_queue, registry):
        calls = []

        def flaky(payload, progress, log):
            calls.append(payload["n"])
            if len(calls) == 1:
                raise TransientError("bank feed timed out")
            return {"n": payload["n"]}

        registry.register_function(JobType.OCR, flaky)
        other = fast_queue.submit(JobType.OCR, {"n": 1}, organization_id=ORG, priority=10)
        mine = fast_queue.submit(JobType.OCR, {"n": 2}, organization_id=ORG)

        done = WorkerPool(fast_queue, registry, poll_interval=0.01).run_job(mine.id)

        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 2
        assert calls == [2, 2]
        assert fast_queue.get(other.id).status == JobStatus.QUEUED

    def test_run_job_on_paused_queue_returns_as_is(self, queue, registry):
        job = queue.submit(JobType.OCR, organization_id=ORG)
        queue.pause()

        assert WorkerPool(queue, registry).run_job(job.id).status == JobStatus.QUEUED


class TestRetries:
    """TRANSIENT failures and the dead-letter path."""

    def test_transient_then_success(self, fast_queue, registry):
        calls = []

        def flaky(payload, progress, log):
            calls.append(1)
            if len(calls) == 1:
                raise TransientError("bank feed timed out")
            return {"ok": True}

        registry.register_function(JobType.RECONCILIATION, flaky)
        job = fast_queue.submit(JobType.RECONCILIATION, organization_id=ORG)

        processed = WorkerPool(fast_queue, registry).run_until_idle()

        done = fast_queue.get(job.id)
        assert processed == 2
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 2
        assert (
            "Attempt 1/3 failed (TRANSIENT): TransientError: bank feed timed out; retrying in 0s"
            in messages(done)
        )

    def test_exhausted_retries_dead_letter(self, fast_queue, registry):
        def down(payload, progress, log):
            raise ConnectionError("bank feed down")

        registry.register_function(JobType.OCR, down)
        job = fast_queue.submit(JobType.OCR, organization_id=ORG)

        processed = WorkerPool(fast_queue, registry).run_until_idle()

        failed = fast_queue.get(job.id)
        assert processed == 3
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 3
        assert failed.dead_lettered
        assert failed.error == "ConnectionError: bank feed down"
        assert "Attempt 3/3 failed (TRANSIENT): ConnectionError: bank feed down" in messages(failed)

        dead, total = fast_queue.list_dead_letter(ORG)
        assert total == 1
        assert dead[0].id == job.id

    def test_backoff_delays_retry(self, queue, registry, clock):
        def down(payload, progress, log):
            raise TransientError("try later")

        registry.register_function(JobType.OCR, down)
        job = queue.submit(JobType.OCR, organization_id=ORG)
        pool = WorkerPool(queue, registry)

        assert pool.run_until_idle() == 1
        assert queue.get(job.id).status == JobStatus.QUEUED

        clock.advance(1)
        assert pool.run_once("worker-1") is None
        clock.advance(1)
        assert pool.run_once("worker-1") == job.id
        assert queue.get(job.id).attempts == 2

    def test_max_jobs_bound(self, fast_queue, registry):
        registry.register_function(JobType.OCR, lambda payload, progress, log: {})
        for _ in range(3):
            fast_queue.submit(JobType.OCR, organization_id=ORG)

        assert WorkerPool(fast_queue, registry).run_until_idle(max_jobs=2) == 2


class TestCancellation:
    """Cooperative cancellation at progress checkpoints."""

    def test_running_job_stops_at_next_progress(self, queue, registry):
        submitted = {}
        reached = []

        def long_report(payload, progress, log):
            progress(10)
            queue.cancel(submitted["id"], ORG)
            progress(20)
            reached.append("after cancel")
            return {"ok": True}

        registry.register_function(JobType.REPORTING, long_report)
        submitted["id"] = queue.submit(JobType.REPORTING, organization_id=ORG).id

        WorkerPool(queue, registry).run_once("worker-1")

        failed = queue.get(submitted["id"])
        assert reached == []
        assert failed.status == JobStatus.FAILED
        assert failed.error.startswith("Cancelled:")
        assert failed.progress == 20
        assert not failed.dead_lettered

    def test_cancelled_before_lease_never_runs(self, queue, registry):
        ran = []
        registry.register_function(JobType.OCR, lambda payload, progress, log: ran.append(1))
        job = queue.submit(JobType.OCR, organization_id=ORG)

        queue.cancel(job.id, ORG)

        assert WorkerPool(queue, registry).run_once("worker-1") is None
        assert ran == []
        assert queue.get(job.id).status == JobStatus.FAILED


class TestStalls:
    """A silent handler is abandoned and its late result discarded."""

    def test_stalled_handler_is_abandoned(self):
        queue = JobQueue(InMemoryJobStore(), visibility_timeout=0.2)
        registry = HandlerRegistry()
        release = threading.Event()
        calls = []

        def sometimes_stuck(payload, progress, log):
            calls.append(1)
            if len(calls) == 1:
                release.wait(5)
                return {"stale": True}
            return {"fresh": True}

        registry.register(CapabilityHandler(JobType.OCR, sometimes_stuck))
        job = queue.submit(JobType.OCR, organization_id=ORG)
        pool = WorkerPool(queue, registry, worker_count=2, stall_check_interval=0.02)

        assert pool.run_once("worker-1") == job.id
        assert queue.get(job.id).status == JobStatus.RUNNING

        time.sleep(0.05)
        assert pool.run_once("worker-2") == job.id
        release.set()

        done = queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.output == {"fresh": True}
        assert done.attempts == 2

    def test_progress_keeps_handler_alive(self):
        queue = JobQueue(InMemoryJobStore(), visibility_timeout=0.2)
        registry = HandlerRegistry()

        def slow_but_chatty(payload, progress, log):
            for step in range(1, 6):
                time.sleep(0.08)
                progress(step * 20)
            return {"steps": 5}

        registry.register_function(JobType.OCR, slow_but_chatty)
        job = queue.submit(JobType.OCR, organization_id=ORG)

        WorkerPool(queue, registry, stall_check_interval=0.02).run_once("worker-1")

        done = queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 1


class TestPool:
    """Thread lifecycle."""

    def test_worker_ids(self, queue, registry):
        pool = WorkerPool(queue, registry, worker_count=3, name="recon")
        assert pool.worker_ids == ["recon-1", "recon-2", "recon-3"]

    def test_rejects_empty_pool(self, queue, registry):
        with pytest.raises(ValueError):
            WorkerPool(queue, registry, worker_count=0)

    def test_from_config(self, queue, registry):
        config = Config()
        config.workers.count = 2
        config.queue.visibility_timeout_seconds = 12

        pool = WorkerPool.from_config(queue, registry, config)

        assert pool.worker_count == 2
        assert pool.visibility_timeout == 12

    def test_start_and_stop(self, queue, registry):
        seen = []
        lock = threading.Lock()

        def categorize(payload, progress, log):
            with lock:
                seen.append(payload["n"])
            return {"category": "travel"}

        registry.register_function(JobType.CATEGORIZATION, categorize)
        ids = [
            queue.submit(JobType.CATEGORIZATION, {"n": n}, organization_id=ORG).id
            for n in range(6)
        ]
        pool = WorkerPool(queue, registry, worker_count=3, poll_interval=0.01)

        pool.start()
        with pytest.raises(RuntimeError):
            pool.start()
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if all(queue.get(job_id).is_terminal for job_id in ids):
                break
            time.sleep(0.01)
        pool.stop(timeout=5)

        assert not pool.running
        assert sorted(seen) == list(range(6))
        assert all(queue.get(job_id).status == JobStatus.COMPLETED for job_id in ids)

    def test_registry_rejects_duplicates(self):
        registry = HandlerRegistry()
        registry.register_function(JobType.OCR, lambda payload, progress, log: {})

        with pytest.raises(ValueError):
            registry.register_function(JobType.OCR, lambda payload, progress, log: {})
        registry.register_function(JobType.OCR, lambda payload, progress, log: {"v": 2}, replace=True)

        assert JobType.OCR in registry
        assert registry.job_types == [JobType.OCR]
        with pytest.raises(FatalError):
            registry.get(JobType.REPORTING)
