"""Tests for the reconciliation service and its job handler."""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import pytest

from auditron_core.jobs import (
    HandlerRegistry,
    JobQueue,
    RetryPolicy,
    TransientError,
    ValidationError,
    WorkerPool,
)
from auditron_core.jobs.errors import FatalError
from auditron_core.matching import InvalidPeriod
from auditron_core.schemas.job import JobStatus, JobType
from auditron_core.schemas.reconciliation import Period, ReconciliationStatus
from auditron_core.services import (
    ReconciliationDataSource,
    ReconciliationNotFound,
    ReconciliationService,
)
from auditron_core.state_store import SQLiteJobStore
from conftest import ORG, OTHER_ORG, FakeClock, make_entry, make_transaction

TRANSACTIONS = [
    {"id": "t1", "amount": "100.00", "transactionDate": "2024-03-05", "description": "Acme Corp"},
    {
        "id": "t2",
        "amount": "100.00",
        "transactionDate": "2024-03-10",
        "description": "Payment to Acme Corp",
        "reference": "INV-1001",
    },
    {"id": "t3", "amount": "-42.50", "transactionDate": "2024-03-20", "description": "Card fee"},
]

LEDGER_ENTRIES = [
    {"id": "l1", "amount": "100.00", "entryDate": "2024-03-06", "description": "Acme Corp"},
    {
        "id": "l2",
        "amount": "95.00",
        "entryDate": "2024-03-11",
        "description": "Acme Corp payment",
        "reference": "INV-1001",
    },
    {"id": "l3", "amount": "500.00", "entryDate": "2024-03-28", "description": "Unrelated"},
]


class StaticDataSource(ReconciliationDataSource):
    """Serves fixed records, optionally failing the first few calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    def fetch_transactions(self, organization_id, period):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientError("bank feed unavailable")
        return [make_transaction("t1", "250.00", date(2024, 3, 4), "Office rent")]

    def fetch_ledger_entries(self, organization_id, period):
        return [make_entry("l1", "250.00", date(2024, 3, 4), "Office rent")]


@pytest.fixture
def fast_queue(store, clock) -> JobQueue:
    return JobQueue(
        store,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0),
        clock=clock,
    )


def build(queue: JobQueue, data_source=None) -> tuple[ReconciliationService, WorkerPool]:
    service = ReconciliationService(queue.store, queue, data_source=data_source)
    registry = HandlerRegistry()
    service.register_handler(registry)
    return service, WorkerPool(queue, registry, worker_count=1)


class TestStartReconciliation:
    """Validation and enqueueing."""

    def test_start_returns_pending_and_job(self, queue):
        service, _ = build(queue)

        started = service.start_reconciliation(
            ORG, "March statement", "2024-03-01", "2024-03-31",
            transactions=TRANSACTIONS, ledger_entries=LEDGER_ENTRIES,
        )

        assert started["status"] == "PENDING"
        job = queue.get(started["jobId"], ORG)
        assert job.type == JobType.RECONCILIATION
        assert job.status == JobStatus.QUEUED
        assert job.input["reconciliationId"] == started["reconciliationId"]
        assert job.input["period"] == {"startDate": "2024-03-01", "endDate": "2024-03-31"}

        rec = service.get(ORG, started["reconciliationId"])
        assert rec.job_id == started["jobId"]
        assert rec.period == Period(date(2024, 3, 1), date(2024, 3, 31))

    def test_start_after_end_rejected(self, queue):
        service, _ = build(queue)

        with pytest.raises(InvalidPeriod):
            service.start_reconciliation(ORG, "Backwards", "2024-03-31", "2024-03-01", transactions=[])

        assert queue.stats(ORG)["queued"] == 0

    @pytest.mark.parametrize(
        "org,name,start",
        [("", "March", "2024-03-01"), (ORG, "  ", "2024-03-01"), (ORG, "March", "not-a-date")],
    )
    def test_missing_fields_rejected(self, queue, org, name, start):
        service, _ = build(queue)

        with pytest.raises(ValidationError):
            service.start_reconciliation(org, name, start, "2024-03-31", transactions=[])

    def test_malformed_records_rejected(self, queue):
        service, _ = build(queue)

        with pytest.raises(ValidationError, match="Transaction #0"):
            service.start_reconciliation(
                ORG, "March", "2024-03-01", "2024-03-31",
                transactions=[{"id": "t1", "amount": "lots", "transactionDate": "2024-03-02"}],
            )

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity", float("nan")])
    def test_non_finite_amounts_rejected(self, queue, amount):
        service, _ = build(queue)

        with pytest.raises(ValidationError, match="Transaction #0"):
            service.start_reconciliation(
                ORG, "March", "2024-03-01", "2024-03-31",
                transactions=[{"id": "t1", "amount": amount, "transactionDate": "2024-03-02"}],
            )
        with pytest.raises(ValidationError, match="LedgerEntry #0"):
            service.start_reconciliation(
                ORG, "March", "2024-03-01", "2024-03-31",
                transactions=[],
                ledger_entries=[{"id": "l1", "amount": amount, "entryDate": "2024-03-02"}],
            )

        assert queue.stats(ORG)["queued"] == 0

    def test_records_required_without_data_source(self, queue):
        service, _ = build(queue)

        with pytest.raises(ValidationError):
            service.start_reconciliation(ORG, "March", "2024-03-01", "2024-03-31")


class TestReconciliationJob:
    """End to end through the worker."""

    def test_job_completes_reconciliation(self, queue):
        service, pool = build(queue)
        started = service.start_reconciliation(
            ORG, "March statement", "2024-03-01", "2024-03-31",
            transactions=TRANSACTIONS, ledger_entries=LEDGER_ENTRIES,
        )

        pool.run_until_idle()

        job = queue.get(started["jobId"])
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 90
        assert job.output["reconciliationId"] == started["reconciliationId"]
        assert job.output["totalMatched"] == 2
        assert job.output["flags"] == 0

        status = service.get_status(ORG, started["reconciliationId"])
        assert status["status"] == "COMPLETED"
        assert status["totalMatched"] == 2
        assert status["totalUnmatched"] == 1
        assert status["matchedAmount"] == "200.00"
        assert status["unmatchedAmount"] == "42.50"
        assert status["completedAt"] is not None

        results = service.get_results(ORG, started["reconciliationId"])
        by_txn = {m["transactionId"]: m for m in results["matches"]}
        assert by_txn["t1"]["matchType"] == "EXACT"
        assert by_txn["t2"]["matchType"] == "FUZZY"
        assert by_txn["t3"]["matchType"] == "UNMATCHED"
        assert results["unmatchedLedgerEntryIds"] == ["l3"]

    def test_job_log_tells_the_story(self, queue):
        service, pool = build(queue)
        started = service.start_reconciliation(
            ORG, "March", "2024-03-01", "2024-03-31",
            transactions=TRANSACTIONS, ledger_entries=LEDGER_ENTRIES,
        )

        pool.run_until_idle()

        log = [entry.message for entry in queue.get(started["jobId"]).logs]
        assert "Loaded 3 transaction(s) and 3 ledger entries" in log
        assert "Matched 2, unmatched 1, 0 flag(s)" in log

    def test_rerun_is_idempotent(self, queue):
        service, pool = build(queue)
        started = service.start_reconciliation(
            ORG, "March", "2024-03-01", "2024-03-31",
            transactions=TRANSACTIONS, ledger_entries=LEDGER_ENTRIES,
        )
        pool.run_until_idle()
        before = service.get_results(ORG, started["reconciliationId"])

        handler = service.build_handler()
        lines = []
        output = handler.run(
            {"reconciliationId": started["reconciliationId"]},
            lambda value: None,
            lines.append,
        )

        assert output["totalMatched"] == 2
        assert service.get_results(ORG, started["reconciliationId"]) == before
        assert "already completed" in lines[0]

    def test_job_finished_before_link_keeps_result(self, queue, monkeypatch):
        service, pool = build(queue)
        submit = queue.submit

        def submit_and_work(*args, **kwargs):
            job = submit(*args, **kwargs)
            assert pool.run_once("worker-1") == job.id
            return job

        monkeypatch.setattr(queue, "submit", submit_and_work)

        started = service.start_reconciliation(
            ORG, "March", "2024-03-01", "2024-03-31",
            transactions=TRANSACTIONS[:1], ledger_entries=LEDGER_ENTRIES[:1],
        )

        assert queue.get(started["jobId"]).status == JobStatus.COMPLETED
        assert started["status"] == "COMPLETED"
        rec = service.get(ORG, started["reconciliationId"])
        assert rec.status == ReconciliationStatus.COMPLETED
        assert rec.job_id == started["jobId"]
        assert rec.total_matched == 1
        assert [m.match_type.value for m in rec.matches] == ["EXACT"]

    def test_data_source_is_used(self, queue):
        source = StaticDataSource()
        service, pool = build(queue, data_source=source)
        started = service.start_reconciliation(ORG, "March", "2024-03-01", "2024-03-31")

        pool.run_until_idle()

        status = service.get_status(ORG, started["reconciliationId"])
        assert status["status"] == "COMPLETED"
        assert status["totalMatched"] == 1
        assert source.calls == 1

    def test_data_source_receives_org_and_period(self, queue):
        source = MagicMock(spec=ReconciliationDataSource)
        source.fetch_transactions.return_value = [
            make_transaction("t1", "80.00", date(2024, 3, 2), "Stationery")
        ]
        source.fetch_ledger_entries.return_value = []
        service, pool = build(queue, data_source=source)
        started = service.start_reconciliation(ORG, "March", "2024-03-01", "2024-03-31")

        pool.run_until_idle()

        march = Period(date(2024, 3, 1), date(2024, 3, 31))
        source.fetch_transactions.assert_called_once_with(ORG, march)
        source.fetch_ledger_entries.assert_called_once_with(ORG, march)
        assert service.get_status(ORG, started["reconciliationId"])["totalUnmatched"] == 1

    def test_transient_source_failure_is_retried(self, fast_queue):
        source = StaticDataSource(failures=1)
        service, pool = build(fast_queue, data_source=source)
        started = service.start_reconciliation(ORG, "March", "2024-03-01", "2024-03-31")

        assert pool.run_until_idle() == 2

        assert fast_queue.get(started["jobId"]).attempts == 2
        assert service.get_status(ORG, started["reconciliationId"])["status"] == "COMPLETED"

    def test_exhausted_retries_fail_reconciliation(self, fast_queue):
        source = StaticDataSource(failures=10)
        service, pool = build(fast_queue, data_source=source)
        started = service.start_reconciliation(ORG, "March", "2024-03-01", "2024-03-31")

        pool.run_until_idle()

        job = fast_queue.get(started["jobId"])
        assert job.status == JobStatus.FAILED
        assert job.dead_lettered
        status = service.get_status(ORG, started["reconciliationId"])
        assert status["status"] == "FAILED"
        assert status["error"] == "TransientError: bank feed unavailable"

    def test_cancelled_job_fails_reconciliation(self, queue):
        service, _ = build(queue)
        started = service.start_reconciliation(
            ORG, "March", "2024-03-01", "2024-03-31", transactions=TRANSACTIONS
        )

        queue.cancel(started["jobId"], ORG)

        status = service.get_status(ORG, started["reconciliationId"])
        assert status["status"] == "FAILED"
        assert status["error"].startswith("Cancelled:")

    def test_unknown_reconciliation_is_fatal(self, queue):
        service, _ = build(queue)

        with pytest.raises(FatalError):
            service.build_handler().run({"reconciliationId": "nope"}, lambda v: None, lambda m: None)
        with pytest.raises(FatalError):
            service.build_handler().run({}, lambda v: None, lambda m: None)


class TestQueries:
    """Organization-scoped reads."""

    def test_other_org_cannot_see(self, queue):
        service, _ = build(queue)
        started = service.start_reconciliation(
            ORG, "March", "2024-03-01", "2024-03-31", transactions=TRANSACTIONS
        )

        with pytest.raises(ReconciliationNotFound):
            service.get_status(OTHER_ORG, started["reconciliationId"])
        with pytest.raises(ReconciliationNotFound):
            service.get_results(ORG, "missing")

    def test_list_newest_first(self, queue, clock):
        service, _ = build(queue)
        first = service.start_reconciliation(ORG, "January", "2024-01-01", "2024-01-31", transactions=[])
        clock.advance(60)
        second = service.start_reconciliation(ORG, "February", "2024-02-01", "2024-02-29", transactions=[])
        service.start_reconciliation(OTHER_ORG, "Theirs", "2024-02-01", "2024-02-29", transactions=[])

        listing = service.list_reconciliations(ORG)

        assert [r["id"] for r in listing["data"]] == [
            second["reconciliationId"],
            first["reconciliationId"],
        ]
        assert listing["pagination"] == {"page": 1, "limit": 20, "total": 2, "totalPages": 1}

    def test_list_by_status(self, queue):
        service, pool = build(queue)
        service.start_reconciliation(ORG, "March", "2024-03-01", "2024-03-31", transactions=[])
        pool.run_until_idle()
        service.start_reconciliation(ORG, "April", "2024-04-01", "2024-04-30", transactions=[])

        done = service.list_reconciliations(ORG, status="completed")
        pending = service.list_reconciliations(ORG, status=ReconciliationStatus.PENDING)

        assert [r["name"] for r in done["data"]] == ["March"]
        assert [r["name"] for r in pending["data"]] == ["April"]
        with pytest.raises(ValidationError):
            service.list_reconciliations(ORG, status="bogus")


def test_sqlite_end_to_end(temp_db):
    """Start, work and query against a file-backed store."""
    queue = JobQueue(SQLiteJobStore(temp_db), clock=FakeClock())
    service, pool = build(queue)
    started = service.start_reconciliation(
        ORG, "March", "2024-03-01", "2024-03-31",
        transactions=TRANSACTIONS, ledger_entries=LEDGER_ENTRIES,
    )

    pool.run_until_idle()

    reopened = ReconciliationService(SQLiteJobStore(temp_db), queue)
    results = reopened.get_results(ORG, started["reconciliationId"])
    assert results["status"] == "COMPLETED"
    assert len(results["matches"]) == 3
    assert results["averageConfidence"] == pytest.approx((1.0 + 0.7247) / 2, abs=1e-4)
