"""Bank reconciliation service.

Exposes the reconciliation query API and the RECONCILIATION job handler:

- start: persists a PENDING reconciliation and enqueues a RECONCILIATION job
- the handler loads the period's transactions and ledger entries (inline in
  the job input, or from a data source), runs the matching engine and
  stores the match set
- status / results / list: organization-scoped reads
- a queue listener marks the reconciliation FAILED when its job fails

The handler is idempotent: re-running it for a COMPLETED reconciliation
returns the stored summary without touching the match set.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

from auditron_core.jobs.errors import FatalError, ValidationError
from auditron_core.jobs.queue import JobQueue, utcnow
from auditron_core.jobs.registry import HandlerRegistry, JobHandler, LogAppender, ProgressReporter
from auditron_core.matching.engine import InvalidPeriod, ReconciliationMatcher
from auditron_core.schemas.job import Job, JobStatus, JobType, format_timestamp
from auditron_core.schemas.reconciliation import (
    LedgerEntry,
    Period,
    Reconciliation,
    ReconciliationStatus,
    Transaction,
    parse_date,
)
from auditron_core.services.submission import check_page, paginate
from auditron_core.state_store.base import JobRecordStore

logger = logging.getLogger(__name__)


class ReconciliationNotFound(LookupError):
    """No reconciliation with this id exists for the organization."""

    pass


class ReconciliationDataSource(ABC):
    """Where the handler reads a period's records from when not inline."""

    @abstractmethod
    def fetch_transactions(self, organization_id: str, period: Period) -> list[Transaction]:
        pass

    @abstractmethod
    def fetch_ledger_entries(self, organization_id: str, period: Period) -> list[LedgerEntry]:
        pass


def parse_records(raw: list[dict], record_cls) -> list:
    """Parse raw transaction / ledger dicts, raising ValueError on bad rows."""
    records = []
    for i, item in enumerate(raw):
        try:
            records.append(record_cls.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"{record_cls.__name__} #{i} is invalid: {e}") from e
    return records


class ReconciliationHandler(JobHandler):
    """Runs the matching engine for one reconciliation record."""

    def __init__(
        self,
        store: JobRecordStore,
        matcher: ReconciliationMatcher,
        data_source: ReconciliationDataSource | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.matcher = matcher
        self.data_source = data_source
        self._clock = clock or utcnow

    @property
    def job_type(self) -> JobType:
        return JobType.RECONCILIATION

    def _now(self) -> str:
        return format_timestamp(self._clock())

    def run(
        self,
        payload: dict[str, Any],
        progress: ProgressReporter,
        log: LogAppender,
    ) -> dict[str, Any]:
        rec_id = payload.get("reconciliationId")
        if not rec_id:
            raise FatalError("Job input has no reconciliationId")
        rec = self.store.get_reconciliation(rec_id)
        if rec is None:
            raise FatalError(f"Reconciliation {rec_id} not found")

        if rec.status == ReconciliationStatus.COMPLETED:
            log(f"Reconciliation {rec.id} already completed; returning stored summary")
            return rec.summary()

        rec.status = ReconciliationStatus.IN_PROGRESS
        rec.error = None
        rec.updated_at = self._now()
        self.store.save_reconciliation(rec)
        progress(10)

        transactions, ledger_entries = self._load_records(rec, payload)
        log(
            f"Loaded {len(transactions)} transaction(s) and {len(ledger_entries)} "
            f"ledger entr{'y' if len(ledger_entries) == 1 else 'ies'}"
        )
        progress(40)

        result = self.matcher.match(transactions, ledger_entries, rec.period, created_at=self._now())
        log(
            f"Matched {result.total_matched}, unmatched {result.total_unmatched}, "
            f"{len(result.flags)} flag(s)"
        )
        progress(90)

        now = self._now()
        rec.apply_result(result)
        rec.status = ReconciliationStatus.COMPLETED
        rec.updated_at = now
        rec.completed_at = now
        self.store.save_reconciliation(rec)
        logger.info(
            f"Reconciliation {rec.id} completed: {rec.total_matched} matched, "
            f"{rec.total_unmatched} unmatched"
        )

        summary = rec.summary()
        summary["flags"] = len(rec.flags)
        return summary

    def _load_records(
        self,
        rec: Reconciliation,
        payload: dict[str, Any],
    ) -> tuple[list[Transaction], list[LedgerEntry]]:
        if "transactions" in payload or "ledgerEntries" in payload:
            try:
                return (
                    parse_records(payload.get("transactions") or [], Transaction),
                    parse_records(payload.get("ledgerEntries") or [], LedgerEntry),
                )
            except ValueError as e:
                raise FatalError(str(e)) from e

        if self.data_source is None:
            raise FatalError("No inline records and no reconciliation data source configured")
        return (
            self.data_source.fetch_transactions(rec.organization_id, rec.period),
            self.data_source.fetch_ledger_entries(rec.organization_id, rec.period),
        )


class ReconciliationService:
    """Reconciliation query API.

    Usage:
        service = ReconciliationService(store, queue, matcher)
        service.register_handler(registry)
        started = service.start_reconciliation("org-1", "March", "2024-03-01", "2024-03-31")
    """

    def __init__(
        self,
        store: JobRecordStore,
        queue: JobQueue,
        matcher: ReconciliationMatcher | None = None,
        data_source: ReconciliationDataSource | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.matcher = matcher or ReconciliationMatcher()
        self.data_source = data_source
        self.queue.add_listener(self._on_job_finished)

    def build_handler(self) -> ReconciliationHandler:
        return ReconciliationHandler(self.store, self.matcher, self.data_source, clock=self.queue.now)

    def register_handler(self, registry: HandlerRegistry) -> ReconciliationHandler:
        """Register the RECONCILIATION handler on a worker registry."""
        handler = self.build_handler()
        registry.register(handler, replace=True)
        return handler

    def start_reconciliation(
        self,
        organization_id: str,
        name: str,
        start_date: Any,
        end_date: Any,
        triggered_by: str | None = None,
        transactions: list[dict] | None = None,
        ledger_entries: list[dict] | None = None,
    ) -> dict[str, Any]:
        """Persist a PENDING reconciliation and enqueue its job.

        Args:
            organization_id: Owning tenant.
            name: Display name.
            start_date: Period start (ISO date or date).
            end_date: Period end, inclusive.
            triggered_by: Optional actor reference.
            transactions: Inline bank transactions (dicts); when omitted the
                data source is used.
            ledger_entries: Inline ledger entries (dicts).

        Returns:
            {"reconciliationId", "status", "jobId"}

        Raises:
            ValidationError: on missing name/organization or malformed input.
            InvalidPeriod: if start_date is after end_date.
        """
        if not organization_id:
            raise ValidationError("organizationId is required")
        if not name or not str(name).strip():
            raise ValidationError("name is required")
        try:
            period = Period(parse_date(start_date), parse_date(end_date))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if period.start_date > period.end_date:
            raise InvalidPeriod(
                f"startDate {period.start_date.isoformat()} is after "
                f"endDate {period.end_date.isoformat()}"
            )

        inline = transactions is not None or ledger_entries is not None
        if inline:
            try:
                parse_records(transactions or [], Transaction)
                parse_records(ledger_entries or [], LedgerEntry)
            except ValueError as e:
                raise ValidationError(str(e)) from e
        elif self.data_source is None:
            raise ValidationError("transactions and ledgerEntries are required")

        now = format_timestamp(self.queue.now())
        rec = Reconciliation(
            id=str(uuid.uuid4()),
            name=str(name).strip(),
            period=period,
            organization_id=organization_id,
            created_at=now,
            updated_at=now,
        )
        self.store.create_reconciliation(rec)

        job_input: dict[str, Any] = {"reconciliationId": rec.id, "period": period.to_dict()}
        if inline:
            job_input["transactions"] = list(transactions or [])
            job_input["ledgerEntries"] = list(ledger_entries or [])
        job = self.queue.submit(
            JobType.RECONCILIATION,
            input=job_input,
            organization_id=organization_id,
            triggered_by=triggered_by,
        )

        # A worker may already be running the job; only the link is written here
        self.store.set_reconciliation_job_id(rec.id, job.id)
        current = self.store.get_reconciliation(rec.id) or rec

        logger.info(f"Started reconciliation {rec.id} ({rec.name}) as job {job.id}")
        return {"reconciliationId": rec.id, "status": current.status.value, "jobId": job.id}

    def get(self, organization_id: str, reconciliation_id: str) -> Reconciliation:
        rec = self.store.get_reconciliation(reconciliation_id, organization_id)
        if rec is None:
            raise ReconciliationNotFound(f"Reconciliation {reconciliation_id} not found")
        return rec

    def get_status(self, organization_id: str, reconciliation_id: str) -> dict[str, Any]:
        """Status, counts and amounts."""
        return self.get(organization_id, reconciliation_id).to_status_dict()

    def get_results(self, organization_id: str, reconciliation_id: str) -> dict[str, Any]:
        """Full record including every Match."""
        return self.get(organization_id, reconciliation_id).to_dict()

    def list_reconciliations(
        self,
        organization_id: str,
        status: ReconciliationStatus | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Paginated reconciliations of an organization, newest first."""
        page_size, offset = check_page(page, limit)
        if status is not None and not isinstance(status, ReconciliationStatus):
            try:
                status = ReconciliationStatus(str(status).upper())
            except ValueError as e:
                raise ValidationError(f"Unknown status {status!r}") from e
        recs, total = self.store.list_reconciliations(
            organization_id, status=status, limit=page_size, offset=offset
        )
        return paginate([r.to_status_dict() for r in recs], total, page, page_size)

    def _on_job_finished(self, job: Job) -> None:
        if job.type != JobType.RECONCILIATION or job.status != JobStatus.FAILED:
            return
        rec_id = (job.input or {}).get("reconciliationId")
        rec = self.store.get_reconciliation(rec_id) if rec_id else None
        if rec is None or rec.is_terminal:
            return
        now = format_timestamp(self.queue.now())
        rec.status = ReconciliationStatus.FAILED
        rec.error = job.error
        rec.updated_at = now
        rec.completed_at = now
        self.store.save_reconciliation(rec)
        logger.warning(f"Reconciliation {rec.id} failed: {job.error}")
