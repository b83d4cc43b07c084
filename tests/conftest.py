"""Test fixtures and utilities."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from auditron_core.jobs import HandlerRegistry, JobQueue, RetryPolicy
from auditron_core.schemas.reconciliation import Direction, LedgerEntry, Transaction
from auditron_core.state_store import InMemoryJobStore, SQLiteJobStore

ORG = "org-acme"
OTHER_ORG = "org-globex"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_transaction(
    txn_id: str,
    amount: str,
    day: date,
    description: str = "",
    reference: str = "",
    direction: Direction = Direction.CREDIT,
    currency: str = "INR",
) -> Transaction:
    return Transaction(
        id=txn_id,
        amount=Decimal(amount),
        date=day,
        direction=direction,
        description=description,
        reference=reference,
        currency=currency,
    )


def make_entry(
    entry_id: str,
    amount: str,
    day: date,
    description: str = "",
    reference: str = "",
    direction: Direction = Direction.CREDIT,
    currency: str = "INR",
) -> LedgerEntry:
    return LedgerEntry(
        id=entry_id,
        amount=Decimal(amount),
        date=day,
        direction=direction,
        description=description,
        reference=reference,
        currency=currency,
    )


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_jobs.db"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def sqlite_store(temp_db) -> SQLiteJobStore:
    return SQLiteJobStore(temp_db)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, temp_db):
    """Each store backend in turn."""
    if request.param == "memory":
        return InMemoryJobStore()
    return SQLiteJobStore(temp_db)


@pytest.fixture
def queue(store, clock) -> JobQueue:
    """Queue with 3 attempts, 2s base backoff and a 30s visibility timeout."""
    return JobQueue(
        store,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=2, max_delay_seconds=60),
        visibility_timeout=30,
        clock=clock,
    )


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()
