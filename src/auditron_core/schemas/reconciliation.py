"""
Reconciliation data contracts.

Bank transactions and ledger entries are the two inputs of the matching
engine; Match and Reconciliation are its outputs and the persisted,
query-able record of a reconciliation run.

Amounts are stored as positive Decimal magnitudes. The sign lives in
`direction`, seen from the bank account: DEBIT is money out, CREDIT is
money in. Both sides of a reconciliation use the same convention.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

# Minor-unit exponent per ISO currency; anything not listed uses 2
CURRENCY_MINOR_UNITS = {
    "BHD": 3,
    "CLP": 0,
    "IQD": 3,
    "JPY": 0,
    "JOD": 3,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "VND": 0,
}

DEFAULT_CURRENCY = "INR"


class Direction(str, Enum):
    """Money flow relative to the bank account."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class MatchType(str, Enum):
    """How a transaction was paired."""

    EXACT = "EXACT"
    FUZZY = "FUZZY"
    MANUAL = "MANUAL"
    UNMATCHED = "UNMATCHED"


class ReconciliationStatus(str, Enum):
    """Status of a reconciliation record."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round an amount to the currency's minor unit."""
    exponent = CURRENCY_MINOR_UNITS.get(currency.upper(), 2)
    return amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal:
    """Parse an amount to Decimal, raising ValueError on garbage or NaN/Infinity."""
    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, str):
            cleaned = value.replace(",", "").replace("$", "").replace("₹", "").strip()
            amount = Decimal(cleaned)
        else:
            amount = Decimal(str(value))
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


def parse_date(value: Any) -> date:
    """Parse an ISO date (or datetime) string to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid date: {value!r}")
    try:
        return date.fromisoformat(value[:10])
    except ValueError as e:
        raise ValueError(f"Invalid date: {value!r}") from e


@dataclass(frozen=True)
class Period:
    """Inclusive date range of a reconciliation."""

    start_date: date
    end_date: date

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def to_dict(self) -> dict[str, str]:
        return {"startDate": self.start_date.isoformat(), "endDate": self.end_date.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "Period":
        return cls(
            start_date=parse_date(data.get("startDate") or data.get("start_date")),
            end_date=parse_date(data.get("endDate") or data.get("end_date")),
        )


def _direction_and_magnitude(data: dict, amount: Decimal) -> tuple[Direction, Decimal]:
    raw = data.get("direction") or data.get("type")
    if raw:
        return Direction(str(raw).upper()), abs(amount)
    return (Direction.DEBIT if amount < 0 else Direction.CREDIT), abs(amount)


@dataclass
class Transaction:
    """A bank statement line."""

    id: str
    amount: Decimal
    date: date
    direction: Direction = Direction.CREDIT
    description: str = ""
    reference: str = ""
    currency: str = DEFAULT_CURRENCY

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.direction == Direction.DEBIT else self.amount

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        """Build from an API/store payload (camelCase or snake_case keys)."""
        amount = parse_amount(data["amount"])
        direction, magnitude = _direction_and_magnitude(data, amount)
        return cls(
            id=str(data["id"]),
            amount=magnitude,
            date=parse_date(data.get("transactionDate") or data.get("date")),
            direction=direction,
            description=data.get("description") or "",
            reference=data.get("reference") or data.get("referenceNumber") or "",
            currency=(data.get("currency") or DEFAULT_CURRENCY).upper(),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "date": self.date.isoformat(),
            "direction": self.direction.value,
            "description": self.description,
            "reference": self.reference,
            "currency": self.currency,
        }


@dataclass
class LedgerEntry:
    """A book-keeping entry against the bank account."""

    id: str
    amount: Decimal
    date: date
    direction: Direction = Direction.CREDIT
    description: str = ""
    reference: str = ""
    currency: str = DEFAULT_CURRENCY

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.direction == Direction.DEBIT else self.amount

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        """Build from an API/store payload (camelCase or snake_case keys)."""
        amount = parse_amount(data["amount"])
        direction, magnitude = _direction_and_magnitude(data, amount)
        return cls(
            id=str(data["id"]),
            amount=magnitude,
            date=parse_date(data.get("entryDate") or data.get("date")),
            direction=direction,
            description=data.get("description") or "",
            reference=data.get("reference") or data.get("referenceNumber") or "",
            currency=(data.get("currency") or DEFAULT_CURRENCY).upper(),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "date": self.date.isoformat(),
            "direction": self.direction.value,
            "description": self.description,
            "reference": self.reference,
            "currency": self.currency,
        }


@dataclass
class Match:
    """Pairing (or explicit non-pairing) of one bank transaction."""

    transaction_id: str
    ledger_entry_id: Optional[str]
    match_type: MatchType
    match_score: float
    amount: Decimal
    created_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "ledgerEntryId": self.ledger_entry_id,
            "matchType": self.match_type.value,
            "matchScore": self.match_score,
            "amount": str(self.amount),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Match":
        return cls(
            transaction_id=data["transactionId"],
            ledger_entry_id=data.get("ledgerEntryId"),
            match_type=MatchType(data["matchType"]),
            match_score=float(data["matchScore"]),
            amount=Decimal(data["amount"]),
            created_at=data.get("createdAt"),
        )


@dataclass
class MatchFlag:
    """Reviewer hint attached to a reconciliation result."""

    severity: str  # INFO, WARNING, ERROR
    category: str
    message: str
    transaction_id: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    score: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
            "transactionId": self.transaction_id,
            "ledgerEntryId": self.ledger_entry_id,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MatchFlag":
        return cls(
            severity=data["severity"],
            category=data["category"],
            message=data["message"],
            transaction_id=data.get("transactionId"),
            ledger_entry_id=data.get("ledgerEntryId"),
            score=data.get("score"),
        )


@dataclass
class ReconciliationResult:
    """Output of one matching run, before it is attached to a record."""

    period: Period
    matches: list[Match] = field(default_factory=list)
    total_matched: int = 0
    total_unmatched: int = 0
    matched_amount: Decimal = Decimal("0")
    unmatched_amount: Decimal = Decimal("0")
    average_confidence: float = 0.0
    unmatched_ledger_entry_ids: list[str] = field(default_factory=list)
    flags: list[MatchFlag] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "totalMatched": self.total_matched,
            "totalUnmatched": self.total_unmatched,
            "matchedAmount": str(self.matched_amount),
            "unmatchedAmount": str(self.unmatched_amount),
            "averageConfidence": self.average_confidence,
            "matches": [m.to_dict() for m in self.matches],
            "unmatchedLedgerEntryIds": list(self.unmatched_ledger_entry_ids),
            "flags": [f.to_dict() for f in self.flags],
        }


@dataclass
class Reconciliation:
    """Persisted reconciliation record, owned by an organization."""

    id: str
    name: str
    period: Period
    organization_id: str
    created_at: str
    status: ReconciliationStatus = ReconciliationStatus.PENDING
    job_id: Optional[str] = None
    total_matched: int = 0
    total_unmatched: int = 0
    matched_amount: Decimal = Decimal("0")
    unmatched_amount: Decimal = Decimal("0")
    average_confidence: float = 0.0
    matches: list[Match] = field(default_factory=list)
    unmatched_ledger_entry_ids: list[str] = field(default_factory=list)
    flags: list[MatchFlag] = field(default_factory=list)
    error: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ReconciliationStatus.COMPLETED, ReconciliationStatus.FAILED)

    def apply_result(self, result: ReconciliationResult) -> None:
        """Copy a matching result onto this record."""
        self.matches = list(result.matches)
        self.total_matched = result.total_matched
        self.total_unmatched = result.total_unmatched
        self.matched_amount = result.matched_amount
        self.unmatched_amount = result.unmatched_amount
        self.average_confidence = result.average_confidence
        self.unmatched_ledger_entry_ids = list(result.unmatched_ledger_entry_ids)
        self.flags = list(result.flags)

    def summary(self) -> dict[str, Any]:
        """Totals shared by the status projection and the job output."""
        return {
            "reconciliationId": self.id,
            "totalMatched": self.total_matched,
            "totalUnmatched": self.total_unmatched,
            "matchedAmount": str(self.matched_amount),
            "unmatchedAmount": str(self.unmatched_amount),
            "averageConfidence": self.average_confidence,
        }

    def to_status_dict(self) -> dict[str, Any]:
        """Lightweight projection: status, counts and amounts."""
        data = self.summary()
        data.update(
            {
                "id": self.id,
                "name": self.name,
                "status": self.status.value,
                "jobId": self.job_id,
                "error": self.error,
                "completedAt": self.completed_at,
            }
        )
        return data

    def to_dict(self) -> dict[str, Any]:
        """Full projection including the match list."""
        data = self.to_status_dict()
        data.update(
            {
                "period": self.period.to_dict(),
                "organizationId": self.organization_id,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
                "matches": [m.to_dict() for m in self.matches],
                "unmatchedLedgerEntryIds": list(self.unmatched_ledger_entry_ids),
                "flags": [f.to_dict() for f in self.flags],
            }
        )
        return data
