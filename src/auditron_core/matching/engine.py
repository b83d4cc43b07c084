"""Matching engine for pairing bank transactions with ledger entries.

Two passes over the transactions of a period:

1. Exact pass: same signed amount (rounded to the currency minor unit) within
   a small date tolerance binds as EXACT with score 1.0.
2. Fuzzy pass: the remaining pairs are scored on amount, date and text
   signals; the best candidate above the threshold binds as FUZZY.

Whatever is left is UNMATCHED. The engine is pure: no I/O, no clock, and the
same inputs always produce the same match set.
"""

from __future__ import annotations

import difflib
import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from auditron_core.config import MatchingConfig
from auditron_core.schemas.reconciliation import (
    LedgerEntry,
    Match,
    MatchFlag,
    MatchType,
    Period,
    ReconciliationResult,
    Transaction,
    quantize_amount,
)

logger = logging.getLogger(__name__)

SCORE_PRECISION = 4

_NON_WORD = re.compile(r"[^a-z0-9]+")


class InvalidPeriod(ValueError):
    """Reconciliation period with startDate after endDate."""

    pass


@dataclass
class MatchScore:
    """Individual signal contribution to a match score."""

    signal: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        """Get the weighted score for this signal."""
        return self.score * self.weight


@dataclass
class Candidate:
    """A scored transaction / ledger entry pair."""

    ledger_index: int
    entry: LedgerEntry
    total_score: float
    date_diff: int
    signals: list[MatchScore] = field(default_factory=list)

    @property
    def sort_key(self) -> tuple[float, int, int]:
        # Highest score first, then closest date, then ledger input order
        return (-round(self.total_score, 9), self.date_diff, self.ledger_index)


def normalize_text(*parts: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    joined = " ".join(p for p in parts if p)
    return _NON_WORD.sub(" ", joined.lower()).strip()


def text_similarity(left: str, right: str) -> float:
    """Similarity of two normalized strings in [0, 1].

    The larger of the character-level sequence ratio and the token Jaccard
    index, so both reordered words and small typos score well.
    """
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    ratio = difflib.SequenceMatcher(None, left, right).ratio()
    left_tokens = set(left.split())
    right_tokens = set(right.split())
    jaccard = len(left_tokens & right_tokens) / len(left_tokens | right_tokens)
    return max(ratio, jaccard)


class ReconciliationMatcher:
    """Deterministic two-pass reconciliation matcher.

    Args:
        config: Matching settings (tolerances, weights, thresholds).
            Defaults are used when omitted.
    """

    def __init__(self, config: Optional[MatchingConfig] = None) -> None:
        config = config or MatchingConfig()
        self.config = config

        total_weight = config.weight_amount + config.weight_date + config.weight_text
        if total_weight <= 0:
            raise ValueError("Matching weights must not all be zero")
        self.weight_amount = config.weight_amount / total_weight
        self.weight_date = config.weight_date / total_weight
        self.weight_text = config.weight_text / total_weight

    def match(
        self,
        transactions: list[Transaction],
        ledger_entries: list[LedgerEntry],
        period: Period,
        created_at: Optional[str] = None,
    ) -> ReconciliationResult:
        """Match the transactions of a period against ledger entries.

        Args:
            transactions: Bank statement lines.
            ledger_entries: Book-keeping entries.
            period: Inclusive date range; records outside it are ignored.
            created_at: Timestamp stamped on every Match (left None for
                byte-identical output across runs).

        Returns:
            ReconciliationResult with exactly one Match per transaction in
            the period, in transaction input order.

        Raises:
            InvalidPeriod: if period.start_date > period.end_date.
        """
        if period.start_date > period.end_date:
            raise InvalidPeriod(
                f"startDate {period.start_date.isoformat()} is after "
                f"endDate {period.end_date.isoformat()}"
            )

        txns = [t for t in transactions if period.contains(t.date)]
        entries = [e for e in ledger_entries if period.contains(e.date)]

        bound: dict[int, Match] = {}
        consumed: set[int] = set()

        self._exact_pass(txns, entries, bound, consumed, created_at)
        flags = self._fuzzy_pass(txns, entries, bound, consumed, created_at)

        matches: list[Match] = []
        for i, txn in enumerate(txns):
            match = bound.get(i)
            if match is None:
                match = Match(
                    transaction_id=txn.id,
                    ledger_entry_id=None,
                    match_type=MatchType.UNMATCHED,
                    match_score=0.0,
                    amount=txn.amount,
                    created_at=created_at,
                )
            matches.append(match)

        result = self._aggregate(period, matches, entries, consumed, flags)
        logger.info(
            "Matched %d/%d transactions for %s..%s (%d ledger entries unmatched)",
            result.total_matched,
            len(txns),
            period.start_date.isoformat(),
            period.end_date.isoformat(),
            len(result.unmatched_ledger_entry_ids),
        )
        return result

    def _exact_pass(
        self,
        txns: list[Transaction],
        entries: list[LedgerEntry],
        bound: dict[int, Match],
        consumed: set[int],
        created_at: Optional[str],
    ) -> None:
        """Bind same-amount pairs within the exact date tolerance."""
        by_key: dict[tuple[str, Decimal], list[int]] = defaultdict(list)
        for j, entry in enumerate(entries):
            by_key[self._amount_key(entry)].append(j)

        tolerance = self.config.exact_date_tolerance_days
        for i, txn in enumerate(txns):
            best: Optional[tuple[int, int]] = None
            for j in by_key.get(self._amount_key(txn), []):
                if j in consumed:
                    continue
                days = abs((txn.date - entries[j].date).days)
                if days > tolerance:
                    continue
                if best is None or (days, j) < best:
                    best = (days, j)
            if best is None:
                continue

            j = best[1]
            consumed.add(j)
            bound[i] = Match(
                transaction_id=txn.id,
                ledger_entry_id=entries[j].id,
                match_type=MatchType.EXACT,
                match_score=1.0,
                amount=txn.amount,
                created_at=created_at,
            )
            logger.debug("EXACT %s -> %s (%d days apart)", txn.id, entries[j].id, best[0])

    def _fuzzy_pass(
        self,
        txns: list[Transaction],
        entries: list[LedgerEntry],
        bound: dict[int, Match],
        consumed: set[int],
        created_at: Optional[str],
    ) -> list[MatchFlag]:
        """Greedily bind the best fuzzy candidate per remaining transaction."""
        flags: list[MatchFlag] = []
        threshold = self.config.fuzzy_threshold

        for i, txn in enumerate(txns):
            if i in bound:
                continue
            candidates = [
                self.score_candidate(txn, entry, j)
                for j, entry in enumerate(entries)
                if j not in consumed and self._comparable(txn, entry)
            ]
            if not candidates:
                continue

            best = min(candidates, key=lambda c: c.sort_key)
            score = round(best.total_score, SCORE_PRECISION)

            if best.total_score > threshold:
                consumed.add(best.ledger_index)
                bound[i] = Match(
                    transaction_id=txn.id,
                    ledger_entry_id=best.entry.id,
                    match_type=MatchType.FUZZY,
                    match_score=score,
                    amount=txn.amount,
                    created_at=created_at,
                )
                logger.debug("FUZZY %s -> %s (score %.4f)", txn.id, best.entry.id, score)
            elif best.total_score >= self.config.review_floor:
                flags.append(
                    MatchFlag(
                        severity="WARNING",
                        category="LOW_CONFIDENCE_MATCH",
                        message=(
                            f"Low confidence match ({score * 100:.0f}%) for transaction "
                            f"{txn.id}; manual review recommended"
                        ),
                        transaction_id=txn.id,
                        ledger_entry_id=best.entry.id,
                        score=score,
                    )
                )

        return flags

    def score_candidate(self, txn: Transaction, entry: LedgerEntry, ledger_index: int = 0) -> Candidate:
        """Score one transaction / ledger entry pair on all signals."""
        date_diff = abs((txn.date - entry.date).days)
        signals = [
            self._score_amount(txn.amount, entry.amount),
            self._score_date(date_diff),
            self._score_text(
                normalize_text(txn.description, txn.reference),
                normalize_text(entry.description, entry.reference),
            ),
        ]
        total = min(max(sum(s.weighted_score for s in signals), 0.0), 1.0)
        return Candidate(
            ledger_index=ledger_index,
            entry=entry,
            total_score=total,
            date_diff=date_diff,
            signals=signals,
        )

    def _score_amount(self, txn_amount: Decimal, entry_amount: Decimal) -> MatchScore:
        """Amount closeness: exponential decay by absolute difference."""
        difference = abs(txn_amount - entry_amount)
        score = math.exp(-float(difference) / self.config.amount_decay)
        return MatchScore(
            signal="amount",
            score=score,
            weight=self.weight_amount,
            detail=f"diff {difference}",
        )

    def _score_date(self, days: int) -> MatchScore:
        """Date closeness: linear decay to zero over the fuzzy window."""
        window = self.config.fuzzy_date_window_days
        score = max(0.0, 1.0 - days / window)
        return MatchScore(
            signal="date",
            score=score,
            weight=self.weight_date,
            detail=f"{days} days",
        )

    def _score_text(self, left: str, right: str) -> MatchScore:
        """Description + reference similarity."""
        if not left or not right:
            return MatchScore(signal="text", score=0.0, weight=self.weight_text, detail="missing")
        score = text_similarity(left, right)
        return MatchScore(
            signal="text",
            score=score,
            weight=self.weight_text,
            detail=f"similarity {score:.2f}",
        )

    @staticmethod
    def _amount_key(record: Transaction | LedgerEntry) -> tuple[str, Decimal]:
        return record.currency, quantize_amount(record.signed_amount, record.currency)

    @staticmethod
    def _comparable(txn: Transaction, entry: LedgerEntry) -> bool:
        # Opposite money flows or different currencies never pair
        return txn.direction == entry.direction and txn.currency == entry.currency

    @staticmethod
    def _aggregate(
        period: Period,
        matches: list[Match],
        entries: list[LedgerEntry],
        consumed: set[int],
        flags: list[MatchFlag],
    ) -> ReconciliationResult:
        matched = [m for m in matches if m.match_type != MatchType.UNMATCHED]
        unmatched = [m for m in matches if m.match_type == MatchType.UNMATCHED]
        average = (
            round(sum(m.match_score for m in matched) / len(matched), SCORE_PRECISION)
            if matched
            else 0.0
        )
        return ReconciliationResult(
            period=period,
            matches=matches,
            total_matched=len(matched),
            total_unmatched=len(unmatched),
            matched_amount=sum((m.amount for m in matched), Decimal("0")),
            unmatched_amount=sum((m.amount for m in unmatched), Decimal("0")),
            average_confidence=average,
            unmatched_ledger_entry_ids=[
                entry.id for j, entry in enumerate(entries) if j not in consumed
            ],
            flags=flags,
        )
