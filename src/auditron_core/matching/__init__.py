"""Deterministic reconciliation matching engine."""

from auditron_core.matching.engine import InvalidPeriod, MatchScore, ReconciliationMatcher

__all__ = ["InvalidPeriod", "MatchScore", "ReconciliationMatcher"]
