"""
Auditron core: asynchronous job orchestration and bank reconciliation.

A leased, retrying job queue for long-running finance tasks (OCR,
categorization, reconciliation, compliance, reporting), a worker pool that
executes them through typed handlers, and a deterministic matching engine
that pairs bank transactions with ledger entries.
"""

__version__ = "0.1.0"
