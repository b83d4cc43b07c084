"""
Migration 002: reconciliation records and their match sets.

Amounts are stored as TEXT to keep Decimal precision.
"""

import sqlite3

VERSION = 2
NAME = "reconciliations"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create reconciliations and reconciliation_matches."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reconciliations (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            job_id TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,

            -- PENDING, IN_PROGRESS, COMPLETED, FAILED
            status TEXT NOT NULL DEFAULT 'PENDING',
            total_matched INTEGER NOT NULL DEFAULT 0,
            total_unmatched INTEGER NOT NULL DEFAULT 0,
            matched_amount TEXT NOT NULL DEFAULT '0',
            unmatched_amount TEXT NOT NULL DEFAULT '0',
            average_confidence REAL NOT NULL DEFAULT 0,
            unmatched_ledger_json TEXT,  -- JSON array of ledger entry ids
            flags_json TEXT,  -- JSON array of flags
            error TEXT,

            created_at TEXT NOT NULL,
            updated_at TEXT,
            completed_at TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_reconciliations_organization
        ON reconciliations (organization_id, created_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reconciliation_matches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reconciliation_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            transaction_id TEXT NOT NULL,
            ledger_entry_id TEXT,
            match_type TEXT NOT NULL,
            match_score REAL NOT NULL,
            amount TEXT NOT NULL,
            created_at TEXT,
            FOREIGN KEY (reconciliation_id) REFERENCES reconciliations(id),
            UNIQUE (reconciliation_id, transaction_id)
        )
        """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop reconciliation tables."""
    conn.execute("DROP TABLE IF EXISTS reconciliation_matches")
    conn.execute("DROP TABLE IF EXISTS reconciliations")
