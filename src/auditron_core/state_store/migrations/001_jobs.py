"""
Migration 001: job queue tables.

- jobs: one row per job; `version` backs every compare-and-set write
- job_logs: append-only history, ordered by `id`
"""

import sqlite3

VERSION = 1
NAME = "jobs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create jobs and job_logs."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            triggered_by TEXT,

            -- QUEUED, RUNNING, COMPLETED, FAILED
            status TEXT NOT NULL DEFAULT 'QUEUED',
            input_json TEXT NOT NULL,
            output_json TEXT,
            error TEXT,
            progress INTEGER NOT NULL DEFAULT 0,

            -- Scheduling (higher priority first, then FIFO)
            priority INTEGER NOT NULL DEFAULT 0,
            available_at TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,

            -- Lease
            lease_owner TEXT,
            lease_expires_at TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            dead_lettered INTEGER NOT NULL DEFAULT 0,

            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_lease
        ON jobs (status, priority DESC, created_at, seq)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_organization
        ON jobs (organization_id, created_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            message TEXT NOT NULL,
            FOREIGN KEY (job_id) REFERENCES jobs(id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs (job_id, id)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop job tables."""
    conn.execute("DROP TABLE IF EXISTS job_logs")
    conn.execute("DROP TABLE IF EXISTS jobs")
