"""
SQLite-based Job Record Store.

Tables (see migrations/):
- jobs: job records with lease and version columns
- job_logs: append-only job history
- reconciliations: reconciliation records and totals
- reconciliation_matches: ordered match sets

Every job mutation is a conditional `UPDATE ... WHERE version = ?`. The lease
runs under `BEGIN IMMEDIATE`, so select-and-claim is a single atomic step
even with several worker threads or processes sharing the file.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..schemas.job import Job, JobStatus, JobType, LogEntry
from ..schemas.reconciliation import (
    Match,
    MatchFlag,
    MatchType,
    Period,
    Reconciliation,
    ReconciliationStatus,
)
from .base import JobRecordStore, check_changes

logger = logging.getLogger(__name__)

# Dataclass field -> column, where they differ
_COLUMN_NAMES = {"output": "output_json"}


def _to_column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return value


class SQLiteJobStore(JobRecordStore):
    """
    SQLite-backed store.

    Opens a short-lived connection per operation, so one instance can be
    shared by all worker threads.
    """

    BUSY_TIMEOUT_SECONDS = 30.0

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._enable_wal()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        `immediate` takes the write lock up front (used by the lease).
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _enable_wal(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        finally:
            conn.close()

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).run_pending()
        finally:
            conn.close()

    # Jobs

    def create_job(self, job: Job) -> Job:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs
                (id, type, organization_id, triggered_by, status, input_json, output_json,
                 error, progress, priority, available_at, attempts, max_attempts,
                 lease_owner, lease_expires_at, version, cancel_requested, dead_lettered,
                 created_at, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.type.value,
                    job.organization_id,
                    job.triggered_by,
                    job.status.value,
                    json.dumps(job.input, sort_keys=True),
                    json.dumps(job.output, sort_keys=True) if job.output is not None else None,
                    job.error,
                    job.progress,
                    job.priority,
                    job.available_at,
                    job.attempts,
                    job.max_attempts,
                    job.lease_owner,
                    job.lease_expires_at,
                    job.version,
                    int(job.cancel_requested),
                    int(job.dead_lettered),
                    job.created_at,
                    job.started_at,
                    job.completed_at,
                ),
            )
            for entry in job.logs:
                self._insert_log(conn, job.id, entry.message, entry.timestamp)
            return self._load_job(conn, job.id)

    def get_job(self, job_id: str, organization_id: Optional[str] = None) -> Optional[Job]:
        with self._transaction() as conn:
            job = self._load_job(conn, job_id)
            if job is None:
                return None
            if organization_id is not None and job.organization_id != organization_id:
                return None
            return job

    def compare_and_set(
        self,
        job_id: str,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Optional[Job]:
        check_changes(changes)
        assignments = []
        params: list[Any] = []
        for name, value in changes.items():
            assignments.append(f"{_COLUMN_NAMES.get(name, name)} = ?")
            params.append(_to_column_value(value))
        assignments.append("version = version + 1")

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND version = ?",
                (*params, job_id, expected_version),
            )
            if cursor.rowcount != 1:
                return None
            return self._load_job(conn, job_id)

    def append_log(self, job_id: str, message: str, timestamp: str) -> LogEntry:
        with self._transaction() as conn:
            exists = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if exists is None:
                raise KeyError(f"Job {job_id} not found")
            self._insert_log(conn, job_id, message, timestamp)
        return LogEntry(timestamp=timestamp, message=message)

    def list_by_organization(
        self,
        organization_id: str,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        where = ["organization_id = ?"]
        params: list[Any] = [organization_id]
        if status is not None:
            where.append("status = ?")
            params.append(status.value)
        if job_type is not None:
            where.append("type = ?")
            params.append(job_type.value)
        if dead_lettered is not None:
            where.append("dead_lettered = ?")
            params.append(int(dead_lettered))
        clause = " AND ".join(where)

        with self._transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM jobs WHERE {clause}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM jobs WHERE {clause}
                ORDER BY created_at DESC, seq DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
            jobs = [Job.from_row(row, self._load_logs(conn, row["id"])) for row in rows]
        return jobs, total

    def lease_next(
        self,
        worker_id: str,
        now: str,
        lease_expires_at: str,
        job_id: Optional[str] = None,
    ) -> Optional[Job]:
        only = "AND id = ?" if job_id is not None else ""
        params: tuple = (now, now, job_id) if job_id is not None else (now, now)
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                f"""
                SELECT id, version FROM jobs
                WHERE ((status = 'QUEUED' AND available_at <= ?)
                   OR (status = 'RUNNING' AND lease_expires_at IS NOT NULL
                       AND lease_expires_at < ?))
                   {only}
                ORDER BY priority DESC, created_at ASC, seq ASC
                LIMIT 1
                """,
                params,
            ).fetchone()
            if row is None:
                return None

            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'RUNNING', lease_owner = ?, lease_expires_at = ?,
                    started_at = ?, attempts = attempts + 1, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (worker_id, lease_expires_at, now, row["id"], row["version"]),
            )
            if cursor.rowcount != 1:
                logger.warning(f"Lease of job {row['id']} lost a version race")
                return None
            return self._load_job(conn, row["id"])

    def queue_stats(self, now: str, organization_id: Optional[str] = None) -> dict[str, int]:
        scope = "WHERE organization_id = ?" if organization_id is not None else ""
        params: tuple = (now, now, organization_id) if organization_id is not None else (now, now)
        with self._transaction() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COALESCE(SUM(CASE WHEN status = 'QUEUED' AND available_at <= ? THEN 1 ELSE 0 END), 0)
                        AS queued,
                    COALESCE(SUM(CASE WHEN status = 'QUEUED' AND available_at > ? THEN 1 ELSE 0 END), 0)
                        AS delayed,
                    COALESCE(SUM(CASE WHEN status = 'RUNNING' THEN 1 ELSE 0 END), 0) AS running,
                    COALESCE(SUM(CASE WHEN status = 'COMPLETED' THEN 1 ELSE 0 END), 0) AS completed,
                    COALESCE(SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END), 0) AS failed,
                    COALESCE(SUM(CASE WHEN status = 'FAILED' AND dead_lettered = 1 THEN 1 ELSE 0 END), 0)
                        AS dead_letter
                FROM jobs {scope}
                """,
                params,
            ).fetchone()
        return {key: row[key] for key in row.keys()}

    def _load_job(self, conn: sqlite3.Connection, job_id: str) -> Optional[Job]:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return Job.from_row(row, self._load_logs(conn, job_id))

    @staticmethod
    def _load_logs(conn: sqlite3.Connection, job_id: str) -> list[LogEntry]:
        rows = conn.execute(
            "SELECT timestamp, message FROM job_logs WHERE job_id = ? ORDER BY id",
            (job_id,),
        ).fetchall()
        return [LogEntry(timestamp=r["timestamp"], message=r["message"]) for r in rows]

    @staticmethod
    def _insert_log(conn: sqlite3.Connection, job_id: str, message: str, timestamp: str) -> None:
        conn.execute(
            "INSERT INTO job_logs (job_id, timestamp, message) VALUES (?, ?, ?)",
            (job_id, timestamp, message),
        )

    # Reconciliations

    def create_reconciliation(self, reconciliation: Reconciliation) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO reconciliations
                (id, name, organization_id, job_id, start_date, end_date, status,
                 total_matched, total_unmatched, matched_amount, unmatched_amount,
                 average_confidence, unmatched_ledger_json, flags_json, error,
                 created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reconciliation.id,
                    reconciliation.name,
                    reconciliation.organization_id,
                    reconciliation.job_id,
                    reconciliation.period.start_date.isoformat(),
                    reconciliation.period.end_date.isoformat(),
                    *self._reconciliation_values(reconciliation),
                    reconciliation.created_at,
                    reconciliation.updated_at,
                    reconciliation.completed_at,
                ),
            )
            self._replace_matches(conn, reconciliation)

    def get_reconciliation(
        self,
        reconciliation_id: str,
        organization_id: Optional[str] = None,
    ) -> Optional[Reconciliation]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM reconciliations WHERE id = ?", (reconciliation_id,)
            ).fetchone()
            if row is None:
                return None
            if organization_id is not None and row["organization_id"] != organization_id:
                return None
            return self._reconciliation_from_row(conn, row)

    def save_reconciliation(self, reconciliation: Reconciliation) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE reconciliations
                SET status = ?, total_matched = ?, total_unmatched = ?,
                    matched_amount = ?, unmatched_amount = ?, average_confidence = ?,
                    unmatched_ledger_json = ?, flags_json = ?, error = ?,
                    updated_at = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    *self._reconciliation_values(reconciliation),
                    reconciliation.updated_at,
                    reconciliation.completed_at,
                    reconciliation.id,
                ),
            )
            if cursor.rowcount != 1:
                raise KeyError(f"Reconciliation {reconciliation.id} not found")
            self._replace_matches(conn, reconciliation)

    def set_reconciliation_job_id(self, reconciliation_id: str, job_id: str) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE reconciliations SET job_id = ? WHERE id = ?",
                (job_id, reconciliation_id),
            )
            if cursor.rowcount != 1:
                raise KeyError(f"Reconciliation {reconciliation_id} not found")

    def list_reconciliations(
        self,
        organization_id: str,
        status: Optional[ReconciliationStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Reconciliation], int]:
        where = "organization_id = ?"
        params: list[Any] = [organization_id]
        if status is not None:
            where += " AND status = ?"
            params.append(status.value)
        with self._transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM reconciliations WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM reconciliations WHERE {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
            return [self._reconciliation_from_row(conn, row) for row in rows], total

    @staticmethod
    def _reconciliation_values(reconciliation: Reconciliation) -> tuple:
        return (
            reconciliation.status.value,
            reconciliation.total_matched,
            reconciliation.total_unmatched,
            str(reconciliation.matched_amount),
            str(reconciliation.unmatched_amount),
            reconciliation.average_confidence,
            json.dumps(reconciliation.unmatched_ledger_entry_ids),
            json.dumps([f.to_dict() for f in reconciliation.flags]),
            reconciliation.error,
        )

    @staticmethod
    def _replace_matches(conn: sqlite3.Connection, reconciliation: Reconciliation) -> None:
        conn.execute(
            "DELETE FROM reconciliation_matches WHERE reconciliation_id = ?",
            (reconciliation.id,),
        )
        conn.executemany(
            """
            INSERT INTO reconciliation_matches
            (reconciliation_id, position, transaction_id, ledger_entry_id, match_type,
             match_score, amount, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    reconciliation.id,
                    position,
                    match.transaction_id,
                    match.ledger_entry_id,
                    match.match_type.value,
                    match.match_score,
                    str(match.amount),
                    match.created_at,
                )
                for position, match in enumerate(reconciliation.matches)
            ],
        )

    @staticmethod
    def _reconciliation_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> Reconciliation:
        match_rows = conn.execute(
            """
            SELECT * FROM reconciliation_matches
            WHERE reconciliation_id = ? ORDER BY position
            """,
            (row["id"],),
        ).fetchall()
        return Reconciliation(
            id=row["id"],
            name=row["name"],
            period=Period(
                start_date=date.fromisoformat(row["start_date"]),
                end_date=date.fromisoformat(row["end_date"]),
            ),
            organization_id=row["organization_id"],
            created_at=row["created_at"],
            status=ReconciliationStatus(row["status"]),
            job_id=row["job_id"],
            total_matched=row["total_matched"],
            total_unmatched=row["total_unmatched"],
            matched_amount=Decimal(row["matched_amount"]),
            unmatched_amount=Decimal(row["unmatched_amount"]),
            average_confidence=row["average_confidence"],
            matches=[
                Match(
                    transaction_id=m["transaction_id"],
                    ledger_entry_id=m["ledger_entry_id"],
                    match_type=MatchType(m["match_type"]),
                    match_score=m["match_score"],
                    amount=Decimal(m["amount"]),
                    created_at=m["created_at"],
                )
                for m in match_rows
            ],
            unmatched_ledger_entry_ids=(
                json.loads(row["unmatched_ledger_json"]) if row["unmatched_ledger_json"] else []
            ),
            flags=[MatchFlag.from_dict(f) for f in json.loads(row["flags_json"] or "[]")],
            error=row["error"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )
