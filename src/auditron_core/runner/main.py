"""
CLI main entry point.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..jobs import HandlerRegistry, JobError, JobQueue, WorkerPool
from ..matching import InvalidPeriod, ReconciliationMatcher
from ..schemas.job import JobType
from ..services import JobService, ReconciliationNotFound, ReconciliationService
from ..state_store import SQLiteJobStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class Runtime:
    """Wired-up components for one CLI invocation."""

    config: Config
    store: SQLiteJobStore
    queue: JobQueue
    registry: HandlerRegistry
    jobs: JobService
    reconciliations: ReconciliationService

    def worker_pool(self, worker_count: Optional[int] = None) -> WorkerPool:
        pool = WorkerPool.from_config(self.queue, self.registry, self.config)
        if worker_count:
            pool.worker_count = worker_count
        return pool


def build_runtime(config: Config) -> Runtime:
    """Create store, queue, handler registry and services from config."""
    store = SQLiteJobStore(config.state_db_path)
    queue = JobQueue.from_config(store, config)
    registry = HandlerRegistry()
    reconciliations = ReconciliationService(
        store, queue, ReconciliationMatcher(config.matching)
    )
    reconciliations.register_handler(registry)
    return Runtime(
        config=config,
        store=store,
        queue=queue,
        registry=registry,
        jobs=JobService(queue),
        reconciliations=reconciliations,
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="auditron",
        description="Run and inspect Auditron background jobs and reconciliations",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # worker command
    worker_parser = subparsers.add_parser("worker", help="Run the worker pool")
    worker_parser.add_argument(
        "--workers",
        type=int,
        help="Number of worker threads (default: from config)",
    )
    worker_parser.add_argument(
        "--once",
        action="store_true",
        help="Process eligible jobs in the foreground, then exit",
    )

    # submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a job")
    submit_parser.add_argument(
        "type",
        choices=[t.value for t in JobType],
        help="Job type",
    )
    submit_parser.add_argument("--org", required=True, help="Organization ID")
    submit_parser.add_argument("--input", default="{}", help="Job input as a JSON object")
    submit_parser.add_argument("--priority", type=int, help="Higher is processed first")
    submit_parser.add_argument(
        "--delay",
        type=float,
        default=0,
        help="Seconds before the job becomes eligible (default: 0)",
    )
    submit_parser.add_argument("--triggered-by", help="Actor reference")

    # status command
    status_parser = subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id", help="Job ID")
    status_parser.add_argument("--org", required=True, help="Organization ID")

    # list command
    list_parser = subparsers.add_parser("list", help="List jobs of an organization")
    list_parser.add_argument("--org", required=True, help="Organization ID")
    list_parser.add_argument("--status", help="Filter by status")
    list_parser.add_argument("--type", help="Filter by job type")
    list_parser.add_argument(
        "--dead-letter",
        action="store_true",
        help="Only FAILED jobs that exhausted their retries",
    )
    list_parser.add_argument("--page", type=int, default=1, help="Page (default: 1)")
    list_parser.add_argument("--limit", type=int, default=20, help="Page size (default: 20)")

    # cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job ID")
    cancel_parser.add_argument("--org", required=True, help="Organization ID")

    # resubmit command
    resubmit_parser = subparsers.add_parser("resubmit", help="Resubmit a FAILED job")
    resubmit_parser.add_argument("job_id", help="Job ID")
    resubmit_parser.add_argument("--org", required=True, help="Organization ID")

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show queue statistics")
    stats_parser.add_argument("--org", help="Restrict to one organization")

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Start a reconciliation, or show one with --show"
    )
    reconcile_parser.add_argument("--org", required=True, help="Organization ID")
    reconcile_parser.add_argument("--name", help="Reconciliation name")
    reconcile_parser.add_argument("--start", help="Period start (YYYY-MM-DD)")
    reconcile_parser.add_argument("--end", help="Period end, inclusive (YYYY-MM-DD)")
    reconcile_parser.add_argument(
        "--data",
        type=Path,
        help="JSON file with 'transactions' and 'ledgerEntries' arrays",
    )
    reconcile_parser.add_argument(
        "--wait",
        action="store_true",
        help="Run the job in the foreground and print the results",
    )
    reconcile_parser.add_argument("--show", metavar="RECONCILIATION_ID", help="Show a reconciliation")
    reconcile_parser.add_argument(
        "--matches",
        action="store_true",
        help="With --show: include every match",
    )

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init_config(config_path: Path, force: bool = False) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_worker(runtime: Runtime, workers: Optional[int] = None, once: bool = False) -> int:
    """Run the worker pool until interrupted (or until idle with --once)."""
    pool = runtime.worker_pool(workers)

    if once:
        processed = pool.run_until_idle()
        print(f"✓ Processed {processed} job(s)")
        return 0

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    print(f"⚙️  Starting {pool.worker_count} worker(s) on {runtime.config.state_db_path}")
    pool.start()
    try:
        while not stop.is_set():
            stop.wait(1.0)
    finally:
        pool.stop(timeout=runtime.config.queue.visibility_timeout_seconds)
    print("✓ Workers stopped")
    return 0


def cmd_submit(
    runtime: Runtime,
    job_type: str,
    org: str,
    raw_input: str,
    priority: Optional[int] = None,
    delay: float = 0,
    triggered_by: Optional[str] = None,
) -> int:
    """Submit a job."""
    try:
        payload = json.loads(raw_input)
    except json.JSONDecodeError as e:
        print(f"❌ --input is not valid JSON: {e}")
        return 1

    result = runtime.jobs.submit(
        org,
        job_type,
        input=payload,
        triggered_by=triggered_by,
        priority=priority,
        delay_seconds=delay,
    )
    print(f"✓ Submitted job {result['jobId']} ({result['status']})")
    return 0


def cmd_status(runtime: Runtime, job_id: str, org: str) -> int:
    """Show one job."""
    job = runtime.jobs.get_status(org, job_id)

    print(f"\n📋 Job {job['id']}")
    print("=" * 40)
    print(f"  Type:        {job['type']}")
    print(f"  Status:      {job['status']}{' (cancelling)' if job['cancelling'] else ''}")
    print(f"  Progress:    {job['progress']}%")
    print(f"  Attempts:    {job['attempts']}/{job['maxAttempts']}")
    print(f"  Created:     {job['createdAt']}")
    if job["completedAt"]:
        print(f"  Completed:   {job['completedAt']}")
    if job["error"]:
        print(f"  Error:       {job['error']}")
    if job["output"] is not None:
        print("  Output:")
        print("    " + json.dumps(job["output"], default=str))
    print("  Log:")
    for entry in job["logs"]:
        print(f"    {entry['timestamp']}  {entry['message']}")
    print()
    return 0


def cmd_list(
    runtime: Runtime,
    org: str,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    dead_letter: bool = False,
    page: int = 1,
    limit: int = 20,
) -> int:
    """List jobs of an organization."""
    if dead_letter:
        result = runtime.jobs.list_dead_letter(org, page=page, limit=limit)
    else:
        result = runtime.jobs.list_jobs(org, status=status, job_type=job_type, page=page, limit=limit)

    for job in result["data"]:
        line = f"  [{job['status']:<9}] {job['id']}  {job['type']:<14} {job['progress']:>3}%"
        if job["error"]:
            line += f"  ❌ {job['error']}"
        print(line)

    pagination = result["pagination"]
    print(
        f"\n✓ {pagination['total']} job(s), page {pagination['page']}"
        f"/{max(pagination['totalPages'], 1)}"
    )
    return 0


def cmd_cancel(runtime: Runtime, job_id: str, org: str) -> int:
    """Cancel a job."""
    job = runtime.jobs.cancel(org, job_id)
    if job["cancelling"]:
        print(f"⏳ Cancellation requested for running job {job_id}")
    else:
        print(f"✓ Job {job_id} is {job['status']}")
    return 0


def cmd_resubmit(runtime: Runtime, job_id: str, org: str) -> int:
    """Resubmit a FAILED job."""
    result = runtime.jobs.resubmit(org, job_id)
    print(f"✓ Resubmitted {job_id} as {result['jobId']}")
    return 0


def cmd_stats(runtime: Runtime, org: Optional[str] = None) -> int:
    """Show queue statistics."""
    stats = runtime.jobs.stats(org)

    print("\n📊 Queue Status")
    print("=" * 40)
    print(f"  Queued:        {stats['queued']}")
    print(f"  Delayed:       {stats['delayed']}")
    print(f"  Running:       {stats['running']}")
    print(f"  Completed:     {stats['completed']}")
    print(f"  Failed:        {stats['failed']}")
    print(f"  Dead letter:   {stats['dead_letter']}")
    print(f"  Paused:        {'yes' if stats['paused'] else 'no'}")
    print()
    return 0


def cmd_reconcile(runtime: Runtime, parsed: argparse.Namespace) -> int:
    """Start or show a reconciliation."""
    service = runtime.reconciliations

    if parsed.show:
        if parsed.matches:
            _print_json(service.get_results(parsed.org, parsed.show))
        else:
            _print_json(service.get_status(parsed.org, parsed.show))
        return 0

    missing = [flag for flag in ("name", "start", "end") if not getattr(parsed, flag)]
    if missing:
        print(f"❌ Missing required option(s): {', '.join('--' + m for m in missing)}")
        return 1

    transactions = ledger_entries = None
    if parsed.data:
        try:
            with open(parsed.data) as f:
                data = json.load(f)
        except OSError as e:
            print(f"❌ Cannot read --data: {e}")
            return 1
        except json.JSONDecodeError as e:
            print(f"❌ --data is not valid JSON: {e}")
            return 1
        if not isinstance(data, dict):
            print("❌ --data must hold a JSON object with transactions and ledgerEntries")
            return 1
        transactions = data.get("transactions", [])
        ledger_entries = data.get("ledgerEntries", [])

    started = service.start_reconciliation(
        parsed.org,
        parsed.name,
        parsed.start,
        parsed.end,
        transactions=transactions,
        ledger_entries=ledger_entries,
    )
    print(f"✓ Reconciliation {started['reconciliationId']} queued as job {started['jobId']}")

    if parsed.wait:
        runtime.worker_pool(1).run_job(started["jobId"])
        status = service.get_status(parsed.org, started["reconciliationId"])
        print()
        print("📊 Reconciliation Results")
        print("=" * 40)
        print(f"  Status:             {status['status']}")
        print(f"  Matched:            {status['totalMatched']}")
        print(f"  Unmatched:          {status['totalUnmatched']}")
        print(f"  Matched amount:     {status['matchedAmount']}")
        print(f"  Unmatched amount:   {status['unmatchedAmount']}")
        print(f"  Avg confidence:     {status['averageConfidence']:.2f}")
        print()
        if status["error"]:
            print(f"❌ {status['error']}")
            return 1
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        setup_logging(parsed.verbose)
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
        errors = config.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))
    except (ConfigValidationError, OSError, ValueError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    setup_logging(parsed.verbose, config.log_level)
    runtime = build_runtime(config)

    # Route to command
    try:
        if parsed.command == "worker":
            return cmd_worker(runtime, parsed.workers, parsed.once)
        elif parsed.command == "submit":
            return cmd_submit(
                runtime,
                parsed.type,
                parsed.org,
                parsed.input,
                priority=parsed.priority,
                delay=parsed.delay,
                triggered_by=parsed.triggered_by,
            )
        elif parsed.command == "status":
            return cmd_status(runtime, parsed.job_id, parsed.org)
        elif parsed.command == "list":
            return cmd_list(
                runtime,
                parsed.org,
                status=parsed.status,
                job_type=parsed.type,
                dead_letter=parsed.dead_letter,
                page=parsed.page,
                limit=parsed.limit,
            )
        elif parsed.command == "cancel":
            return cmd_cancel(runtime, parsed.job_id, parsed.org)
        elif parsed.command == "resubmit":
            return cmd_resubmit(runtime, parsed.job_id, parsed.org)
        elif parsed.command == "stats":
            return cmd_stats(runtime, parsed.org)
        elif parsed.command == "reconcile":
            return cmd_reconcile(runtime, parsed)
        else:
            parser.print_help()
            return 1
    except (JobError, InvalidPeriod, ReconciliationNotFound) as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
