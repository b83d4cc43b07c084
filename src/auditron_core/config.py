"""
Configuration management (SSOT).

This module defines ALL configuration for the Auditron core. All config keys
are defined here; no other module should invent config keys or defaults.

Key invariants:
- The visibility timeout is the only timeout primitive for jobs
- Retry backoff doubles from base_delay_seconds and is capped
- Matching weights are normalized by the engine, so they need not sum to 1
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class QueueConfig:
    """Queue / scheduler settings."""

    # Unrenewed leases expire after this many seconds
    visibility_timeout_seconds: float = 30.0
    # How long an idle worker sleeps between lease attempts
    poll_interval_seconds: float = 1.0
    # Priority for submissions that do not set one (higher = leased first)
    default_priority: int = 0


@dataclass
class RetryConfig:
    """Retry policy for TRANSIENT handler failures."""

    # Total attempts including the first one
    max_attempts: int = 3
    # Delay before the first retry; doubles on every further retry
    base_delay_seconds: float = 2.0
    # Upper bound for a single backoff delay
    max_delay_seconds: float = 60.0


@dataclass
class WorkerConfig:
    """Worker pool settings."""

    # Fixed number of worker threads
    count: int = 4
    # How often a worker checks a running handler for stalls
    stall_check_interval_seconds: float = 0.5


@dataclass
class MatchingConfig:
    """Reconciliation matching engine settings."""

    # Exact pass: same signed amount within this many days
    exact_date_tolerance_days: int = 3
    # Fuzzy pass: date score decays linearly to 0 over this window
    fuzzy_date_window_days: int = 7
    # A fuzzy score must exceed this to bind a match
    fuzzy_threshold: float = 0.6
    # Amount score = exp(-|difference| / amount_decay)
    amount_decay: float = 10.0
    # Signal weights
    weight_amount: float = 0.5
    weight_date: float = 0.2
    weight_text: float = 0.3
    # Best candidates scoring in [review_floor, fuzzy_threshold] are flagged
    review_floor: float = 0.4


@dataclass
class Config:
    """Application configuration (SSOT)."""

    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/jobs.db"))
    log_level: str = "INFO"

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.queue.visibility_timeout_seconds <= 0:
            errors.append("queue.visibility_timeout_seconds must be > 0")
        if self.queue.poll_interval_seconds <= 0:
            errors.append("queue.poll_interval_seconds must be > 0")

        if self.retry.max_attempts < 1:
            errors.append("retry.max_attempts must be >= 1")
        if self.retry.base_delay_seconds < 0:
            errors.append("retry.base_delay_seconds must be >= 0")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            errors.append("retry.max_delay_seconds must be >= retry.base_delay_seconds")

        if self.workers.count < 1:
            errors.append("workers.count must be >= 1")
        if self.workers.stall_check_interval_seconds <= 0:
            errors.append("workers.stall_check_interval_seconds must be > 0")

        m = self.matching
        if m.exact_date_tolerance_days < 0:
            errors.append("matching.exact_date_tolerance_days must be >= 0")
        if m.fuzzy_date_window_days < 1:
            errors.append("matching.fuzzy_date_window_days must be >= 1")
        if not 0.0 < m.fuzzy_threshold <= 1.0:
            errors.append("matching.fuzzy_threshold must be in (0, 1]")
        if m.amount_decay <= 0:
            errors.append("matching.amount_decay must be > 0")
        if min(m.weight_amount, m.weight_date, m.weight_text) < 0:
            errors.append("matching weights must be >= 0")
        if m.weight_amount + m.weight_date + m.weight_text <= 0:
            errors.append("matching weights must not all be zero")
        if m.review_floor > m.fuzzy_threshold:
            errors.append("matching.review_floor must be <= matching.fuzzy_threshold")

        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            errors.append(f"log_level {self.log_level!r} is not a logging level")

        return errors


def _env_override(name: str, current, cast):
    raw = os.environ.get(name, "")
    if not raw:
        return current
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigValidationError(f"{name}={raw!r} is not a valid {cast.__name__}") from e


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    A missing file yields the defaults. Environment variables override
    config values:
    - AUDITRON_STATE_DB
    - AUDITRON_LOG_LEVEL
    - AUDITRON_WORKER_COUNT
    - AUDITRON_VISIBILITY_TIMEOUT (seconds)
    - AUDITRON_MAX_ATTEMPTS
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    queue_data = data.get("queue", {})
    queue = QueueConfig(
        visibility_timeout_seconds=float(queue_data.get("visibility_timeout_seconds", 30.0)),
        poll_interval_seconds=float(queue_data.get("poll_interval_seconds", 1.0)),
        default_priority=int(queue_data.get("default_priority", 0)),
    )
    queue.visibility_timeout_seconds = _env_override(
        "AUDITRON_VISIBILITY_TIMEOUT", queue.visibility_timeout_seconds, float
    )

    retry_data = data.get("retry", {})
    retry = RetryConfig(
        max_attempts=int(retry_data.get("max_attempts", 3)),
        base_delay_seconds=float(retry_data.get("base_delay_seconds", 2.0)),
        max_delay_seconds=float(retry_data.get("max_delay_seconds", 60.0)),
    )
    retry.max_attempts = _env_override("AUDITRON_MAX_ATTEMPTS", retry.max_attempts, int)

    worker_data = data.get("workers", {})
    workers = WorkerConfig(
        count=int(worker_data.get("count", 4)),
        stall_check_interval_seconds=float(worker_data.get("stall_check_interval_seconds", 0.5)),
    )
    workers.count = _env_override("AUDITRON_WORKER_COUNT", workers.count, int)

    matching_data = data.get("matching", {})
    matching = MatchingConfig(
        exact_date_tolerance_days=int(matching_data.get("exact_date_tolerance_days", 3)),
        fuzzy_date_window_days=int(matching_data.get("fuzzy_date_window_days", 7)),
        fuzzy_threshold=float(matching_data.get("fuzzy_threshold", 0.6)),
        amount_decay=float(matching_data.get("amount_decay", 10.0)),
        weight_amount=float(matching_data.get("weight_amount", 0.5)),
        weight_date=float(matching_data.get("weight_date", 0.2)),
        weight_text=float(matching_data.get("weight_text", 0.3)),
        review_floor=float(matching_data.get("review_floor", 0.4)),
    )

    state_db = os.environ.get("AUDITRON_STATE_DB", data.get("state_db_path", "data/jobs.db"))
    log_level = os.environ.get("AUDITRON_LOG_LEVEL", data.get("log_level", "INFO"))

    return Config(
        queue=queue,
        retry=retry,
        workers=workers,
        matching=matching,
        state_db_path=Path(state_db),
        log_level=str(log_level).upper(),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Auditron core configuration

# Job queue
queue:
  visibility_timeout_seconds: 30   # Unrenewed leases expire after this
  poll_interval_seconds: 1         # Idle worker sleep between lease attempts
  default_priority: 0              # Higher = leased first

# Retries for TRANSIENT failures (exponential backoff, capped)
retry:
  max_attempts: 3                  # Total attempts including the first
  base_delay_seconds: 2
  max_delay_seconds: 60

# Worker pool
workers:
  count: 4
  stall_check_interval_seconds: 0.5

# Reconciliation matching
matching:
  exact_date_tolerance_days: 3     # Exact pass: same amount within +/- N days
  fuzzy_date_window_days: 7        # Fuzzy pass: date score decays over N days
  fuzzy_threshold: 0.6             # A fuzzy score must exceed this to bind a match
  amount_decay: 10.0               # exp(-|diff| / amount_decay)
  weight_amount: 0.5
  weight_date: 0.2
  weight_text: 0.3
  review_floor: 0.4                # Near misses above this are flagged for review

# Job store
state_db_path: "data/jobs.db"

log_level: "INFO"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
