"""
Versioned schema migrations for the SQLite job store.

Migration modules live next to this file and are named
`{version:03d}_{name}.py`. Each defines VERSION, NAME and
`upgrade(conn)`; `downgrade(conn)` is optional.
"""

import importlib
import logging
import pkgutil
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """One schema step."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Optional[Callable[[sqlite3.Connection], None]] = None


def get_all_migrations() -> list[Migration]:
    """Discover migration modules in this package, ordered by version."""
    migrations = []
    for module_info in pkgutil.iter_modules(_package_path()):
        name = module_info.name
        if not name[:3].isdigit():
            continue
        module = importlib.import_module(f"{__package__}.{name}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise RuntimeError(f"Duplicate migration versions: {sorted(versions)}")
    return sorted(migrations, key=lambda m: m.version)


def _package_path() -> list[str]:
    package = importlib.import_module(__package__)
    return list(package.__path__)


class MigrationRunner:
    """Applies pending migrations and records them in `migrations`."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def applied_versions(self) -> set[int]:
        rows = self.conn.execute("SELECT version FROM migrations").fetchall()
        return {row[0] for row in rows}

    def current_version(self) -> int:
        return max(self.applied_versions(), default=0)

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns applied versions."""
        applied = self.applied_versions()
        done = []
        for migration in get_all_migrations():
            if migration.version in applied:
                continue
            self._apply(migration)
            done.append(migration.version)
        if done:
            logger.info("Applied migrations %s", done)
        else:
            logger.debug("Schema up to date at version %d", self.current_version())
        return done

    def downgrade_to(self, target_version: int) -> list[int]:
        """Roll back applied migrations above `target_version`, newest first."""
        applied = self.applied_versions()
        rolled_back = []
        for migration in reversed(get_all_migrations()):
            if migration.version <= target_version or migration.version not in applied:
                continue
            if migration.downgrade is None:
                raise NotImplementedError(
                    f"Migration {migration.version} ({migration.name}) cannot be rolled back"
                )
            try:
                migration.downgrade(self.conn)
                self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                logger.error("Rollback of migration %d failed", migration.version)
                raise
            rolled_back.append(migration.version)
        return rolled_back

    def _apply(self, migration: Migration) -> None:
        logger.info("Applying migration %03d_%s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.error("Migration %d failed", migration.version)
            raise
