"""
Database migrations for the SQLite job store.

Applied in version order and tracked in the `migrations` table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
