"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- worker: Run the worker pool
- submit / status / list / cancel / resubmit: Job submission API
- stats: Queue statistics
- reconcile: Start or inspect a reconciliation
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
