"""Organization-scoped APIs over the job queue and the matching engine."""

from auditron_core.services.reconciliation import (
    ReconciliationDataSource,
    ReconciliationHandler,
    ReconciliationNotFound,
    ReconciliationService,
)
from auditron_core.services.submission import JobService

__all__ = [
    "JobService",
    "ReconciliationDataSource",
    "ReconciliationHandler",
    "ReconciliationNotFound",
    "ReconciliationService",
]
