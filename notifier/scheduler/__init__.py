"""Background scheduling of the reconciliation sweep."""

from .service import RECONCILE_JOB_ID, SchedulerService

__all__ = [
    "SchedulerService",
    "RECONCILE_JOB_ID",
]
