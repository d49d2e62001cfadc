"""
Background execution for the enrichment feature: the per-job worker loop,
the in-process worker pool and the recovery supervisor.
"""

from .batch_worker import BatchWorker, WorkerRunResult
from .recovery_supervisor import RecoveryMetrics, RecoverySupervisor, start_recovery_scheduler
from .worker_pool import WorkerPool

__all__ = [
    "BatchWorker",
    "RecoveryMetrics",
    "RecoverySupervisor",
    "WorkerPool",
    "WorkerRunResult",
    "start_recovery_scheduler",
]
