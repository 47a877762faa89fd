"""Queue management: enqueueing, claiming, settlement and the dead letter queue."""

from jobqueue.queue.batch_loader import JobBatchLoader
from jobqueue.queue.manager import QueueManager, WorkerConfig, default_worker_id
from jobqueue.queue.retry import compute_backoff, is_transient_error, retry_transient

__all__ = [
    "QueueManager",
    "WorkerConfig",
    "default_worker_id",
    "JobBatchLoader",
    "compute_backoff",
    "is_transient_error",
    "retry_transient",
]
