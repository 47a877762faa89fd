"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobqueue.constants import (
    METRIC_DLQ_MOVED,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_SETTLED,
    METRIC_LEASE_RECLAIMED,
    METRIC_LOCK_CONTENTION,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Enqueued and settled jobs
    - Job execution duration
    - Claims, lock contention and reclaimed leases
    - Dead letter queue moves
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending jobs in the queue",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "job_type"],
            registry=self._registry,
        )

        # Settlement outcome: completed, retried, dead_lettered, rejected
        self.jobs_settled = Counter(
            METRIC_JOBS_SETTLED,
            "Total number of settled job executions",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["worker_id"],
            registry=self._registry,
        )

        self.lock_contention = Counter(
            METRIC_LOCK_CONTENTION,
            "Total number of lock acquisitions refused because the lock was held",
            ["scope"],
            registry=self._registry,
        )

        self.dlq_moved = Counter(
            METRIC_DLQ_MOVED,
            "Total number of jobs moved to the dead letter queue",
            ["queue", "reason"],
            registry=self._registry,
        )

        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of expired leases returned to the queue",
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str, job_type: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(queue=queue, job_type=job_type).inc()

    def record_job_settled(
        self,
        queue: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one execution."""
        self.jobs_settled.labels(queue=queue, outcome=outcome).inc()
        self.job_duration.labels(queue=queue, outcome=outcome).observe(duration_seconds)

    def record_jobs_claimed(self, worker_id: str, count: int = 1) -> None:
        self.jobs_claimed.labels(worker_id=worker_id).inc(count)

    def record_lock_contention(self, scope: str) -> None:
        self.lock_contention.labels(scope=scope).inc()

    def record_dlq_moved(self, queue: str, reason: str) -> None:
        self.dlq_moved.labels(queue=queue, reason=reason).inc()

    def record_leases_reclaimed(self, count: int) -> None:
        self.lease_reclaimed.inc(count)

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update pending job count for a queue."""
        self.queue_depth.labels(queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
