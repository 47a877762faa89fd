"""
Queue manager.

Owns the database handle and is the single entry point producers, workers,
the reaper and the admin API use to touch jobs, dead letter queue entries
locks and queue switches. Each public method runs in its own transaction.
"""

import logging
import os
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    DEFAULT_QUEUE_NAME,
    SPAN_CLAIM_BATCH,
    SPAN_ENQUEUE_JOB,
    SPAN_MOVE_TO_DLQ,
    SPAN_SETTLE_JOB,
    DLQReason,
    JobStatus,
    SettlementOutcome,
)
from jobqueue.db.connection import Database
from jobqueue.db.dlq_repository import DeadLetterQueueRepository
from jobqueue.db.lock_repository import LockRepository
from jobqueue.db.models import DeadLetterQueueEntry, Job, utcnow
from jobqueue.db.queue_state_repository import QueueStateRepository
from jobqueue.db.repository import JobRepository
from jobqueue.errors import QueueInitializationError, QueueNotInitializedError
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import job_span
from jobqueue.queue.retry import compute_backoff
from jobqueue.types.job import ConcurrencyLock, EnqueueOptions, QueueStats, ReasonCount

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{os.uname().nodename}-{os.getpid()}"


@dataclass
class WorkerConfig:
    """
    Runtime configuration of one worker process.

    ``processing_interval`` is in milliseconds; every other duration is
    in seconds.
    """

    queue_name: str = DEFAULT_QUEUE_NAME
    concurrency: int = 5
    batch_size: int = 50
    processing_interval: int = 5000
    worker_id: str | None = None
    lease_duration: int = 300
    heartbeat_interval: float = 60.0
    job_timeout: float = 300.0
    shutdown_timeout: float = 30.0
    claim_lock_enabled: bool = True
    claim_lock_ttl: int = 30

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "WorkerConfig":
        settings = settings or get_settings()
        return cls(
            queue_name=settings.queue_name,
            concurrency=settings.worker_concurrency,
            batch_size=settings.worker_batch_size,
            processing_interval=settings.worker_processing_interval_ms,
            worker_id=settings.worker_id,
            lease_duration=settings.worker_lease_duration_seconds,
            heartbeat_interval=settings.worker_heartbeat_interval_seconds,
            job_timeout=settings.worker_job_timeout_seconds,
            shutdown_timeout=settings.worker_shutdown_timeout_seconds,
            claim_lock_enabled=settings.worker_claim_lock_enabled,
            claim_lock_ttl=settings.worker_claim_lock_ttl_seconds,
        )

    @property
    def processing_interval_seconds(self) -> float:
        return self.processing_interval / 1000.0


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class QueueManager:
    """
    Facade over the job store, the dead letter queue and the lock table.

    The retry policy lives here: a failed execution is either returned to
    the queue with exponential backoff or, when it is terminal or out of
    attempts, marked failed and copied into the dead letter queue in the
    same transaction.

    Example:
        manager = QueueManager(Database(url))
        await manager.initialize()
        job_id = await manager.enqueue("echo", {"message": "hi"})
        ...
        await manager.close()
    """

    def __init__(
        self,
        database: Database | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._database = database or Database(settings=self._settings)
        self._initialized = False
        self._metrics = get_metrics()

    @property
    def database(self) -> Database:
        return self._database

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Connect to the store and make sure the schema exists.

        Calling it again after a successful run does nothing.

        Raises:
            QueueInitializationError: If the store cannot be reached.
        """
        if self._initialized:
            return

        try:
            await self._database.connect()
            if self._settings.database_auto_create:
                await self._database.create_all()
            await self._database.ping()
        except Exception as e:
            logger.exception("Queue initialization failed")
            await self._database.dispose()
            raise QueueInitializationError(f"Failed to initialize queue: {e}") from e

        self._initialized = True
        logger.info("Queue manager initialized", extra={"dialect": self._database.dialect})

    async def close(self) -> None:
        """Release the database connection. The manager can be initialized again."""
        await self._database.dispose()
        self._initialized = False

    async def ping(self) -> bool:
        return await self._database.ping()

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        if not self._initialized:
            raise QueueNotInitializedError("Queue manager not initialized. Call initialize() first.")
        return self._database.session()

    # Producers

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> UUID:
        """
        Add a job to the queue.

        Args:
            job_type: Handler key.
            payload: JSON object handed to the handler.
            options: Priority, attempts, delay and target queue overrides.

        Returns:
            The new job's id.
        """
        options = options or EnqueueOptions()
        queue = options.queue or self._settings.queue_name

        if options.available_at is not None:
            available_at = _as_naive_utc(options.available_at)
        else:
            available_at = utcnow() + timedelta(milliseconds=options.delay_ms)

        with job_span(SPAN_ENQUEUE_JOB, job_type=job_type, queue=queue) as span:
            async with self._session() as session:
                job = await JobRepository(session).create_job(
                    job_type=job_type,
                    payload=payload,
                    queue=queue,
                    priority=options.priority or self._settings.default_priority,
                    max_attempts=options.max_attempts or self._settings.default_max_attempts,
                    available_at=available_at,
                    original_job_id=options.original_job_id,
                    job_id=options.job_id,
                )
                job_id = job.id

            span.set_attribute("job_id", str(job_id))

        self._metrics.record_job_enqueued(queue, job_type)
        return job_id

    # Introspection

    async def get_job(self, job_id: UUID) -> Job | None:
        async with self._session() as session:
            return await JobRepository(session).get_job(job_id)

    async def list_jobs(
        self,
        queue: str | None = None,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        async with self._session() as session:
            return await JobRepository(session).list_jobs(
                queue=queue, status=status, limit=limit, offset=offset
            )

    async def get_stats(self, queue: str | None = None) -> QueueStats:
        """
        Count jobs per status along with the dead letter queue size.

        Args:
            queue: Restrict job counts to one queue; all queues when omitted.
        """
        async with self._session() as session:
            counts = await JobRepository(session).get_job_stats(queue)
            dlq = DeadLetterQueueRepository(session)
            dlq_size = await dlq.count_entries()
            dlq_unprocessed = await dlq.count_entries(reprocessed=False)

        stats = QueueStats(
            **counts,
            dlq_size=dlq_size,
            dlq_unprocessed=dlq_unprocessed,
        )
        self._metrics.update_queue_depth(queue or "all", stats.pending)
        return stats

    # Locks

    async def acquire_lock(
        self,
        scope: str,
        owner_id: str,
        ttl_seconds: int,
    ) -> ConcurrencyLock | None:
        """
        Take the lock for a scope.

        Returns:
            The lock, or None when another owner holds a live one.
        """
        async with self._session() as session:
            lock = await LockRepository(session).acquire(scope, owner_id, ttl_seconds)

        if lock is None:
            self._metrics.record_lock_contention(scope)
        return lock

    async def release_lock(self, lock: ConcurrencyLock) -> bool:
        """Release a lock; a lock taken over after expiry is left alone."""
        async with self._session() as session:
            return await LockRepository(session).release(lock.scope, lock.owner_id)

    async def extend_lock(self, lock: ConcurrencyLock, ttl_seconds: int) -> ConcurrencyLock | None:
        async with self._session() as session:
            return await LockRepository(session).extend(lock.scope, lock.owner_id, ttl_seconds)

    async def purge_expired_locks(self) -> int:
        async with self._session() as session:
            return await LockRepository(session).purge_expired()

    # Workers

    async def claim_batch(
        self,
        worker_id: str,
        queue: str | None = None,
        limit: int = 50,
        lease_seconds: int | None = None,
    ) -> list[Job]:
        """Claim due and lease-expired jobs for a worker."""
        queue = queue or self._settings.queue_name
        lease_seconds = lease_seconds or self._settings.worker_lease_duration_seconds

        with job_span(SPAN_CLAIM_BATCH, worker_id=worker_id, queue=queue) as span:
            async with self._session() as session:
                jobs = await JobRepository(session).claim_batch(
                    worker_id=worker_id,
                    queue=queue,
                    limit=limit,
                    lease_seconds=lease_seconds,
                )

            span.set_attribute("job_count", len(jobs))

        if jobs:
            self._metrics.record_jobs_claimed(worker_id, len(jobs))
        return jobs

    async def start_job(self, job_id: UUID, worker_id: str) -> Job | None:
        async with self._session() as session:
            return await JobRepository(session).start_job(job_id, worker_id)

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        extension_seconds: int | None = None,
    ) -> bool:
        extension_seconds = extension_seconds or self._settings.worker_lease_duration_seconds
        async with self._session() as session:
            return await JobRepository(session).extend_lease(job_id, worker_id, extension_seconds)

    async def complete_job(
        self,
        job: Job,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> SettlementOutcome:
        """
        Record a successful execution.

        Returns:
            COMPLETED, or REJECTED if the worker lost the lease.
        """
        async with self._session() as session:
            completed = await JobRepository(session).complete_job(job.id, worker_id, result)

        if completed is None:
            return SettlementOutcome.REJECTED

        logger.info(
            "Job completed",
            extra={"job_id": str(job.id), "job_type": job.type, "worker_id": worker_id},
        )
        return SettlementOutcome.COMPLETED

    async def fail_job(
        self,
        job: Job,
        worker_id: str,
        error: str,
        terminal: bool = False,
        reason: str | None = None,
    ) -> SettlementOutcome:
        """
        Record a failed execution and apply the retry policy.

        A terminal failure, or one that uses up the last attempt, marks
        the job failed and moves it to the dead letter queue. Any other
        failure returns the job to the queue after a backoff delay.

        Args:
            job: The job as claimed by the worker.
            worker_id: The worker reporting the failure.
            error: Error text recorded on the job.
            terminal: Skip remaining attempts.
            reason: Dead letter reason for terminal failures.

        Returns:
            RETRIED, DEAD_LETTERED, or REJECTED if the worker lost the lease.
        """
        next_attempt = job.attempt + 1
        exhausted = next_attempt >= job.max_attempts

        with job_span(SPAN_SETTLE_JOB, job, worker_id=worker_id, terminal=terminal):
            async with self._session() as session:
                repo = JobRepository(session)

                if terminal or exhausted:
                    if terminal:
                        dlq_reason = reason or DLQReason.FATAL_ERROR
                    else:
                        dlq_reason = DLQReason.MAX_ATTEMPTS_EXCEEDED

                    failed = await repo.fail_job(job.id, worker_id, error, attempt=next_attempt)
                    if failed is None:
                        return SettlementOutcome.REJECTED

                    await self.move_to_dlq(failed, str(dlq_reason), error, session=session)
                    return SettlementOutcome.DEAD_LETTERED

                delay = compute_backoff(
                    next_attempt,
                    base_ms=self._settings.retry_backoff_base_ms,
                    factor=self._settings.retry_backoff_factor,
                    max_ms=self._settings.retry_backoff_max_ms,
                )
                retried = await repo.retry_job(job.id, worker_id, error, delay)
                if retried is None:
                    return SettlementOutcome.REJECTED

        logger.warning(
            f"Job failed, retrying in {delay:.1f}s",
            extra={
                "job_id": str(job.id),
                "attempt": next_attempt,
                "max_attempts": job.max_attempts,
                "error": error,
            },
        )
        return SettlementOutcome.RETRIED

    async def recover_expired_leases(self) -> int:
        """Return jobs whose lease expired to the queue."""
        async with self._session() as session:
            count = await JobRepository(session).recover_expired_leases()

        if count:
            self._metrics.record_leases_reclaimed(count)
        return count

    async def clean_jobs(
        self,
        status: JobStatus = JobStatus.COMPLETED,
        older_than_hours: int = 24,
        queue: str | None = None,
    ) -> int:
        """Delete finished jobs older than a cutoff."""
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        async with self._session() as session:
            count = await JobRepository(session).delete_finished_jobs(status, cutoff, queue)

        logger.info(
            f"Cleaned {count} {status} jobs",
            extra={"older_than_hours": older_than_hours, "queue": queue},
        )
        return count

    # Queue control

    async def remove_job(self, job_id: UUID) -> bool:
        """
        Delete a job that is still waiting to be claimed.

        Returns:
            True if removed; False if the job does not exist or a worker
            already holds or finished it.
        """
        async with self._session() as session:
            removed = await JobRepository(session).delete_pending_job(job_id)

        if removed:
            logger.info("Job removed from queue", extra={"job_id": str(job_id)})
        return removed

    async def pause(self, queue: str | None = None) -> None:
        """Stop workers from claiming new jobs on a queue."""
        queue = queue or self._settings.queue_name
        async with self._session() as session:
            await QueueStateRepository(session).set_paused(queue, True)
        logger.info("Queue paused", extra={"queue": queue})

    async def resume(self, queue: str | None = None) -> None:
        queue = queue or self._settings.queue_name
        async with self._session() as session:
            await QueueStateRepository(session).set_paused(queue, False)
        logger.info("Queue resumed", extra={"queue": queue})

    async def is_paused(self, queue: str | None = None) -> bool:
        async with self._session() as session:
            return await QueueStateRepository(session).is_paused(
                queue or self._settings.queue_name
            )

    async def paused_queues(self) -> Sequence[str]:
        async with self._session() as session:
            return await QueueStateRepository(session).paused_queues()

    # Dead letter queue

    async def move_to_dlq(
        self,
        job: Job,
        reason: str,
        error: str | None = None,
        session: AsyncSession | None = None,
    ) -> DeadLetterQueueEntry:
        """
        Copy a job into the dead letter queue.

        This is the only place entries are written. When ``session`` is
        given the entry joins the caller's transaction, which is how the
        settlement path writes the job tombstone and the entry atomically.
        """
        if session is None:
            async with self._session() as own_session:
                return await self.move_to_dlq(job, reason, error, session=own_session)

        with job_span(SPAN_MOVE_TO_DLQ, job, reason=reason):
            entry = await DeadLetterQueueRepository(session).create_entry(
                job_id=job.id,
                original_job_id=job.original_job_id or job.id,
                job_type=job.type,
                payload=job.payload,
                reason=reason,
                attempt=job.attempt,
                max_attempts=job.max_attempts,
                error=error or job.last_error,
                priority=job.priority,
                queue=job.queue,
            )

        self._metrics.record_dlq_moved(job.queue, reason)
        return entry

    async def reprocess(self, dlq_entry_id: UUID) -> UUID | None:
        """
        Put a dead-lettered job back on its queue.

        The entry is flagged and the new job inserted in one transaction.
        The new job keeps the entry's lineage root as ``original_job_id``
        and starts again from zero attempts.

        Returns:
            The new job's id, or None if the entry does not exist or was
            already reprocessed.
        """
        new_job_id = uuid4()

        async with self._session() as session:
            dlq = DeadLetterQueueRepository(session)
            entry = await dlq.mark_as_reprocessed(dlq_entry_id, reprocessed_job_id=new_job_id)
            if entry is None or entry.reprocessed_job_id != new_job_id:
                return None

            await JobRepository(session).create_job(
                job_type=entry.type,
                payload=entry.payload,
                queue=entry.queue,
                priority=entry.priority,
                max_attempts=entry.max_attempts,
                original_job_id=entry.original_job_id,
                job_id=new_job_id,
            )

        logger.info(
            "Reprocessed dead letter queue entry",
            extra={"dlq_entry_id": str(dlq_entry_id), "job_id": str(new_job_id)},
        )
        self._metrics.record_job_enqueued(entry.queue, entry.type)
        return new_job_id

    async def get_dlq_entry(self, entry_id: UUID) -> DeadLetterQueueEntry | None:
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).get_entry(entry_id)

    async def list_dlq_entries(
        self,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[Sequence[DeadLetterQueueEntry], int]:
        """Recent entries, newest first, with the total count."""
        async with self._session() as session:
            dlq = DeadLetterQueueRepository(session)
            entries = await dlq.find_recent_failures(limit=limit, offset=offset)
            total = await dlq.count_entries()
        return entries, total

    async def find_dlq_by_reason(
        self, reason: str, limit: int = 50
    ) -> Sequence[DeadLetterQueueEntry]:
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).find_by_reason(reason, limit)

    async def find_dlq_by_job_id(self, job_id: UUID) -> DeadLetterQueueEntry | None:
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).find_by_job_id(job_id)

    async def find_dlq_by_original_job_id(
        self, original_job_id: UUID
    ) -> Sequence[DeadLetterQueueEntry]:
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).find_by_original_job_id(original_job_id)

    async def get_dlq_stats_by_reason(self) -> list[ReasonCount]:
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).get_stats_by_reason()

    async def count_dlq_entries(self, reprocessed: bool | None = None) -> int:
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).count_entries(reprocessed)

    async def mark_dlq_reprocessed(self, entry_id: UUID) -> DeadLetterQueueEntry | None:
        """Flag an entry as handled without re-enqueuing it."""
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).mark_as_reprocessed(entry_id)

    async def cleanup_dlq(self, older_than_days: int | None = None) -> int:
        """Delete unreprocessed entries past the retention window."""
        if older_than_days is None:
            older_than_days = self._settings.dlq_retention_days
        async with self._session() as session:
            return await DeadLetterQueueRepository(session).cleanup_old_entries(older_than_days)
