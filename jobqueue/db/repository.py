"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import (
    DEFAULT_QUEUE_NAME,
    FINISHED_STATUSES,
    LEASED_STATUSES,
    MAX_ERROR_LENGTH,
    JobStatus,
)
from jobqueue.db.models import Job, utcnow

logger = logging.getLogger(__name__)


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


class JobRepository:
    """
    Repository for job database operations.

    Every ownership transition is one conditional UPDATE whose WHERE clause
    holds the expected current state, so a row can only be moved by the
    caller that still owns it:
    - claiming matches on status/availability or an expired lease
    - starting and settling match on status and lease owner
    - lease expiry handling matches on locked_until

    The caller owns the transaction and must commit.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        job_type: str,
        payload: dict[str, Any],
        queue: str = DEFAULT_QUEUE_NAME,
        priority: int = 5,
        max_attempts: int = 3,
        available_at: datetime | None = None,
        original_job_id: UUID | None = None,
        job_id: UUID | None = None,
    ) -> Job:
        """
        Insert a new pending job.

        Args:
            job_type: Key resolving to a registered handler.
            payload: The job payload.
            queue: Queue (claim partition) the job belongs to.
            priority: Higher values are claimed first.
            max_attempts: Maximum executions before the job is dead-lettered.
            available_at: Earliest time the job may be claimed.
            original_job_id: Lineage root when re-enqueued from the DLQ.
            job_id: Optional explicit id.

        Returns:
            The created Job.
        """
        now = utcnow()
        job = Job(
            queue=queue,
            type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            priority=priority,
            attempt=0,
            max_attempts=max_attempts,
            available_at=available_at or now,
            original_job_id=original_job_id,
            created_at=now,
            updated_at=now,
        )
        if job_id is not None:
            job.id = job_id

        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": str(job.id), "job_type": job_type, "queue": queue},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        queue: str | None = None,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering, newest first.

        Args:
            queue: Optional queue filter.
            status: Optional status filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if queue is not None:
            filters.append(Job.queue == queue)
        if status is not None:
            filters.append(Job.status == status)

        count_stmt = select(func.count()).select_from(Job)
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit).offset(offset)
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
            stmt = stmt.where(and_(*filters))

        total = (await self._session.execute(count_stmt)).scalar() or 0
        jobs = (await self._session.execute(stmt)).scalars().all()

        return jobs, total

    def _claimable(self, queue: str, now: datetime):
        return and_(
            Job.queue == queue,
            or_(
                and_(Job.status == JobStatus.PENDING, Job.available_at <= now),
                and_(Job.status.in_(LEASED_STATUSES), Job.locked_until < now),
            ),
        )

    async def claim_batch(
        self,
        worker_id: str,
        queue: str = DEFAULT_QUEUE_NAME,
        limit: int = 50,
        lease_seconds: int = 300,
        now: datetime | None = None,
    ) -> list[Job]:
        """
        Claim up to ``limit`` eligible jobs for a worker.

        Candidates are pending jobs that are due, plus leased jobs whose
        lease has expired. Each candidate is then claimed with its own
        conditional UPDATE; a candidate taken by another worker in between
        simply matches no row and is left out of the batch.

        On PostgreSQL the candidate SELECT also uses FOR UPDATE SKIP LOCKED
        so concurrent claimers spread over different rows.

        Args:
            worker_id: The claiming worker.
            queue: Queue to claim from.
            limit: Maximum number of jobs to claim.
            lease_seconds: Lease length granted on each claimed job.
            now: Claim time (defaults to the current time).

        Returns:
            Claimed jobs in priority order.
        """
        now = now or utcnow()
        locked_until = now + timedelta(seconds=lease_seconds)

        candidates_stmt = (
            select(Job.id)
            .where(self._claimable(queue, now))
            .order_by(Job.priority.desc(), Job.available_at.asc(), Job.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidate_ids = list((await self._session.execute(candidates_stmt)).scalars().all())
        if not candidate_ids:
            return []

        claimed_ids: list[UUID] = []
        for job_id in candidate_ids:
            stmt = (
                update(Job)
                .where(and_(Job.id == job_id, self._claimable(queue, now)))
                .values(
                    status=JobStatus.CLAIMED,
                    locked_by=worker_id,
                    locked_until=locked_until,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount == 1:
                claimed_ids.append(job_id)

        if not claimed_ids:
            return []

        stmt = (
            select(Job)
            .where(Job.id.in_(claimed_ids))
            .order_by(Job.priority.desc(), Job.available_at.asc(), Job.created_at.asc())
            .execution_options(populate_existing=True)
        )
        jobs = list((await self._session.execute(stmt)).scalars().all())

        logger.info(
            f"Claimed {len(jobs)} jobs",
            extra={
                "worker_id": worker_id,
                "queue": queue,
                "job_count": len(jobs),
                "lost": len(candidate_ids) - len(claimed_ids),
            },
        )
        return jobs

    async def start_job(self, job_id: UUID, worker_id: str) -> Job | None:
        """
        Transition job from CLAIMED to PROCESSING.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must hold a live lease).

        Returns:
            Updated Job or None if the lease was lost.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.CLAIMED,
                    Job.locked_by == worker_id,
                    Job.locked_until >= now,
                )
            )
            .values(
                status=JobStatus.PROCESSING,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        logger.debug("Started job execution", extra={"job_id": str(job_id)})
        return await self.get_job(job_id)

    def _owned_by(self, job_id: UUID, worker_id: str):
        return and_(
            Job.id == job_id,
            Job.status.in_(LEASED_STATUSES),
            Job.locked_by == worker_id,
        )

    async def complete_job(
        self,
        job_id: UUID,
        worker_id: str,
        result: dict | None = None,
    ) -> Job | None:
        """
        Mark job as successfully completed.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            result: Optional job result data.

        Returns:
            Updated Job or None if the worker no longer owns the job.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(self._owned_by(job_id, worker_id))
            .values(
                status=JobStatus.COMPLETED,
                completed_at=now,
                updated_at=now,
                locked_by=None,
                locked_until=None,
                result=result,
            )
            .execution_options(synchronize_session=False)
        )

        outcome = await self._session.execute(stmt)
        if outcome.rowcount != 1:
            logger.warning(
                "Completion rejected, lease no longer held",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return None

        return await self.get_job(job_id)

    async def retry_job(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        delay_seconds: float,
    ) -> Job | None:
        """
        Return a failed job to the queue with a delayed availability.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            error: Error message.
            delay_seconds: Backoff before the job becomes due again.

        Returns:
            Updated Job or None if the worker no longer owns the job.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    self._owned_by(job_id, worker_id),
                    Job.attempt + 1 < Job.max_attempts,
                )
            )
            .values(
                status=JobStatus.PENDING,
                attempt=Job.attempt + 1,
                available_at=now + timedelta(seconds=delay_seconds),
                last_error=_truncate(error),
                updated_at=now,
                locked_by=None,
                locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        return await self.get_job(job_id)

    async def fail_job(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        attempt: int,
    ) -> Job | None:
        """
        Mark a job as terminally failed.

        The row stays as a tombstone; the caller inserts the dead letter
        queue entry in the same transaction.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            error: Error message.
            attempt: Final attempt count to record.

        Returns:
            Updated Job or None if the worker no longer owns the job.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(self._owned_by(job_id, worker_id))
            .values(
                status=JobStatus.FAILED,
                attempt=attempt,
                last_error=_truncate(error),
                completed_at=now,
                updated_at=now,
                locked_by=None,
                locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        return await self.get_job(job_id)

    async def recover_expired_leases(self, now: datetime | None = None) -> int:
        """
        Recover jobs with expired leases.

        Jobs in CLAIMED or PROCESSING status whose lease has passed are
        returned to PENDING. Called by the reaper after worker crashes.

        Returns:
            Number of recovered jobs.
        """
        now = now or utcnow()

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.status.in_(LEASED_STATUSES),
                    Job.locked_until < now,
                )
            )
            .values(
                status=JobStatus.PENDING,
                locked_by=None,
                locked_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Recovered {count} jobs with expired leases")

        return count

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        extension_seconds: int,
    ) -> bool:
        """
        Extend the lease on a job (heartbeat).

        An already expired lease is not renewed: the job may have been
        claimed by someone else in the meantime.

        Returns:
            True if lease was extended, False otherwise.
        """
        now = utcnow()

        stmt = (
            update(Job)
            .where(
                and_(
                    self._owned_by(job_id, worker_id),
                    Job.locked_until >= now,
                )
            )
            .values(
                locked_until=now + timedelta(seconds=extension_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def get_queue_depth(self, queue: str | None = None) -> int:
        """
        Get the number of pending jobs.

        Args:
            queue: Optional queue filter.

        Returns:
            Number of pending jobs.
        """
        filters = [Job.status == JobStatus.PENDING]
        if queue is not None:
            filters.append(Job.queue == queue)

        stmt = select(func.count()).select_from(Job).where(and_(*filters))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self, queue: str | None = None) -> dict[str, int]:
        """
        Get job statistics by status.

        Args:
            queue: Optional queue filter.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if queue is not None:
            stmt = stmt.where(Job.queue == queue)

        result = await self._session.execute(stmt)
        stats = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            stats[JobStatus(status).value] = count
        return stats

    async def delete_finished_jobs(
        self,
        status: JobStatus,
        older_than: datetime,
        queue: str | None = None,
    ) -> int:
        """
        Delete completed or failed jobs finished before a cutoff.

        Args:
            status: COMPLETED or FAILED.
            older_than: Cutoff on completed_at.
            queue: Optional queue filter.

        Returns:
            Number of deleted jobs.
        """
        if status not in FINISHED_STATUSES:
            raise ValueError(f"Only finished jobs can be deleted, got {status}")

        filters = [Job.status == status, Job.completed_at < older_than]
        if queue is not None:
            filters.append(Job.queue == queue)

        stmt = delete(Job).where(and_(*filters)).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def delete_pending_job(self, job_id: UUID) -> bool:
        """
        Remove a job that no worker holds.

        Only PENDING rows match, so a job claimed in the meantime is never
        deleted out from under its worker.

        Returns:
            True if the job was deleted.
        """
        stmt = (
            delete(Job)
            .where(and_(Job.id == job_id, Job.status == JobStatus.PENDING))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1
