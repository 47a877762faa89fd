"""
Dead letter queue repository.
Data access for jobs that failed permanently.
"""

import logging
from datetime import timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import DEFAULT_QUEUE_NAME, MAX_ERROR_LENGTH
from jobqueue.db.models import DeadLetterQueueEntry, utcnow
from jobqueue.types.job import ReasonCount

logger = logging.getLogger(__name__)


class DeadLetterQueueRepository:
    """
    Repository for dead letter queue entries.

    Entries are written once by the queue manager and afterwards only the
    reprocess fields change. The caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_entry(
        self,
        job_id: UUID,
        original_job_id: UUID,
        job_type: str,
        payload: dict[str, Any],
        reason: str,
        attempt: int,
        max_attempts: int,
        error: str | None = None,
        priority: int = 5,
        queue: str = DEFAULT_QUEUE_NAME,
    ) -> DeadLetterQueueEntry:
        """
        Insert a new dead letter queue entry.

        Args:
            job_id: The failed job.
            original_job_id: Lineage root of the failed job.
            job_type: Handler key of the failed job.
            payload: The job payload, kept for reprocessing.
            reason: Why the job was dead-lettered.
            attempt: Number of executions made.
            max_attempts: The job's attempt limit.
            error: Last error text.
            priority: The job's priority, reused on reprocess.
            queue: Queue the job belonged to.

        Returns:
            The created entry.
        """
        entry = DeadLetterQueueEntry(
            job_id=job_id,
            original_job_id=original_job_id,
            queue=queue,
            type=job_type,
            payload=payload,
            reason=reason,
            error=error[:MAX_ERROR_LENGTH] if error else None,
            attempt=attempt,
            max_attempts=max_attempts,
            priority=priority,
            failed_at=utcnow(),
            reprocessed=False,
        )
        self._session.add(entry)
        await self._session.flush()

        logger.info(
            "Job moved to dead letter queue",
            extra={
                "dlq_entry_id": str(entry.id),
                "job_id": str(job_id),
                "reason": reason,
                "attempt": attempt,
            },
        )
        return entry

    async def get_entry(self, entry_id: UUID) -> DeadLetterQueueEntry | None:
        stmt = (
            select(DeadLetterQueueEntry)
            .where(DeadLetterQueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_job_id(self, job_id: UUID) -> DeadLetterQueueEntry | None:
        """Get the most recent entry recorded for a job."""
        stmt = (
            select(DeadLetterQueueEntry)
            .where(DeadLetterQueueEntry.job_id == job_id)
            .order_by(DeadLetterQueueEntry.failed_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_original_job_id(
        self, original_job_id: UUID
    ) -> Sequence[DeadLetterQueueEntry]:
        """Get every entry of a reprocessing chain, oldest first."""
        stmt = (
            select(DeadLetterQueueEntry)
            .where(DeadLetterQueueEntry.original_job_id == original_job_id)
            .order_by(DeadLetterQueueEntry.failed_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_recent_failures(
        self,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[DeadLetterQueueEntry]:
        """Get entries ordered by failure time, newest first."""
        stmt = (
            select(DeadLetterQueueEntry)
            .order_by(DeadLetterQueueEntry.failed_at.desc(), DeadLetterQueueEntry.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_by_reason(
        self,
        reason: str,
        limit: int = 50,
    ) -> Sequence[DeadLetterQueueEntry]:
        """Get entries with an exact reason, newest first."""
        stmt = (
            select(DeadLetterQueueEntry)
            .where(DeadLetterQueueEntry.reason == reason)
            .order_by(DeadLetterQueueEntry.failed_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def mark_as_reprocessed(
        self,
        entry_id: UUID,
        reprocessed_job_id: UUID | None = None,
    ) -> DeadLetterQueueEntry | None:
        """
        Flag an entry as reprocessed.

        The flag is only ever set once; marking an entry that is already
        reprocessed leaves it untouched and returns it as is.

        Args:
            entry_id: The entry to mark.
            reprocessed_job_id: The job created from the entry, if any.

        Returns:
            The entry, or None if it does not exist.
        """
        stmt = (
            update(DeadLetterQueueEntry)
            .where(
                and_(
                    DeadLetterQueueEntry.id == entry_id,
                    DeadLetterQueueEntry.reprocessed.is_(False),
                )
            )
            .values(
                reprocessed=True,
                reprocessed_at=utcnow(),
                reprocessed_job_id=reprocessed_job_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 1:
            logger.info(
                "Marked dead letter queue entry as reprocessed",
                extra={"dlq_entry_id": str(entry_id)},
            )

        return await self.get_entry(entry_id)

    async def get_stats_by_reason(self) -> list[ReasonCount]:
        """
        Count entries per reason.

        Returns:
            Reason counts, largest first and ties broken by reason.
        """
        count = func.count().label("count")
        stmt = (
            select(DeadLetterQueueEntry.reason, count)
            .group_by(DeadLetterQueueEntry.reason)
            .order_by(count.desc(), DeadLetterQueueEntry.reason.asc())
        )
        result = await self._session.execute(stmt)
        return [ReasonCount(reason=reason, count=n) for reason, n in result.all()]

    async def count_entries(self, reprocessed: bool | None = None) -> int:
        stmt = select(func.count()).select_from(DeadLetterQueueEntry)
        if reprocessed is not None:
            stmt = stmt.where(DeadLetterQueueEntry.reprocessed.is_(reprocessed))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def cleanup_old_entries(self, older_than_days: int = 30) -> int:
        """
        Delete old entries that were never reprocessed.

        Reprocessed entries are kept as the audit trail of their chain.

        Args:
            older_than_days: Retention window in days.

        Returns:
            Number of deleted entries.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        stmt = (
            delete(DeadLetterQueueEntry)
            .where(
                and_(
                    DeadLetterQueueEntry.failed_at < cutoff,
                    DeadLetterQueueEntry.reprocessed.is_(False),
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(
                f"Removed {count} dead letter queue entries",
                extra={"older_than_days": older_than_days},
            )
        return count
