"""
Concurrency lock repository.

A lock is one row in ``queue_locks`` keyed by scope. Taking a lock is a
single upsert that either inserts the row or overwrites it when the
previous holder's lease has expired, so two owners can never both succeed.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.connection import dialect_insert
from jobqueue.db.models import QueueLock, utcnow
from jobqueue.types.job import ConcurrencyLock

logger = logging.getLogger(__name__)


def _to_lock(row: QueueLock) -> ConcurrencyLock:
    return ConcurrencyLock(
        scope=row.scope,
        owner_id=row.owner_id,
        acquired_at=row.acquired_at,
        expires_at=row.expires_at,
    )


class LockRepository:
    """Repository for short-lived concurrency locks."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def acquire(
        self,
        scope: str,
        owner_id: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> ConcurrencyLock | None:
        """
        Try to take the lock for a scope.

        Args:
            scope: Lock key.
            owner_id: Identity of the caller.
            ttl_seconds: Lease length.
            now: Acquisition time (defaults to the current time).

        Returns:
            The held lock, or None if another owner holds a live lock.
        """
        now = now or utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        stmt = dialect_insert(self._session, QueueLock).values(
            scope=scope,
            owner_id=owner_id,
            acquired_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[QueueLock.scope],
            set_={
                "owner_id": stmt.excluded.owner_id,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=QueueLock.expires_at < now,
        )

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            logger.debug("Lock already held", extra={"scope": scope, "owner_id": owner_id})
            return None

        return ConcurrencyLock(
            scope=scope,
            owner_id=owner_id,
            acquired_at=now,
            expires_at=expires_at,
        )

    async def release(self, scope: str, owner_id: str) -> bool:
        """Delete the lock if the caller still owns it."""
        stmt = delete(QueueLock).where(
            and_(QueueLock.scope == scope, QueueLock.owner_id == owner_id)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def extend(
        self,
        scope: str,
        owner_id: str,
        ttl_seconds: int,
    ) -> ConcurrencyLock | None:
        """
        Renew a live lock held by the caller.

        Returns:
            The renewed lock, or None if it expired or changed owner.
        """
        now = utcnow()
        stmt = (
            update(QueueLock)
            .where(
                and_(
                    QueueLock.scope == scope,
                    QueueLock.owner_id == owner_id,
                    QueueLock.expires_at >= now,
                )
            )
            .values(expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None
        return await self.get(scope)

    async def get(self, scope: str) -> ConcurrencyLock | None:
        """Get the current lock row for a scope, live or expired."""
        stmt = (
            select(QueueLock)
            .where(QueueLock.scope == scope)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _to_lock(row) if row is not None else None

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every expired lock row."""
        stmt = delete(QueueLock).where(QueueLock.expires_at < (now or utcnow()))
        result = await self._session.execute(stmt)
        return result.rowcount
