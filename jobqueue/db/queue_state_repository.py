"""
Queue state repository.

Holds the pause switch of each queue. Workers read it before claiming,
so pausing takes effect from their next poll; jobs already claimed run
to completion.
"""

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.connection import dialect_insert
from jobqueue.db.models import QueueState, utcnow


class QueueStateRepository:
    """Repository for per-queue switches."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def set_paused(self, queue: str, paused: bool) -> None:
        """Pause or resume a queue. Setting the current value again is a no-op."""
        now = utcnow()
        stmt = dialect_insert(self._session, QueueState).values(
            queue=queue,
            paused=paused,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[QueueState.queue],
            set_={"paused": stmt.excluded.paused, "updated_at": stmt.excluded.updated_at},
        )
        await self._session.execute(stmt)

    async def is_paused(self, queue: str) -> bool:
        stmt = select(QueueState.paused).where(QueueState.queue == queue)
        paused = (await self._session.execute(stmt)).scalar_one_or_none()
        return bool(paused)

    async def paused_queues(self) -> Sequence[str]:
        stmt = (
            select(QueueState.queue)
            .where(QueueState.paused.is_(True))
            .order_by(QueueState.queue)
        )
        return (await self._session.execute(stmt)).scalars().all()
