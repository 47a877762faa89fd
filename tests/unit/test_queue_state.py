"""
Unit tests for the per-queue pause switch.
"""

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.queue_state_repository import QueueStateRepository


class TestQueueStateRepository:
    """Tests for QueueStateRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> QueueStateRepository:
        return QueueStateRepository(db_session)

    async def test_unknown_queue_is_running(self, repo: QueueStateRepository):
        assert await repo.is_paused("reports") is False

    async def test_pause_and_resume(self, repo: QueueStateRepository, db_session: AsyncSession):
        await repo.set_paused("reports", True)
        await db_session.commit()
        assert await repo.is_paused("reports") is True

        await repo.set_paused("reports", False)
        await db_session.commit()
        assert await repo.is_paused("reports") is False

    async def test_pause_is_idempotent_and_per_queue(
        self, repo: QueueStateRepository, db_session: AsyncSession
    ):
        await repo.set_paused("reports", True)
        await repo.set_paused("reports", True)
        await repo.set_paused("emails", False)
        await db_session.commit()

        assert await repo.is_paused("emails") is False
        assert list(await repo.paused_queues()) == ["reports"]
