"""
Batch loading for workers.
"""

import logging
from uuid import uuid4

from jobqueue.constants import CLAIM_LOCK_SUFFIX
from jobqueue.db.models import utcnow
from jobqueue.queue.manager import QueueManager, WorkerConfig
from jobqueue.types.job import JobBatch

logger = logging.getLogger(__name__)


class JobBatchLoader:
    """
    Claims the next batch of jobs for a worker.

    While claiming, the loader holds a short partition lock on the queue
    so that workers polling at the same moment take turns rather than
    racing over the same candidate rows. A worker that finds the lock
    held gets an empty, contended batch and simply polls again later.
    Per-job claiming stays correct without the lock, which is why it
    can be switched off.

    A paused queue yields an empty batch flagged ``paused`` without
    touching the claim lock.
    """

    def __init__(self, manager: QueueManager, config: WorkerConfig):
        self._manager = manager
        self._config = config

    @property
    def claim_scope(self) -> str:
        return f"{self._config.queue_name}:{CLAIM_LOCK_SUFFIX}"

    async def load(self, worker_id: str) -> JobBatch:
        """
        Claim up to ``batch_size`` jobs for a worker.

        Args:
            worker_id: The claiming worker.

        Returns:
            The claimed batch, possibly empty. ``paused`` and ``contended``
            tell why a poll claimed nothing.
        """
        batch = JobBatch(batch_id=uuid4().hex, worker_id=worker_id, loaded_at=utcnow())

        if await self._manager.is_paused(self._config.queue_name):
            logger.debug(
                "Queue paused, not claiming",
                extra={"worker_id": worker_id, "queue": self._config.queue_name},
            )
            batch.paused = True
            return batch

        if not self._config.claim_lock_enabled:
            batch.jobs = await self._claim(worker_id)
            return batch

        lock = await self._manager.acquire_lock(
            self.claim_scope,
            owner_id=worker_id,
            ttl_seconds=self._config.claim_lock_ttl,
        )
        if lock is None:
            logger.debug(
                "Claim lock held by another worker",
                extra={"worker_id": worker_id, "scope": self.claim_scope},
            )
            batch.contended = True
            return batch

        try:
            batch.jobs = await self._claim(worker_id)
        finally:
            await self._manager.release_lock(lock)

        return batch

    async def _claim(self, worker_id: str):
        return await self._manager.claim_batch(
            worker_id=worker_id,
            queue=self._config.queue_name,
            limit=self._config.batch_size,
            lease_seconds=self._config.lease_duration,
        )
