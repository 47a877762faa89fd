"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find jobs with expired leases and
returns them to the queue. This handles worker crashes and ensures
at-least-once delivery. It also drops stale lock rows and, once per
configured interval, old dead letter queue entries.
"""

import asyncio
import logging
import signal
import time

from jobqueue.config import get_settings
from jobqueue.db.connection import Database
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.tracing import setup_tracing
from jobqueue.queue.manager import QueueManager

logger = logging.getLogger(__name__)

DLQ_CLEANUP_INTERVAL_SECONDS = 3600


class Reaper:
    """
    Periodic maintenance for the queue.

    Each run:
    1. Returns CLAIMED/PROCESSING jobs with an expired lease to PENDING
    2. Deletes expired concurrency lock rows
    3. Purges unreprocessed DLQ entries past retention, at most hourly
    """

    def __init__(
        self,
        manager: QueueManager,
        interval_seconds: int | None = None,
        dlq_cleanup_interval_seconds: float = DLQ_CLEANUP_INTERVAL_SECONDS,
    ):
        """
        Initialize the reaper.

        Args:
            manager: The queue manager.
            interval_seconds: Seconds between reaper runs.
            dlq_cleanup_interval_seconds: Seconds between DLQ cleanups.
        """
        self._manager = manager
        self.interval = interval_seconds or manager.settings.reaper_interval_seconds
        self.dlq_cleanup_interval = dlq_cleanup_interval_seconds
        self._last_dlq_cleanup: float | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop."""
        await self._manager.initialize()
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> dict[str, int]:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Counts of recovered jobs, purged locks and deleted DLQ entries.
        """
        recovered = await self._manager.recover_expired_leases()
        if recovered > 0:
            logger.info(f"Recovered {recovered} expired leases")

        purged_locks = await self._manager.purge_expired_locks()

        deleted = 0
        now = time.monotonic()
        if (
            self._last_dlq_cleanup is None
            or now - self._last_dlq_cleanup >= self.dlq_cleanup_interval
        ):
            deleted = await self._manager.cleanup_dlq()
            self._last_dlq_cleanup = now

        return {
            "recovered": recovered,
            "purged_locks": purged_locks,
            "dlq_deleted": deleted,
        }


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings, component="reaper")
    setup_tracing(settings, component="reaper")

    manager = QueueManager(Database(settings=settings), settings)
    reaper = Reaper(manager)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await manager.close()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
