"""
Worker process for executing jobs.

The worker pulls batches of jobs from the queue, executes them with
bounded concurrency, and settles each one according to the retry policy
of the queue manager.
"""

import asyncio
import logging
import signal
from uuid import UUID

from jobqueue.config import get_settings
from jobqueue.constants import SPAN_EXECUTE_JOB, SettlementOutcome
from jobqueue.db.connection import Database
from jobqueue.db.models import Job
from jobqueue.observability.logging import bind_context, setup_logging
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import job_span, setup_tracing
from jobqueue.queue.batch_loader import JobBatchLoader
from jobqueue.queue.manager import QueueManager, WorkerConfig, default_worker_id
from jobqueue.queue.retry import retry_transient
from jobqueue.types.job import JobResult
from jobqueue.worker.handlers import HandlerRegistry, execute_job
from jobqueue.worker.jobs import build_default_registry

logger = logging.getLogger(__name__)

MAX_POLL_BACKOFF_SECONDS = 60.0


class QueueWorker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Batch claiming guarded by a partition lock
    - Bounded concurrency with a semaphore
    - Heartbeat to extend leases for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT with a bounded drain
    - Retry and DLQ handling through the queue manager
    """

    def __init__(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        config: WorkerConfig | None = None,
    ):
        """
        Initialize the worker.

        Args:
            manager: Initialized or not yet initialized queue manager.
            registry: Handlers for the job types this worker runs.
            config: Worker configuration. Defaults to the environment.
        """
        self.config = config or WorkerConfig.from_settings(manager.settings)
        self.worker_id = self.config.worker_id or default_worker_id()

        self._manager = manager
        self._registry = registry
        self._loader = JobBatchLoader(manager, self.config)
        self._semaphore = asyncio.Semaphore(self.config.concurrency)

        self._running = False
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._poll_errors = 0
        self._metrics = get_metrics()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._current_jobs)

    async def start(self) -> None:
        """
        Run the worker until stop() is called.

        Raises:
            QueueInitializationError: If the queue store cannot be reached.
        """
        await self._manager.initialize()
        bind_context(worker_id=self.worker_id)

        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "queue": self.config.queue_name,
                "concurrency": self.config.concurrency,
                "batch_size": self.config.batch_size,
                "job_types": self._registry.job_types(),
            },
        )

        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        while not self._stopping:
            try:
                claimed = await self.poll_once()
                self._poll_errors = 0
            except Exception as e:
                self._poll_errors += 1
                delay = min(
                    self.config.processing_interval_seconds * 2 ** (self._poll_errors - 1),
                    MAX_POLL_BACKOFF_SECONDS,
                )
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id, "retry_in": delay},
                )
                await self._sleep(delay)
                continue

            if claimed == 0:
                await self._sleep(self.config.processing_interval_seconds)

        await self._drain()

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        self._running = False
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop polling; in-flight jobs get the shutdown timeout to finish."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stopping = True
        self._stop_event.set()

    async def poll_once(self) -> int:
        """
        Load one batch and run it to completion.

        Returns early, leaving jobs in flight, when the worker is stopped.

        Returns:
            Number of jobs claimed.
        """
        batch = await self._loader.load(self.worker_id)
        if batch.is_empty:
            return 0

        logger.info(
            f"Claimed {batch.size} jobs",
            extra={"worker_id": self.worker_id, "batch_id": batch.batch_id},
        )

        tasks = []
        for job in batch.jobs:
            task = asyncio.create_task(self._process_job(job))
            self._current_jobs[job.id] = task
            tasks.append(task)

        await self._wait_for(tasks)
        return batch.size

    async def _wait_for(self, tasks: list[asyncio.Task]) -> None:
        batch_done = asyncio.gather(*tasks, return_exceptions=True)
        stop_requested = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                {batch_done, stop_requested},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_requested.cancel()

    async def _process_job(self, job: Job) -> None:
        """
        Execute a single job.

        Handles the full lifecycle:
        1. Transition to PROCESSING
        2. Execute the handler
        3. Settle as completed, retried or dead-lettered
        """
        try:
            async with self._semaphore:
                if self._stopping:
                    # Not started; the lease runs out and another worker takes it
                    return

                started = await retry_transient(
                    lambda: self._manager.start_job(job.id, self.worker_id)
                )
                if started is None:
                    logger.warning(
                        "Failed to start job - lease may have expired",
                        extra={"job_id": str(job.id)},
                    )
                    return

                with job_span(SPAN_EXECUTE_JOB, started, worker_id=self.worker_id) as span:
                    result = await execute_job(
                        self._registry,
                        started,
                        timeout=self.config.job_timeout,
                        processing_at=started.started_at,
                    )
                    span.set_attribute("success", result.success)

                outcome = await self._settle(started, result)

            self._metrics.record_job_settled(
                queue=started.queue,
                outcome=outcome.value,
                duration_seconds=(result.duration_ms or 0.0) / 1000,
            )
            logger.info(
                f"Job settled: {outcome}",
                extra={
                    "job_id": str(started.id),
                    "job_type": started.type,
                    "attempt": started.attempt + 1,
                    "duration_ms": result.duration_ms,
                },
            )

        except Exception as e:
            # Left unsettled; the lease expires and the job is picked up again
            logger.exception(
                "Exception processing job",
                extra={"job_id": str(job.id), "error": str(e)},
            )

        finally:
            self._current_jobs.pop(job.id, None)

    async def _settle(self, job: Job, result: JobResult) -> SettlementOutcome:
        if result.success:
            return await retry_transient(
                lambda: self._manager.complete_job(job, self.worker_id, result.output)
            )

        return await retry_transient(
            lambda: self._manager.fail_job(
                job,
                self.worker_id,
                result.error or "Unknown error",
                terminal=result.terminal,
                reason=result.reason,
            )
        )

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on claimed and running jobs.

        This prevents jobs from being reclaimed while they're still
        being executed.
        """
        while not self._stopping or self._current_jobs:
            try:
                await asyncio.sleep(self.config.heartbeat_interval)

                for job_id in list(self._current_jobs.keys()):
                    extended = await self._manager.extend_lease(
                        job_id, self.worker_id, self.config.lease_duration
                    )
                    if not extended:
                        logger.warning("Lease lost", extra={"job_id": str(job_id)})

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking up early when the worker is stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _drain(self) -> None:
        if not self._current_jobs:
            return

        logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
        _, pending = await asyncio.wait(
            list(self._current_jobs.values()),
            timeout=self.config.shutdown_timeout,
        )
        if pending:
            logger.warning(
                f"Cancelling {len(pending)} jobs still running after shutdown timeout",
                extra={"worker_id": self.worker_id},
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings, component="worker")
    setup_tracing(settings, component="worker")

    manager = QueueManager(Database(settings=settings), settings)
    worker = QueueWorker(manager, build_default_registry(manager))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await manager.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
