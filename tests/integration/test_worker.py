"""
Integration tests for worker functionality.

These run the worker, the batch loader, the reaper and the queue manager
together against a real database.
"""

import asyncio
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import update

from jobqueue.config import Settings
from jobqueue.constants import DLQReason, JobStatus, SettlementOutcome
from jobqueue.db.connection import Database
from jobqueue.db.models import DeadLetterQueueEntry, Job, utcnow
from jobqueue.errors import QueueInitializationError, QueueNotInitializedError
from jobqueue.queue.batch_loader import JobBatchLoader
from jobqueue.queue.manager import QueueManager, WorkerConfig
from jobqueue.reaper.main import Reaper
from jobqueue.types.job import EnqueueOptions
from jobqueue.worker.main import QueueWorker


async def expire_lease(manager: QueueManager, job_id: UUID) -> None:
    """Push a job's lease into the past, as if its worker had died."""
    async with manager.database.session() as session:
        await session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(locked_until=utcnow() - timedelta(seconds=1))
        )


async def age_dlq_entry(manager: QueueManager, entry_id: UUID, days: int) -> None:
    async with manager.database.session() as session:
        await session.execute(
            update(DeadLetterQueueEntry)
            .where(DeadLetterQueueEntry.id == entry_id)
            .values(failed_at=utcnow() - timedelta(days=days))
        )


async def wait_for_status(
    manager: QueueManager,
    job_id: UUID,
    status: JobStatus,
    timeout: float = 5.0,
) -> Job:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await manager.get_job(job_id)
        if job.status == status:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Job {job_id} stuck in {job.status}, expected {status}")
        await asyncio.sleep(0.05)


class TestWorkerProcessing:
    """Jobs driven through the worker poll cycle."""

    async def test_successful_job(self, manager: QueueManager, worker: QueueWorker):
        """Test complete job lifecycle: enqueue -> claim -> run -> complete."""
        job_id = await manager.enqueue("echo", {"message": "test"})

        claimed = await worker.poll_once()

        assert claimed == 1
        job = await manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"echo": {"message": "test"}}
        assert job.attempt == 0
        assert job.locked_by is None
        assert job.completed_at is not None

    async def test_empty_queue(self, worker: QueueWorker):
        assert await worker.poll_once() == 0

    async def test_retries_until_dead_lettered(
        self, manager: QueueManager, worker: QueueWorker
    ):
        """A job failing on every attempt ends in the DLQ after max_attempts executions."""
        job_id = await manager.enqueue(
            "failing_job", {}, EnqueueOptions(max_attempts=3)
        )

        for expected_attempt in (1, 2):
            assert await worker.poll_once() == 1
            job = await manager.get_job(job_id)
            assert job.status == JobStatus.PENDING
            assert job.attempt == expected_attempt
            assert job.last_error == f"Intentional failure on attempt {expected_attempt}"

        assert await worker.poll_once() == 1

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt == 3

        entry = await manager.find_dlq_by_job_id(job_id)
        assert entry is not None
        assert entry.reason == DLQReason.MAX_ATTEMPTS_EXCEEDED
        assert entry.attempt == 3
        assert entry.max_attempts == 3
        assert entry.original_job_id == job_id
        assert entry.error == "Intentional failure on attempt 3"
        assert entry.reprocessed is False

        assert await worker.poll_once() == 0

    async def test_recovers_on_retry(self, manager: QueueManager, worker: QueueWorker):
        job_id = await manager.enqueue("failing_job", {"succeed_on_attempt": 2})

        await worker.poll_once()
        await worker.poll_once()

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 1
        assert job.result == {"attempt": 2}
        assert await manager.find_dlq_by_job_id(job_id) is None

    async def test_unknown_job_type_goes_straight_to_dlq(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue("no_such_type", {}, EnqueueOptions(max_attempts=5))

        await worker.poll_once()

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt == 1

        entry = await manager.find_dlq_by_job_id(job_id)
        assert entry.reason == "unknown job type"
        assert entry.attempt == 1
        assert entry.max_attempts == 5

    async def test_terminal_failure_keeps_handler_reason(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue("failing_job", {"terminal": True})

        await worker.poll_once()

        entry = await manager.find_dlq_by_job_id(job_id)
        assert entry.reason == DLQReason.FATAL_ERROR
        assert entry.attempt == 1

    async def test_malformed_payload_field_is_not_retried(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue(
            "sleep", {"duration_seconds": "abc"}, EnqueueOptions(max_attempts=3)
        )

        assert await worker.poll_once() == 1

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt == 1

        entry = await manager.find_dlq_by_job_id(job_id)
        assert entry is not None
        assert entry.reason == DLQReason.INVALID_DATA
        assert "duration_seconds" in entry.error
        assert await worker.poll_once() == 0

    async def test_priority_order_within_batch_size(
        self, manager: QueueManager, worker_config: WorkerConfig, registry
    ):
        worker_config.batch_size = 1
        worker = QueueWorker(manager, registry, worker_config)
        low = await manager.enqueue("echo", {}, EnqueueOptions(priority=1))
        high = await manager.enqueue("echo", {}, EnqueueOptions(priority=10))

        await worker.poll_once()

        assert (await manager.get_job(high)).status == JobStatus.COMPLETED
        assert (await manager.get_job(low)).status == JobStatus.PENDING

    async def test_delayed_job_not_claimed_early(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue("echo", {}, EnqueueOptions(delay_ms=60_000))

        assert await worker.poll_once() == 0
        assert (await manager.get_job(job_id)).status == JobStatus.PENDING


class TestLeases:
    """Lease expiry, reclaim and stale settlement."""

    async def test_expired_lease_is_reclaimed(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue("echo", {"message": "orphan"})
        claimed = await manager.claim_batch("crashed-worker")
        assert [job.id for job in claimed] == [job_id]

        # Live lease: nobody else can take it
        assert await worker.poll_once() == 0

        await expire_lease(manager, job_id)
        assert await worker.poll_once() == 1

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED

    async def test_stale_worker_settlement_is_rejected(self, manager: QueueManager):
        job_id = await manager.enqueue("echo", {})
        [stale] = await manager.claim_batch("slow-worker")
        await expire_lease(manager, job_id)
        [fresh] = await manager.claim_batch("fast-worker")

        assert await manager.complete_job(stale, "slow-worker") == SettlementOutcome.REJECTED
        assert await manager.fail_job(stale, "slow-worker", "late") == SettlementOutcome.REJECTED
        assert (
            await manager.complete_job(fresh, "fast-worker", {"ok": True})
            == SettlementOutcome.COMPLETED
        )

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"ok": True}
        assert await manager.count_dlq_entries() == 0

    async def test_extend_lease(self, manager: QueueManager):
        job_id = await manager.enqueue("echo", {})
        [job] = await manager.claim_batch("worker-1", lease_seconds=30)

        assert await manager.extend_lease(job_id, "worker-1", 600) is True
        assert await manager.extend_lease(job_id, "worker-2", 600) is False

        extended = await manager.get_job(job_id)
        assert extended.locked_until > job.locked_until

    async def test_reaper_recovers_expired_leases(self, manager: QueueManager):
        job_id = await manager.enqueue("echo", {})
        await manager.claim_batch("crashed-worker")
        await expire_lease(manager, job_id)

        result = await Reaper(manager, interval_seconds=1).run_once()

        assert result["recovered"] == 1
        job = await manager.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.locked_by is None
        assert job.locked_until is None

    async def test_reaper_cleans_dlq_once_per_interval(self, manager: QueueManager):
        job_id = await manager.enqueue("failing_job", {"terminal": True})
        [job] = await manager.claim_batch("worker-1")
        await manager.fail_job(job, "worker-1", "boom", terminal=True)
        entry = await manager.find_dlq_by_job_id(job_id)
        await age_dlq_entry(manager, entry.id, days=90)

        reaper = Reaper(manager, interval_seconds=1, dlq_cleanup_interval_seconds=3600)
        first = await reaper.run_once()
        second = await reaper.run_once()

        assert first["dlq_deleted"] == 1
        assert second["dlq_deleted"] == 0
        assert await manager.get_dlq_entry(entry.id) is None


class TestClaimLock:
    """Partition lock around batch claiming."""

    async def test_contended_batch_when_lock_held(
        self, manager: QueueManager, worker_config: WorkerConfig
    ):
        await manager.enqueue("echo", {})
        loader = JobBatchLoader(manager, worker_config)
        held = await manager.acquire_lock(loader.claim_scope, "other-worker", ttl_seconds=30)
        assert held is not None

        batch = await loader.load("worker-1")

        assert batch.contended is True
        assert batch.is_empty

        await manager.release_lock(held)
        batch = await loader.load("worker-1")

        assert batch.contended is False
        assert batch.size == 1

    async def test_lock_released_after_claim(
        self, manager: QueueManager, worker_config: WorkerConfig
    ):
        loader = JobBatchLoader(manager, worker_config)

        await loader.load("worker-1")

        # Another worker can take the claim lock immediately
        lock = await manager.acquire_lock(loader.claim_scope, "worker-2", ttl_seconds=30)
        assert lock is not None

    async def test_extend_and_release_lock(self, manager: QueueManager):
        lock = await manager.acquire_lock("reports:claim", "worker-1", ttl_seconds=5)

        renewed = await manager.extend_lock(lock, ttl_seconds=600)
        assert renewed.expires_at > lock.expires_at

        assert await manager.acquire_lock("reports:claim", "worker-2", ttl_seconds=5) is None
        assert await manager.release_lock(renewed) is True
        assert await manager.acquire_lock("reports:claim", "worker-2", ttl_seconds=5) is not None

    async def test_purge_expired_locks(self, manager: QueueManager):
        await manager.acquire_lock("reports:claim", "worker-1", ttl_seconds=0)
        await asyncio.sleep(0.01)

        assert await manager.purge_expired_locks() == 1

    async def test_claim_without_lock(self, manager: QueueManager, worker_config: WorkerConfig):
        worker_config.claim_lock_enabled = False
        loader = JobBatchLoader(manager, worker_config)
        held = await manager.acquire_lock(loader.claim_scope, "other-worker", ttl_seconds=30)
        await manager.enqueue("echo", {})

        batch = await loader.load("worker-1")

        assert held is not None
        assert batch.size == 1

    async def test_concurrent_claims_do_not_overlap(self, manager: QueueManager):
        for i in range(10):
            await manager.enqueue("echo", {"n": i})

        batches = await asyncio.gather(
            *(manager.claim_batch(f"worker-{n}", limit=4) for n in range(4))
        )

        claimed = [job.id for batch in batches for job in batch]
        assert len(claimed) == 10
        assert len(set(claimed)) == 10


class TestRetryBackoff:
    """Retry delays applied by the manager."""

    async def test_failed_job_waits_out_backoff(
        self, manager: QueueManager, worker: QueueWorker, test_settings: Settings
    ):
        test_settings.retry_backoff_base_ms = 60_000
        job_id = await manager.enqueue("failing_job", {}, EnqueueOptions(max_attempts=3))

        before = utcnow()
        assert await worker.poll_once() == 1
        after = utcnow()

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt == 1
        assert before + timedelta(seconds=60) <= job.available_at <= after + timedelta(seconds=60)

        assert await worker.poll_once() == 0

        async with manager.database.session() as session:
            await session.execute(
                update(Job).where(Job.id == job_id).values(available_at=utcnow())
            )
        assert await worker.poll_once() == 1

    async def test_backoff_grows_with_attempts(
        self, manager: QueueManager, worker: QueueWorker, test_settings: Settings
    ):
        test_settings.retry_backoff_base_ms = 1_000
        test_settings.retry_backoff_factor = 10.0
        job_id = await manager.enqueue("failing_job", {}, EnqueueOptions(max_attempts=5))

        await worker.poll_once()
        first = await manager.get_job(job_id)
        first_delay = first.available_at - first.updated_at

        async with manager.database.session() as session:
            await session.execute(
                update(Job).where(Job.id == job_id).values(available_at=utcnow())
            )
        await worker.poll_once()
        second = await manager.get_job(job_id)
        second_delay = second.available_at - second.updated_at

        assert second.attempt == 2
        assert timedelta(seconds=0.5) < first_delay < timedelta(seconds=1.5)
        assert timedelta(seconds=9.5) < second_delay < timedelta(seconds=10.5)


class TestQueueControl:
    """Removing waiting jobs and pausing queues."""

    async def test_remove_pending_job(self, manager: QueueManager, worker: QueueWorker):
        job_id = await manager.enqueue("echo", {})

        assert await manager.remove_job(job_id) is True
        assert await manager.get_job(job_id) is None
        assert await worker.poll_once() == 0

    async def test_remove_claimed_job_refused(self, manager: QueueManager):
        job_id = await manager.enqueue("echo", {})
        await manager.claim_batch("worker-1")

        assert await manager.remove_job(job_id) is False
        assert (await manager.get_job(job_id)).status == JobStatus.CLAIMED

    async def test_remove_missing_job(self, manager: QueueManager):
        assert await manager.remove_job(uuid4()) is False

    async def test_paused_queue_is_not_claimed(
        self, manager: QueueManager, worker: QueueWorker, worker_config: WorkerConfig
    ):
        job_id = await manager.enqueue("echo", {})
        await manager.pause()

        batch = await JobBatchLoader(manager, worker_config).load("worker-1")
        assert batch.is_empty
        assert batch.paused is True
        assert batch.contended is False
        assert await worker.poll_once() == 0
        assert (await manager.get_job(job_id)).status == JobStatus.PENDING

        await manager.resume()

        assert await worker.poll_once() == 1
        assert (await manager.get_job(job_id)).status == JobStatus.COMPLETED

    async def test_pause_is_per_queue(self, manager: QueueManager, worker: QueueWorker):
        await manager.pause("reports")
        await manager.enqueue("echo", {})

        assert await manager.is_paused("reports") is True
        assert await manager.is_paused() is False
        assert list(await manager.paused_queues()) == ["reports"]
        assert await worker.poll_once() == 1


class TestReprocess:
    """Dead letter queue reprocessing."""

    async def _dead_letter(self, manager: QueueManager, worker: QueueWorker) -> tuple[UUID, DeadLetterQueueEntry]:
        job_id = await manager.enqueue("no_such_type", {"k": "v"}, EnqueueOptions(priority=7))
        await worker.poll_once()
        return job_id, await manager.find_dlq_by_job_id(job_id)

    async def test_reprocess_creates_linked_job(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id, entry = await self._dead_letter(manager, worker)

        new_job_id = await manager.reprocess(entry.id)

        assert new_job_id is not None
        assert new_job_id != job_id
        new_job = await manager.get_job(new_job_id)
        assert new_job.status == JobStatus.PENDING
        assert new_job.attempt == 0
        assert new_job.type == "no_such_type"
        assert new_job.payload == {"k": "v"}
        assert new_job.priority == 7
        assert new_job.original_job_id == job_id

        entry = await manager.get_dlq_entry(entry.id)
        assert entry.reprocessed is True
        assert entry.reprocessed_at is not None
        assert entry.reprocessed_job_id == new_job_id

    async def test_reprocess_twice_returns_none(
        self, manager: QueueManager, worker: QueueWorker
    ):
        _, entry = await self._dead_letter(manager, worker)

        assert await manager.reprocess(entry.id) is not None
        assert await manager.reprocess(entry.id) is None

        jobs, total = await manager.list_jobs()
        assert total == 2

    async def test_reprocess_missing_entry(self, manager: QueueManager):
        assert await manager.reprocess(uuid4()) is None

    async def test_lineage_survives_repeated_failures(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id, entry = await self._dead_letter(manager, worker)

        new_job_id = await manager.reprocess(entry.id)
        await worker.poll_once()

        chain = await manager.find_dlq_by_original_job_id(job_id)
        assert [e.job_id for e in chain] == [job_id, new_job_id]
        assert all(e.original_job_id == job_id for e in chain)

    async def test_mark_reprocessed_is_idempotent(
        self, manager: QueueManager, worker: QueueWorker
    ):
        _, entry = await self._dead_letter(manager, worker)

        first = await manager.mark_dlq_reprocessed(entry.id)
        second = await manager.mark_dlq_reprocessed(entry.id)

        assert first.reprocessed is True
        assert second.reprocessed_at == first.reprocessed_at
        assert await manager.reprocess(entry.id) is None

    async def test_cleanup_skips_reprocessed(
        self, manager: QueueManager, worker: QueueWorker
    ):
        _, kept = await self._dead_letter(manager, worker)
        _, dropped = await self._dead_letter(manager, worker)
        await manager.reprocess(kept.id)
        await age_dlq_entry(manager, kept.id, days=60)
        await age_dlq_entry(manager, dropped.id, days=60)

        deleted = await manager.cleanup_dlq(older_than_days=30)

        assert deleted == 1
        assert await manager.get_dlq_entry(kept.id) is not None
        assert await manager.get_dlq_entry(dropped.id) is None

    async def test_stats_by_reason(self, manager: QueueManager, worker: QueueWorker):
        await self._dead_letter(manager, worker)
        await self._dead_letter(manager, worker)
        terminal = await manager.enqueue("failing_job", {"terminal": True})
        await worker.poll_once()

        stats = await manager.get_dlq_stats_by_reason()

        assert [(s.reason, s.count) for s in stats] == [
            ("unknown job type", 2),
            ("fatal_error", 1),
        ]
        assert (await manager.find_dlq_by_job_id(terminal)).reason == "fatal_error"


class TestQueueManager:
    """Manager lifecycle and introspection."""

    async def test_get_stats(self, manager: QueueManager, worker: QueueWorker):
        await manager.enqueue("echo", {})
        await manager.enqueue("no_such_type", {})
        await worker.poll_once()
        await manager.enqueue("echo", {})

        stats = await manager.get_stats()

        assert stats.pending == 1
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.dlq_size == 1
        assert stats.dlq_unprocessed == 1
        assert stats.total == 3

    async def test_enqueue_to_named_queue(self, manager: QueueManager, worker: QueueWorker):
        job_id = await manager.enqueue("echo", {}, EnqueueOptions(queue="other"))

        assert await worker.poll_once() == 0
        assert (await manager.get_job(job_id)).queue == "other"
        assert (await manager.get_stats("other")).pending == 1
        assert (await manager.get_stats("test-queue")).pending == 0

    async def test_clean_jobs(self, manager: QueueManager, worker: QueueWorker):
        job_id = await manager.enqueue("echo", {})
        await worker.poll_once()

        assert await manager.clean_jobs(JobStatus.COMPLETED, older_than_hours=1) == 0
        assert await manager.clean_jobs(JobStatus.COMPLETED, older_than_hours=-1) == 1
        assert await manager.get_job(job_id) is None

    async def test_initialize_is_idempotent(self, manager: QueueManager):
        await manager.initialize()

        assert manager.is_initialized
        assert await manager.ping() is True

    async def test_not_initialized(self, test_settings: Settings):
        manager = QueueManager(Database(test_settings.database_url, test_settings), test_settings)

        with pytest.raises(QueueNotInitializedError):
            await manager.get_job(uuid4())

    async def test_initialize_failure(self, tmp_path, test_settings: Settings):
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'queue.db'}"
        manager = QueueManager(Database(url, test_settings), test_settings)

        with pytest.raises(QueueInitializationError):
            await manager.initialize()

        assert manager.is_initialized is False
        assert manager.database.is_connected is False

    async def test_close_and_reinitialize(self, manager: QueueManager):
        await manager.close()

        with pytest.raises(QueueNotInitializedError):
            await manager.enqueue("echo", {})

        await manager.initialize()
        assert await manager.enqueue("echo", {}) is not None


class TestWorkerLifecycle:
    """Running the worker loop and shutting it down."""

    async def test_start_processes_jobs_until_stopped(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue("echo", {"message": "loop"})

        task = asyncio.create_task(worker.start())
        await wait_for_status(manager, job_id, JobStatus.COMPLETED)

        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert worker.is_running is False

    async def test_stop_drains_in_flight_jobs(
        self, manager: QueueManager, worker: QueueWorker
    ):
        job_id = await manager.enqueue("sleep", {"duration_seconds": 0.3})

        task = asyncio.create_task(worker.start())
        await wait_for_status(manager, job_id, JobStatus.PROCESSING)

        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        job = await manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert worker.in_flight == 0

    async def test_shutdown_timeout_cancels_long_jobs(
        self, manager: QueueManager, registry, worker_config: WorkerConfig
    ):
        worker_config.shutdown_timeout = 0.1
        worker = QueueWorker(manager, registry, worker_config)
        job_id = await manager.enqueue("sleep", {"duration_seconds": 30})

        task = asyncio.create_task(worker.start())
        await wait_for_status(manager, job_id, JobStatus.PROCESSING)

        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        # Left leased; the reaper returns it to the queue after expiry
        job = await manager.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert worker.in_flight == 0
