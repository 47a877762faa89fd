"""
Unit tests for logging and tracing helpers.
"""

from uuid import uuid4

import structlog

from jobqueue.constants import JobStatus
from jobqueue.db.models import Job, utcnow
from jobqueue.observability.logging import get_job_logger, stringify_ids
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import job_span


def make_job() -> Job:
    return Job(
        id=uuid4(),
        queue="test-queue",
        type="echo",
        payload={},
        status=JobStatus.PROCESSING,
        priority=5,
        attempt=1,
        max_attempts=3,
        created_at=utcnow(),
    )


class TestLogging:
    def test_stringify_ids(self):
        job_id = uuid4()

        event = stringify_ids(None, "info", {"job_id": job_id, "count": 3})

        assert event == {"job_id": str(job_id), "count": 3}

    def test_job_logger_is_bound_to_job(self):
        job = make_job()

        logger = get_job_logger(job, attempt=2)
        bound = structlog.get_context(logger.bind())

        assert bound["job_id"] == str(job.id)
        assert bound["job_type"] == "echo"
        assert bound["queue"] == "test-queue"
        assert bound["attempt"] == 2


class TestTracing:
    def test_job_span_without_provider(self):
        # Falls back to the no-op tracer
        with job_span("test.span", make_job(), reason=None, terminal=True) as span:
            span.set_attribute("extra", 1)


class TestMetrics:
    def test_singleton(self):
        assert get_metrics() is get_metrics()

    def test_exposition_contains_queue_metrics(self):
        metrics = get_metrics()
        metrics.record_job_settled("test-queue", "completed", 0.25)
        metrics.record_dlq_moved("test-queue", "timeout")

        text = metrics.get_metrics().decode()

        assert "jobs_settled_total" in text
        assert "dlq_moved_total" in text
