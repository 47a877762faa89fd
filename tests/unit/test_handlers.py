"""
Unit tests for job handlers.
"""

import asyncio
from uuid import uuid4

import httpx
import pytest

from jobqueue.constants import DLQReason, JobStatus
from jobqueue.db.models import Job, utcnow
from jobqueue.types.job import HandlerMetadata, JobResult
from jobqueue.worker.handlers import (
    HandlerRegistry,
    InvalidPayloadError,
    execute_job,
    validate_payload,
)
from jobqueue.worker.jobs import (
    build_default_registry,
    handle_echo,
    handle_failing_job,
    handle_http_request,
)


def make_job(job_type: str = "echo", payload=None, attempt: int = 0, max_attempts: int = 3) -> Job:
    return Job(
        id=uuid4(),
        queue="test-queue",
        type=job_type,
        payload={"message": "test"} if payload is None else payload,
        status=JobStatus.PROCESSING,
        priority=5,
        attempt=attempt,
        max_attempts=max_attempts,
        created_at=utcnow(),
    )


class TestHandlerRegistry:
    """Tests for the handler registry."""

    def test_register_decorator(self):
        registry = HandlerRegistry()

        @registry.register("greet")
        async def greet(payload, job_id, logger, metadata) -> JobResult:
            return JobResult(success=True)

        assert "greet" in registry
        assert registry.get("greet") is greet
        assert registry.job_types() == ["greet"]

    def test_get_unknown_type(self):
        assert HandlerRegistry().get("nonexistent") is None

    def test_default_registry(self):
        registry = build_default_registry()

        assert "echo" in registry
        assert "sleep" in registry
        assert "failing_job" in registry
        assert "http:request" in registry
        assert registry.get("echo") is handle_echo
        # Needs a manager
        assert "maintenance:dlq_cleanup" not in registry


class TestPayloadValidation:
    def test_accepts_object(self):
        assert validate_payload({"a": 1}) == {"a": 1}

    @pytest.mark.parametrize("payload", [None, "text", [1, 2], 42])
    def test_rejects_non_object(self, payload):
        with pytest.raises(InvalidPayloadError):
            validate_payload(payload)

    def test_rejects_script_content(self):
        with pytest.raises(InvalidPayloadError, match="field: name"):
            validate_payload({"name": "<script>alert(1)</script>"})


class TestExecuteJob:
    """Tests for execute_job outcome classification."""

    @pytest.fixture
    def registry(self) -> HandlerRegistry:
        return build_default_registry()

    async def test_success(self, registry: HandlerRegistry):
        job = make_job("echo", {"message": "hi"})

        result = await execute_job(registry, job)

        assert result.success is True
        assert result.output == {"echo": {"message": "hi"}}
        assert result.duration_ms is not None

    async def test_unknown_job_type_is_terminal(self, registry: HandlerRegistry):
        result = await execute_job(registry, make_job("nonexistent"))

        assert result.success is False
        assert result.terminal is True
        assert result.reason == DLQReason.UNKNOWN_JOB_TYPE
        assert result.reason == "unknown job type"

    async def test_invalid_payload_is_terminal(self, registry: HandlerRegistry):
        result = await execute_job(registry, make_job("echo", payload=["not", "an", "object"]))

        assert result.success is False
        assert result.terminal is True
        assert result.reason == DLQReason.INVALID_DATA

    async def test_handler_exception_is_retriable(self):
        registry = HandlerRegistry()

        @registry.register("explode")
        async def explode(payload, job_id, logger, metadata):
            raise RuntimeError("kaboom")

        result = await execute_job(registry, make_job("explode"))

        assert result.success is False
        assert result.terminal is False
        assert "kaboom" in result.error

    async def test_timeout_is_retriable(self, registry: HandlerRegistry):
        result = await execute_job(
            registry, make_job("sleep", {"duration_seconds": 5}), timeout=0.05
        )

        assert result.success is False
        assert result.terminal is False
        assert result.reason == DLQReason.TIMEOUT

    async def test_non_result_return_is_failure(self):
        registry = HandlerRegistry()

        @registry.register("sloppy")
        async def sloppy(payload, job_id, logger, metadata):
            return {"done": True}

        result = await execute_job(registry, make_job("sloppy"))

        assert result.success is False

    async def test_metadata_attempt_is_one_based(self):
        registry = HandlerRegistry()
        seen: list[HandlerMetadata] = []

        @registry.register("inspect")
        async def inspect(payload, job_id, logger, metadata):
            seen.append(metadata)
            return JobResult(success=True)

        job = make_job("inspect", attempt=2, max_attempts=3)
        await execute_job(registry, job)

        assert seen[0].attempt == 3
        assert seen[0].max_attempts == 3
        assert seen[0].is_last_attempt is True
        assert seen[0].remaining_attempts == 0
        assert seen[0].queued_at == job.created_at

    async def test_handler_rejecting_payload_is_terminal(self):
        registry = HandlerRegistry()

        @registry.register("strict")
        async def strict(payload, job_id, logger, metadata):
            raise InvalidPayloadError("'count' must be a number")

        result = await execute_job(registry, make_job("strict"))

        assert result.success is False
        assert result.terminal is True
        assert result.reason == DLQReason.INVALID_DATA
        assert "count" in result.error

    @pytest.mark.parametrize(
        "job_type,payload",
        [
            ("sleep", {"duration_seconds": "abc"}),
            ("sleep", {"duration_seconds": -1}),
            ("failing_job", {"succeed_on_attempt": "2"}),
            ("http:request", {"url": "https://ok.test", "headers": ["x"]}),
        ],
    )
    async def test_builtin_malformed_fields_are_terminal(self, job_type, payload):
        result = await execute_job(build_default_registry(), make_job(job_type, payload))

        assert result.success is False
        assert result.terminal is True
        assert result.reason == DLQReason.INVALID_DATA


class TestBuiltinHandlers:
    """Tests for the built-in handlers."""

    @pytest.fixture
    def metadata(self) -> HandlerMetadata:
        now = utcnow()
        return HandlerMetadata(attempt=1, max_attempts=3, queued_at=now, processing_at=now)

    @pytest.fixture
    def logger(self):
        import structlog

        return structlog.get_logger("test")

    async def test_failing_handler(self, metadata, logger):
        result = await handle_failing_job({}, uuid4(), logger, metadata)

        assert result.success is False
        assert "Intentional failure on attempt 1" in result.error
        assert result.terminal is False

    async def test_failing_handler_terminal(self, metadata, logger):
        result = await handle_failing_job({"terminal": True}, uuid4(), logger, metadata)

        assert result.terminal is True
        assert result.reason == DLQReason.FATAL_ERROR

    async def test_failing_handler_recovers(self, metadata, logger):
        result = await handle_failing_job({"succeed_on_attempt": 1}, uuid4(), logger, metadata)

        assert result.success is True

    async def test_failing_handler_rejects_bool_attempt(self, metadata, logger):
        with pytest.raises(InvalidPayloadError):
            await handle_failing_job({"succeed_on_attempt": True}, uuid4(), logger, metadata)

    async def test_http_request_missing_url(self, metadata, logger):
        result = await handle_http_request({}, uuid4(), logger, metadata)

        assert result.success is False
        assert result.terminal is True

    async def test_http_request_classifies_status(self, metadata, logger, monkeypatch):
        responses = {"https://ok.test": 200, "https://missing.test": 404, "https://down.test": 503}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(responses[str(request.url).rstrip("/")], text="body")

        original = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return original(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)

        ok = await handle_http_request({"url": "https://ok.test"}, uuid4(), logger, metadata)
        missing = await handle_http_request({"url": "https://missing.test"}, uuid4(), logger, metadata)
        down = await handle_http_request({"url": "https://down.test"}, uuid4(), logger, metadata)

        assert ok.success is True
        assert ok.output["status_code"] == 200
        assert missing.success is False and missing.terminal is True
        assert down.success is False and down.terminal is False

    async def test_sleep_handler_can_be_cancelled(self):
        registry = build_default_registry()
        task = asyncio.create_task(
            execute_job(registry, make_job("sleep", {"duration_seconds": 10}))
        )
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
