"""
Built-in job handlers.
"""

import asyncio
from typing import TYPE_CHECKING, Any
from uuid import UUID

import httpx
import structlog

from jobqueue.constants import DLQReason
from jobqueue.types.job import HandlerMetadata, JobResult
from jobqueue.worker.handlers import HandlerRegistry, InvalidPayloadError, JobHandler

if TYPE_CHECKING:
    from jobqueue.queue.manager import QueueManager

BoundLogger = structlog.stdlib.BoundLogger


def _number_field(
    payload: dict[str, Any],
    name: str,
    default: float | None = None,
    integer: bool = False,
) -> float | None:
    """
    Read a non-negative number from a payload.

    Raises:
        InvalidPayloadError: If the field is present but not a usable number.
    """
    value = payload.get(name, default)
    if value is None:
        return None

    expected = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, expected):
        kind = "an integer" if integer else "a number"
        raise InvalidPayloadError(f"'{name}' must be {kind}, got {value!r}")
    if value < 0:
        raise InvalidPayloadError(f"'{name}' must not be negative, got {value}")
    return value


async def handle_echo(
    payload: dict[str, Any], job_id: UUID, logger: BoundLogger, metadata: HandlerMetadata
) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    logger.info("Echo job executing")
    return JobResult(success=True, output={"echo": payload})


async def handle_sleep(
    payload: dict[str, Any], job_id: UUID, logger: BoundLogger, metadata: HandlerMetadata
) -> JobResult:
    """
    Sleep handler for testing delays and time boxes.

    Payload should contain:
    - duration_seconds: How long to sleep
    """
    duration = _number_field(payload, "duration_seconds", default=1)
    logger.info("Sleep job starting", duration=duration)

    await asyncio.sleep(duration)

    return JobResult(success=True, output={"slept_for": duration})


async def handle_failing_job(
    payload: dict[str, Any], job_id: UUID, logger: BoundLogger, metadata: HandlerMetadata
) -> JobResult:
    """
    Handler that fails - for testing retry and dead letter logic.

    Payload may contain:
    - succeed_on_attempt: Attempt number on which the job finally succeeds
    - terminal: Fail without further retries
    """
    succeed_on = _number_field(payload, "succeed_on_attempt", integer=True)
    if succeed_on is not None and metadata.attempt >= succeed_on:
        logger.info("Failing job recovered")
        return JobResult(success=True, output={"attempt": metadata.attempt})

    logger.info("Failing job executing (will fail)")
    terminal = bool(payload.get("terminal", False))
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {metadata.attempt}",
        terminal=terminal,
        reason=DLQReason.FATAL_ERROR if terminal else None,
    )


async def handle_http_request(
    payload: dict[str, Any], job_id: UUID, logger: BoundLogger, metadata: HandlerMetadata
) -> JobResult:
    """
    Make an HTTP request.

    Payload should contain:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional JSON request body

    Server errors are retried, client errors are terminal.
    """
    url = payload.get("url")
    method = str(payload.get("method", "GET")).upper()
    headers = payload.get("headers") or {}
    body = payload.get("body")

    if not url:
        return JobResult(
            success=False,
            error="Missing 'url' in payload",
            terminal=True,
            reason=DLQReason.INVALID_DATA,
        )
    if not isinstance(url, str):
        raise InvalidPayloadError(f"'url' must be a string, got {url!r}")
    if not isinstance(headers, dict):
        raise InvalidPayloadError("'headers' must be an object")

    logger.info("HTTP request job", method=method, url=url)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=body if method in ("POST", "PUT", "PATCH") else None,
                timeout=30.0,
            )
    except httpx.HTTPError as e:
        return JobResult(
            success=False,
            error=f"HTTP request failed: {e}",
            reason=DLQReason.DEPENDENCY_FAILURE,
        )

    if response.is_success:
        return JobResult(
            success=True,
            output={"status_code": response.status_code, "body": response.text[:1000]},
        )

    client_error = 400 <= response.status_code < 500
    return JobResult(
        success=False,
        output={"status_code": response.status_code},
        error=f"HTTP {response.status_code}",
        terminal=client_error,
        reason=DLQReason.INVALID_DATA if client_error else DLQReason.DEPENDENCY_FAILURE,
    )


def make_dlq_cleanup_handler(manager: "QueueManager") -> JobHandler:
    """
    Build a handler that purges old dead letter queue entries.

    Payload may contain:
    - older_than_days: Retention window (defaults to the configured one)
    """

    async def handle_dlq_cleanup(
        payload: dict[str, Any], job_id: UUID, logger: BoundLogger, metadata: HandlerMetadata
    ) -> JobResult:
        older_than_days = _number_field(payload, "older_than_days", integer=True)
        deleted = await manager.cleanup_dlq(older_than_days)
        logger.info("Dead letter queue cleanup finished", deleted=deleted)
        return JobResult(success=True, output={"deleted": deleted})

    return handle_dlq_cleanup


def build_default_registry(manager: "QueueManager | None" = None) -> HandlerRegistry:
    """
    Registry with the built-in handlers.

    The maintenance handler needs a manager and is only registered when
    one is given.
    """
    registry = HandlerRegistry()
    registry.add("echo", handle_echo)
    registry.add("sleep", handle_sleep)
    registry.add("failing_job", handle_failing_job)
    registry.add("http:request", handle_http_request)
    if manager is not None:
        registry.add("maintenance:dlq_cleanup", make_dlq_cleanup_handler(manager))
    return registry
