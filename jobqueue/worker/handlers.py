"""
Job handler registry and execution.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or network issues.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from jobqueue.constants import DLQReason
from jobqueue.db.models import Job, utcnow
from jobqueue.observability.logging import get_job_logger
from jobqueue.types.job import HandlerMetadata, JobResult

logger = logging.getLogger(__name__)

# Handler signature: (payload, job_id, logger, metadata) -> JobResult
JobHandler = Callable[
    [dict[str, Any], UUID, structlog.stdlib.BoundLogger, HandlerMetadata],
    Awaitable[JobResult],
]

_SUSPICIOUS_MARKERS = ("<script>", "javascript:")


class InvalidPayloadError(ValueError):
    """
    Raised when a job payload can never be processed.

    Handlers may raise it for fields they cannot use; the job then fails
    without further attempts.
    """


class HandlerRegistry:
    """
    Maps job types to handlers.

    Example:
        registry = HandlerRegistry()

        @registry.register("send_email")
        async def send_email(payload, job_id, logger, metadata) -> JobResult:
            ...
    """

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type this handler processes.

        Returns:
            Decorator function.
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler)
            return handler

        return decorator

    def add(self, job_type: str, handler: JobHandler) -> None:
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type: {job_type}")
        self._handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def validate_payload(payload: Any) -> dict[str, Any]:
    """
    Check that a payload can be handed to a handler.

    Raises:
        InvalidPayloadError: If the payload is not a JSON object or carries
            script content in one of its string fields.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError(
            f"Job payload must be an object, got {type(payload).__name__}"
        )

    for key, value in payload.items():
        if isinstance(value, str) and any(marker in value for marker in _SUSPICIOUS_MARKERS):
            raise InvalidPayloadError(f"Potentially malicious content detected in field: {key}")

    return payload


async def execute_job(
    registry: HandlerRegistry,
    job: Job,
    timeout: float | None = None,
    processing_at: datetime | None = None,
) -> JobResult:
    """
    Run the handler registered for a job.

    Never raises for handler problems; every outcome is folded into the
    returned JobResult:
    - unknown job type and invalid payload are terminal, including an
      InvalidPayloadError raised by the handler itself
    - an exception from the handler is a retriable failure
    - exceeding ``timeout`` is a retriable failure with reason ``timeout``

    Args:
        registry: Handlers to dispatch to.
        job: The claimed job.
        timeout: Time box for the handler in seconds.
        processing_at: When execution started.

    Returns:
        JobResult with ``duration_ms`` filled in.
    """
    start_time = time.monotonic()
    result = await _run_handler(registry, job, timeout, processing_at or utcnow())
    result.duration_ms = (time.monotonic() - start_time) * 1000
    return result


async def _run_handler(
    registry: HandlerRegistry,
    job: Job,
    timeout: float | None,
    processing_at: datetime,
) -> JobResult:
    handler = registry.get(job.type)
    if handler is None:
        logger.error(
            f"No handler for job type: {job.type}",
            extra={"job_id": str(job.id)},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {job.type}",
            terminal=True,
            reason=DLQReason.UNKNOWN_JOB_TYPE,
        )

    try:
        payload = validate_payload(job.payload)
    except InvalidPayloadError as e:
        return JobResult(
            success=False,
            error=str(e),
            terminal=True,
            reason=DLQReason.INVALID_DATA,
        )

    metadata = HandlerMetadata(
        attempt=job.attempt + 1,
        max_attempts=job.max_attempts,
        queued_at=job.created_at,
        processing_at=processing_at,
    )
    job_logger = get_job_logger(job, metadata.attempt)

    try:
        if timeout:
            result = await asyncio.wait_for(
                handler(payload, job.id, job_logger, metadata), timeout=timeout
            )
        else:
            result = await handler(payload, job.id, job_logger, metadata)
    except InvalidPayloadError as e:
        return JobResult(
            success=False,
            error=str(e),
            terminal=True,
            reason=DLQReason.INVALID_DATA,
        )
    except TimeoutError:
        logger.warning(
            f"Job timed out after {timeout}s",
            extra={"job_id": str(job.id), "job_type": job.type},
        )
        return JobResult(
            success=False,
            error=f"Job timed out after {timeout}s",
            reason=DLQReason.TIMEOUT,
        )
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(job.id), "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
        )

    if not isinstance(result, JobResult):
        return JobResult(
            success=False,
            error=f"Handler returned {type(result).__name__} instead of JobResult",
        )
    return result
