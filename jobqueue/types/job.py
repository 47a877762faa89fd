"""
Job-related type definitions for internal use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobqueue.constants import MAX_ATTEMPTS_LIMIT, MAX_PRIORITY, MIN_PRIORITY

if TYPE_CHECKING:
    from jobqueue.db.models import Job


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.

    A failed result is retried while attempts remain unless ``terminal``
    is set, in which case the job goes straight to the dead letter queue.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    terminal: bool = False
    reason: str | None = None
    duration_ms: float | None = None


@dataclass
class HandlerMetadata:
    """
    Attempt metadata passed to job handlers alongside the payload.

    ``attempt`` is the 1-based number of the execution in progress.
    """

    attempt: int
    max_attempts: int
    queued_at: datetime
    processing_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.max_attempts - self.attempt)


class EnqueueOptions(BaseModel):
    """Options accepted by QueueManager.enqueue."""

    priority: int | None = Field(default=None, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    max_attempts: int | None = Field(default=None, ge=1, le=MAX_ATTEMPTS_LIMIT)
    delay_ms: int = Field(default=0, ge=0)
    available_at: datetime | None = None
    queue: str | None = None
    original_job_id: UUID | None = None
    job_id: UUID | None = None


@dataclass
class ConcurrencyLock:
    """
    A held concurrency lock.

    Returned by QueueManager.acquire_lock; at most one live lock exists
    per scope at any time.
    """

    scope: str
    owner_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """Check if the lock lease has passed."""
        return now >= self.expires_at


@dataclass
class JobBatch:
    """A set of jobs claimed by one worker in a single poll."""

    batch_id: str
    worker_id: str
    loaded_at: datetime
    jobs: list[Job] = field(default_factory=list)
    contended: bool = False
    paused: bool = False

    @property
    def size(self) -> int:
        return len(self.jobs)

    @property
    def is_empty(self) -> bool:
        return not self.jobs


class QueueStats(BaseModel):
    """Job counts by status plus dead letter queue size."""

    pending: int = 0
    claimed: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dlq_size: int = 0
    dlq_unprocessed: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending
            + self.claimed
            + self.processing
            + self.completed
            + self.failed
        )


class ReasonCount(BaseModel):
    """Number of dead letter queue entries sharing a failure reason."""

    reason: str
    count: int
