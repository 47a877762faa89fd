"""
API request and response type definitions.
"""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import AfterValidator, BaseModel, Field

from jobqueue.constants import (
    MAX_ATTEMPTS_LIMIT,
    MAX_PRIORITY,
    MIN_PRIORITY,
    JobStatus,
)
from jobqueue.types.job import QueueStats, ReasonCount


def _as_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC; mark them so clients see the offset."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class EnqueueJobRequest(BaseModel):
    """Request body for enqueuing a new job."""

    type: str = Field(..., min_length=1, max_length=100, description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    priority: int | None = Field(
        default=None, ge=MIN_PRIORITY, le=MAX_PRIORITY, description="Job priority"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, le=MAX_ATTEMPTS_LIMIT, description="Maximum attempts"
    )
    delay_ms: int = Field(default=0, ge=0, description="Delay before the job becomes due")
    queue: str | None = Field(default=None, description="Target queue name")


class EnqueueJobResponse(BaseModel):
    """Response body after enqueuing a job."""

    id: UUID
    type: str
    queue: str
    status: JobStatus
    available_at: UTCDateTime
    message: str = "Job added to queue successfully"


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    queue: str
    type: str
    payload: dict[str, Any]
    status: JobStatus
    priority: int
    attempt: int
    max_attempts: int
    available_at: UTCDateTime
    locked_by: str | None
    locked_until: UTCDateTime | None
    original_job_id: UUID | None
    created_at: UTCDateTime
    updated_at: UTCDateTime
    started_at: UTCDateTime | None
    completed_at: UTCDateTime | None
    last_error: str | None
    result: dict[str, Any] | None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class CleanJobsRequest(BaseModel):
    """Request body for purging finished jobs."""

    status: Literal["completed", "failed"] = "completed"
    older_than_hours: int = Field(default=24, ge=0)


class CleanJobsResponse(BaseModel):
    """Number of purged jobs."""

    deleted: int
    status: JobStatus


class RemoveJobResponse(BaseModel):
    """Response body after removing a waiting job."""

    id: UUID
    message: str = "Job removed from queue"


class QueueStateResponse(BaseModel):
    """Pause state of a queue."""

    queue: str
    paused: bool


class QueueStatsResponse(BaseModel):
    """Queue statistics for health and observability reporting."""

    queue: str
    stats: QueueStats
    total: int


class DLQEntryResponse(BaseModel):
    """Dead letter queue entry details."""

    id: UUID
    job_id: UUID
    original_job_id: UUID
    queue: str
    type: str
    payload: dict[str, Any]
    reason: str
    error: str | None
    attempt: int
    max_attempts: int
    priority: int
    failed_at: UTCDateTime
    reprocessed: bool
    reprocessed_at: UTCDateTime | None
    reprocessed_job_id: UUID | None


class DLQListResponse(BaseModel):
    """Paginated list of dead letter queue entries, newest first."""

    entries: list[DLQEntryResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class DLQStatsResponse(BaseModel):
    """Dead letter queue entry counts grouped by reason."""

    reasons: list[ReasonCount]
    total: int
    unprocessed: int


class ReprocessResponse(BaseModel):
    """Response body after reprocessing a DLQ entry."""

    dlq_entry_id: UUID
    job_id: UUID
    message: str = "Job re-enqueued from dead letter queue"


class CleanupResponse(BaseModel):
    """Number of DLQ entries removed by a cleanup run."""

    deleted: int
    older_than_days: int


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="Admin API key")
    client_id: str = Field(..., description="Identifier of the calling service or operator")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: UTCDateTime
