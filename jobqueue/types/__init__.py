"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobqueue.types.api import (
    AuthRequest,
    CleanJobsRequest,
    CleanJobsResponse,
    CleanupResponse,
    DLQEntryResponse,
    DLQListResponse,
    DLQStatsResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    QueueStateResponse,
    QueueStatsResponse,
    RemoveJobResponse,
    ReprocessResponse,
    TokenResponse,
)
from jobqueue.types.job import (
    ConcurrencyLock,
    EnqueueOptions,
    HandlerMetadata,
    JobBatch,
    JobResult,
    QueueStats,
    ReasonCount,
)

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobResponse",
    "JobListResponse",
    "CleanJobsRequest",
    "CleanJobsResponse",
    "RemoveJobResponse",
    "QueueStateResponse",
    "QueueStatsResponse",
    "DLQEntryResponse",
    "DLQListResponse",
    "DLQStatsResponse",
    "ReprocessResponse",
    "CleanupResponse",
    "AuthRequest",
    "TokenResponse",
    "HealthResponse",
    # Job types
    "JobResult",
    "HandlerMetadata",
    "EnqueueOptions",
    "ConcurrencyLock",
    "JobBatch",
    "QueueStats",
    "ReasonCount",
]
