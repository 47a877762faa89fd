"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> CLAIMED (batch claim)
    - CLAIMED -> PROCESSING (execution started)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> PENDING (retry, attempt + 1)
    - PROCESSING -> FAILED (terminal, entry written to the DLQ)
    - CLAIMED/PROCESSING -> CLAIMED (lease expired, reclaimed by another worker)
    - CLAIMED/PROCESSING -> PENDING (lease expired, recovered by the reaper)
    """

    PENDING = "pending"
    CLAIMED = "claimed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses that carry a lease
LEASED_STATUSES: tuple[JobStatus, ...] = (JobStatus.CLAIMED, JobStatus.PROCESSING)

# Statuses that never change again
FINISHED_STATUSES: tuple[JobStatus, ...] = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(IntEnum):
    """Well-known priority levels (higher = processed first)."""

    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 15


class DLQReason(StrEnum):
    """Well-known reasons recorded on dead letter queue entries."""

    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    FATAL_ERROR = "fatal_error"
    TIMEOUT = "timeout"
    INVALID_DATA = "invalid_data"
    UNKNOWN_JOB_TYPE = "unknown job type"
    DEPENDENCY_FAILURE = "dependency_failure"
    SYSTEM_ERROR = "system_error"


class SettlementOutcome(StrEnum):
    """Result of settling a job after execution."""

    COMPLETED = "completed"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    REJECTED = "rejected"  # lease lost, write not applied


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PRIORITY = JobPriority.NORMAL
DEFAULT_QUEUE_NAME = "app-queue"
MIN_PRIORITY = 1
MAX_PRIORITY = 20
MAX_ATTEMPTS_LIMIT = 10
MAX_ERROR_LENGTH = 2000

# Lock scopes
CLAIM_LOCK_SUFFIX = "claim"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_SETTLED = "jobs_settled_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_LOCK_CONTENTION = "lock_contention_total"
METRIC_DLQ_MOVED = "dlq_moved_total"
METRIC_LEASE_RECLAIMED = "lease_reclaimed_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_BATCH = "claim_batch"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_SETTLE_JOB = "settle_job"
SPAN_MOVE_TO_DLQ = "move_to_dlq"
