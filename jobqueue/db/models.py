"""
SQLAlchemy database models.
Defines the jobs, dead letter queue, lock and queue state tables.

Timestamps are stored as naive UTC so that comparisons behave the same on
PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import DEFAULT_QUEUE_NAME, JobStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are conditional updates on this table.

    Key constraints:
    - a job in CLAIMED or PROCESSING always carries locked_by/locked_until
    - once locked_until has passed any worker may claim the job again
    - attempt counts failed executions and only ever grows
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    queue: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=DEFAULT_QUEUE_NAME,
    )
    type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
    )

    # Retry tracking
    attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )

    # Scheduling and lease management
    available_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        index=True,
    )

    # Lineage root for jobs re-enqueued from the DLQ
    original_job_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    result: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
    )

    __table_args__ = (
        # Index for efficient queue polling
        Index("ix_jobs_claim", "queue", "status", "available_at", "priority"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.type}, "
            f"status={self.status}, attempt={self.attempt}/{self.max_attempts})"
        )


class DeadLetterQueueEntry(Base):
    """
    A job that failed permanently.

    Entries are immutable apart from the reprocess fields, which are set
    once when the entry is re-enqueued or marked as handled.
    """

    __tablename__ = "dead_letter_queue"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )
    job_id: Mapped[UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )
    original_job_id: Mapped[UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )
    queue: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=DEFAULT_QUEUE_NAME,
    )
    type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
    reason: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
    )
    failed_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        index=True,
    )
    reprocessed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    reprocessed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    reprocessed_job_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_dlq_reason_failed_at", "reason", "failed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"DeadLetterQueueEntry(id={self.id}, job_id={self.job_id}, "
            f"reason={self.reason!r}, reprocessed={self.reprocessed})"
        )


class QueueLock(Base):
    """
    Short-lived concurrency lock keyed by scope.

    The primary key on ``scope`` guarantees at most one row per scope;
    an expired row may be taken over by another owner.
    """

    __tablename__ = "queue_locks"

    scope: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"QueueLock(scope={self.scope!r}, owner={self.owner_id!r}, expires_at={self.expires_at})"


class QueueState(Base):
    """
    Switches for one queue shared by every worker.

    A queue without a row runs normally.
    """

    __tablename__ = "queue_states"

    queue: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    paused: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"QueueState(queue={self.queue!r}, paused={self.paused})"
