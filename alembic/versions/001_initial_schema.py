"""Initial schema with jobs, dead letter queue and lock tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("queue", sa.String(255), nullable=False, server_default="app-queue"),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("locked_until", sa.DateTime, nullable=True),
        sa.Column("original_job_id", sa.Uuid, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'claimed', 'processing', 'completed', 'failed')",
            name="job_status",
        ),
    )

    op.create_index("ix_jobs_type", "jobs", ["type"])
    op.create_index("ix_jobs_locked_until", "jobs", ["locked_until"])
    op.create_index("ix_jobs_original_job_id", "jobs", ["original_job_id"])
    op.create_index("ix_jobs_claim", "jobs", ["queue", "status", "available_at", "priority"])

    # Partial index for reclaiming expired leases
    op.execute("""
        CREATE INDEX ix_jobs_lease_expiry
        ON jobs (locked_until)
        WHERE status IN ('claimed', 'processing')
    """)

    # Create dead letter queue table
    op.create_table(
        "dead_letter_queue",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("job_id", sa.Uuid, nullable=False),
        sa.Column("original_job_id", sa.Uuid, nullable=False),
        sa.Column("queue", sa.String(255), nullable=False, server_default="app-queue"),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("failed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("reprocessed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reprocessed_at", sa.DateTime, nullable=True),
        sa.Column("reprocessed_job_id", sa.Uuid, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_dead_letter_queue_job_id", "dead_letter_queue", ["job_id"])
    op.create_index(
        "ix_dead_letter_queue_original_job_id", "dead_letter_queue", ["original_job_id"]
    )
    op.create_index("ix_dead_letter_queue_reason", "dead_letter_queue", ["reason"])
    op.create_index("ix_dead_letter_queue_failed_at", "dead_letter_queue", ["failed_at"])
    op.create_index("ix_dlq_reason_failed_at", "dead_letter_queue", ["reason", "failed_at"])

    # Create concurrency lock table
    op.create_table(
        "queue_locks",
        sa.Column("scope", sa.String(255), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("scope"),
    )

    op.create_index("ix_queue_locks_expires_at", "queue_locks", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_queue_locks_expires_at")
    op.drop_table("queue_locks")

    op.drop_index("ix_dlq_reason_failed_at")
    op.drop_index("ix_dead_letter_queue_failed_at")
    op.drop_index("ix_dead_letter_queue_reason")
    op.drop_index("ix_dead_letter_queue_original_job_id")
    op.drop_index("ix_dead_letter_queue_job_id")
    op.drop_table("dead_letter_queue")

    op.execute("DROP INDEX IF EXISTS ix_jobs_lease_expiry")
    op.drop_index("ix_jobs_claim")
    op.drop_index("ix_jobs_original_job_id")
    op.drop_index("ix_jobs_locked_until")
    op.drop_index("ix_jobs_type")
    op.drop_table("jobs")
