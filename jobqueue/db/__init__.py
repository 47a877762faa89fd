"""Database module for persistence layer."""

from jobqueue.db.connection import Database, create_engine_for_url, dialect_insert
from jobqueue.db.dlq_repository import DeadLetterQueueRepository
from jobqueue.db.lock_repository import LockRepository
from jobqueue.db.models import Base, DeadLetterQueueEntry, Job, QueueLock, QueueState, utcnow
from jobqueue.db.queue_state_repository import QueueStateRepository
from jobqueue.db.repository import JobRepository

__all__ = [
    "Database",
    "create_engine_for_url",
    "dialect_insert",
    "Base",
    "Job",
    "DeadLetterQueueEntry",
    "QueueLock",
    "QueueState",
    "utcnow",
    "JobRepository",
    "DeadLetterQueueRepository",
    "LockRepository",
    "QueueStateRepository",
]
