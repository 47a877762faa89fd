"""
Persistent Job Queue

A database-backed job queue with atomic batch claiming, lease-based
ownership, exponential retry backoff, and a dead letter queue for
inspection and reprocessing of permanently failed jobs.
"""

__version__ = "1.0.0"
