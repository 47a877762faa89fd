"""
Exception types raised by the queue core.
"""


class QueueError(Exception):
    """Base class for queue errors."""


class QueueInitializationError(QueueError):
    """The job store could not be reached or prepared at startup."""


class QueueNotInitializedError(QueueError):
    """An operation was attempted before QueueManager.initialize()."""
