"""Worker module: handler registry, built-in handlers and the worker loop."""

from jobqueue.worker.handlers import HandlerRegistry, execute_job
from jobqueue.worker.jobs import build_default_registry
from jobqueue.worker.main import QueueWorker

__all__ = ["HandlerRegistry", "execute_job", "build_default_registry", "QueueWorker"]
