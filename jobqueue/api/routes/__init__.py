"""
API routes module.
"""

from jobqueue.api.routes.auth import router as auth_router
from jobqueue.api.routes.dlq import router as dlq_router
from jobqueue.api.routes.health import router as health_router
from jobqueue.api.routes.queue import router as queue_router

__all__ = ["queue_router", "dlq_router", "auth_router", "health_router"]
