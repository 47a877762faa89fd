"""
Shared route dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobqueue.queue.manager import QueueManager


def get_queue_manager(request: Request) -> QueueManager:
    """The queue manager created by the application lifespan."""
    return request.app.state.queue_manager


Manager = Annotated[QueueManager, Depends(get_queue_manager)]
