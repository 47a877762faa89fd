"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobqueue import __version__
from jobqueue.api.routes import auth_router, dlq_router, health_router, queue_router
from jobqueue.config import get_settings
from jobqueue.db.connection import Database
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import setup_metrics
from jobqueue.observability.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from jobqueue.queue.manager import QueueManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the queue manager unless one was injected through create_app,
    and tears it down again on shutdown.
    """
    settings = get_settings()
    setup_logging(settings, component="api")
    setup_metrics()
    setup_tracing(settings, component="api")

    manager: QueueManager | None = app.state.queue_manager
    owns_manager = manager is None
    if owns_manager:
        manager = QueueManager(Database(settings=settings), settings)
        app.state.queue_manager = manager

    await manager.initialize()
    if owns_manager:
        instrument_sqlalchemy(manager.database.engine.sync_engine)

    logger.info("Application started")

    yield

    if owns_manager:
        await manager.close()
        app.state.queue_manager = None
    logger.info("Application shutdown")


def create_app(manager: QueueManager | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        manager: Queue manager to serve. Built from settings on startup
            when omitted.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Queue API",
        description="Administration API for the job queue and its dead letter queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.queue_manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(queue_router)
    app.include_router(dlq_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
