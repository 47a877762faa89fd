"""
Pytest configuration and shared fixtures.

Tests run against a fresh SQLite file per test unless TEST_DATABASE_URL
points at another database (for example a PostgreSQL test instance).
"""

import os
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

TEST_ADMIN_API_KEY = "test-admin-key"
TEST_SECRET_KEY = "test-secret-key"

# Set before anything reads the cached settings
os.environ["ADMIN_API_KEY"] = TEST_ADMIN_API_KEY
os.environ["API_SECRET_KEY"] = TEST_SECRET_KEY

from jobqueue.api.auth import create_access_token  # noqa: E402
from jobqueue.api.main import create_app  # noqa: E402
from jobqueue.config import Settings, get_settings  # noqa: E402
from jobqueue.db.connection import Database  # noqa: E402
from jobqueue.queue.manager import QueueManager, WorkerConfig  # noqa: E402
from jobqueue.worker.handlers import HandlerRegistry  # noqa: E402
from jobqueue.worker.jobs import build_default_registry  # noqa: E402
from jobqueue.worker.main import QueueWorker  # noqa: E402

get_settings.cache_clear()


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return os.getenv(
        "TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path / 'jobqueue_test.db'}",
    )


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        api_secret_key=TEST_SECRET_KEY,
        admin_api_key=TEST_ADMIN_API_KEY,
        log_level="DEBUG",
        log_format="console",
        queue_name="test-queue",
        worker_id="test-worker",
        worker_batch_size=10,
        worker_processing_interval_ms=50,
        worker_lease_duration_seconds=30,
        worker_heartbeat_interval_seconds=0.5,
        worker_job_timeout_seconds=5.0,
        worker_shutdown_timeout_seconds=2.0,
        retry_backoff_base_ms=0,
        reaper_interval_seconds=1,
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database]:
    """Connected database with an empty schema."""
    database = Database(test_settings.database_url, test_settings)
    await database.connect()
    await database.drop_all()
    await database.create_all()

    yield database

    if not database.is_connected:
        await database.connect()
    await database.drop_all()
    await database.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession]:
    """
    Create a database session for repository tests.

    Do not combine with the manager fixture in one test: on SQLite an
    open write transaction here blocks every other connection.
    """
    session_factory = async_sessionmaker(
        bind=database.engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def manager(database: Database, test_settings: Settings) -> QueueManager:
    """Initialized queue manager over the test database."""
    manager = QueueManager(database, test_settings)
    await manager.initialize()
    return manager


@pytest.fixture
def worker_config(test_settings: Settings) -> WorkerConfig:
    return WorkerConfig.from_settings(test_settings)


@pytest.fixture
def registry(manager: QueueManager) -> HandlerRegistry:
    return build_default_registry(manager)


@pytest.fixture
def worker(
    manager: QueueManager,
    registry: HandlerRegistry,
    worker_config: WorkerConfig,
) -> QueueWorker:
    return QueueWorker(manager, registry, worker_config)


@pytest.fixture
def app(manager: QueueManager) -> FastAPI:
    """Create a FastAPI app serving the test queue manager."""
    return create_app(manager)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(client_id="test-client")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    return {"message": "Hello, World!"}
