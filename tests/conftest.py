import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-process ledger, no MongoDB needed
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RUNNING_IN_DOCKER", "false")
os.environ.setdefault("VIDEO_BASE_URL", "https://videos.test/vids")


@pytest.fixture
def settings():
    from app.core.config import get_settings
    return get_settings()


@pytest.fixture
def store():
    from app.storage.memory import MemoryLedgerStore
    return MemoryLedgerStore()


@pytest.fixture
def registry():
    from app.services.job_status import JobStatusRegistry
    return JobStatusRegistry(max_entries=100)


@pytest.fixture
def hub():
    from app.services.notifications import LiveNotificationHub
    return LiveNotificationHub(queue_size=10, keepalive_seconds=0.05)


@pytest.fixture
def service(store, registry, hub, settings):
    from app.services.video_jobs import VideoJobService
    return VideoJobService(store, registry, hub, settings=settings)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport does not send lifespan events
    from app.main import app, shutdown, startup
    await startup()
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    await shutdown()


@pytest.fixture
def auth_headers():
    from app.core.security import create_access_token

    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return _headers
