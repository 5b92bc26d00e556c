# tests/conftest.py
import asyncio
import os
import tempfile

# Point the app at a throwaway SQLite file before any app module reads settings.
_DB_DIR = tempfile.mkdtemp(prefix="attention-monitor-tests-")
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["APP_ENV"] = "test"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.api.dependencies.ingestion import get_ingestion_state, get_memory_sampler  # noqa: E402
from app.db.session import AsyncSessionLocal, init_db  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.attention_ingestion import (  # noqa: E402
    AttentionIngestionService,
    IngestionStateTable,
)
from app.services.backpressure import BackpressureGuard  # noqa: E402


class FakeMemorySampler:
    """
    Stand-in for the process memory sampler with a settable heap figure.
    """

    def __init__(self, heap_mb: float = 120.0) -> None:
        self.heap_mb = heap_mb

    def heap_used_mb(self) -> float:
        return self.heap_mb

    def memory_report(self) -> dict:
        return {"rss_mb": self.heap_mb, "vms_mb": self.heap_mb * 4, "percent": 1.5}


@pytest.fixture
def memory_sampler() -> FakeMemorySampler:
    return FakeMemorySampler()


@pytest.fixture
def client(memory_sampler):
    """
    TestClient over a fresh schema, with the memory sampler replaced by a fake
    and a clean ingestion side state.
    """
    asyncio.run(init_db())
    get_ingestion_state.cache_clear()

    app = create_app()
    app.dependency_overrides[get_memory_sampler] = lambda: memory_sampler
    with TestClient(app) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def db_session():
    """
    Async session over a freshly reset schema.
    """
    await init_db()
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def state_table() -> IngestionStateTable:
    return IngestionStateTable()


@pytest.fixture
def ingestion_service(memory_sampler, state_table) -> AttentionIngestionService:
    guard = BackpressureGuard(memory_sampler, limit_mb=1800)
    return AttentionIngestionService(guard=guard, state_table=state_table)
