from typing import AsyncGenerator

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from etsyflow.core.config import Settings
from etsyflow.pipeline.orchestrator import BatchOrchestrator
from tests.helpers import ANALYSIS_URL, ENHANCEMENT_URL, FakeAIService, TrackingPreviewStore


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ANALYSIS_API_URL=ANALYSIS_URL,
        ENHANCEMENT_API_URL=ENHANCEMENT_URL,
        ENHANCEMENT_API_KEY="test-key",
        REMOTE_BACKOFF_BASE_SECONDS=0.0,
        ENHANCEMENT_INTER_ITEM_DELAY_SECONDS=0.0,
        LOG_FORMAT_JSON=False,
    )


@pytest.fixture
def fake_service() -> FakeAIService:
    return FakeAIService()


@pytest.fixture
def preview_store() -> TrackingPreviewStore:
    return TrackingPreviewStore()


@pytest.fixture
async def http_client(fake_service) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_service.handle)) as client:
        yield client


@pytest.fixture
async def orchestrator(test_settings, http_client, preview_store) -> AsyncGenerator[BatchOrchestrator, None]:
    orch = BatchOrchestrator.from_settings(
        test_settings,
        http_client=http_client,
        preview_store=preview_store
    )
    yield orch
    await orch.aclose()


@pytest.fixture
async def client(orchestrator, http_client) -> AsyncGenerator[AsyncClient, None]:
    from etsyflow.api.dependencies import get_export_packager, get_orchestrator
    from etsyflow.main import app
    from etsyflow.pipeline.export import ExportPackager

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_export_packager] = lambda: ExportPackager(http_client=http_client)
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.clear()
