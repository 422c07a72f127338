"""API test fixtures: the real app over an in-memory store and fake Redis."""

import httpx
import pytest
from factories import TEST_USER_ID

from agentloop.engine.fake_llm import ScriptedLLMClient
from agentloop.main import create_app


@pytest.fixture
def api_llm():
    return ScriptedLLMClient()


@pytest.fixture
def api_service(make_service, api_llm):
    return make_service(api_llm)


@pytest.fixture
def app(api_service):
    app = create_app(use_lifespan=False)
    app.state.engine = api_service
    return app


@pytest.fixture
async def client(app):
    """In-process client sharing the test's event loop with fake Redis."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-User-ID": TEST_USER_ID},
    ) as client:
        yield client
