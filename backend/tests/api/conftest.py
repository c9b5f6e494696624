"""Test fixtures for API tests.

The application is built without its lifespan; the engine fixture from the
root conftest is attached directly so requests share its fake RCON and
in-memory repository.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from orchestrator.config import Settings, get_settings
from orchestrator.main import create_app

# Same values the root conftest configures the engine with
WEBHOOK_TOKEN = os.environ["WEBHOOK_TOKEN"]
ADMIN_API_KEY = os.environ["ADMIN_API_KEY"]
BASE_URL = "http://orchestrator.test"


def get_test_settings() -> Settings:
    """Get test-specific settings."""
    return Settings(
        app_env="test",
        app_debug=False,
        log_level="WARNING",
        public_base_url=BASE_URL,
        webhook_token=WEBHOOK_TOKEN,
        admin_api_key=ADMIN_API_KEY,
    )


@pytest.fixture
def app(engine):
    settings = get_test_settings()
    application = create_app(settings)
    application.dependency_overrides[get_settings] = lambda: settings
    application.state.engine = engine
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Anonymous client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_API_KEY}


@pytest.fixture
def webhook_headers() -> dict[str, str]:
    return {"X-MatchZy-Token": WEBHOOK_TOKEN}


@pytest.fixture
def config_headers() -> dict[str, str]:
    """Game servers fetch match configs with the webhook token as a bearer."""
    return {"Authorization": f"Bearer {WEBHOOK_TOKEN}"}
