from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_HOME_DIR = Path(tempfile.mkdtemp(prefix="switchboard-tests-"))

os.environ["SWITCHBOARD_HOME_DIR"] = str(TEST_HOME_DIR)
os.environ["SWITCHBOARD_QUOTA_BASE_URL"] = "https://example.invalid/v1internal"
os.environ["SWITCHBOARD_OAUTH_TOKEN_URL"] = "https://example.invalid/token"

from switchboard.core.config.settings import get_settings  # noqa: E402
from switchboard.main import create_app  # noqa: E402


@pytest.fixture(autouse=True)
def home_dir(tmp_path, monkeypatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("SWITCHBOARD_HOME_DIR", str(home))
    monkeypatch.delenv("SWITCHBOARD_ACCOUNTS_DIR", raising=False)
    monkeypatch.delenv("SWITCHBOARD_ROUTING_CONFIG_PATH", raising=False)
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def app_instance(home_dir):
    return create_app()


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
