from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="gemini-lb-tests-"))
TEST_API_KEYS = ("test-key-alpha", "test-key-bravo", "test-key-charlie")

os.environ["GEMINI_LB_DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_DIR / 'gemini-lb.db'}"
os.environ["GEMINI_LB_API_KEYS"] = ",".join(TEST_API_KEYS)
os.environ["GEMINI_LB_GEMINI_BASE_URL"] = "https://example.invalid/v1beta"
os.environ["GEMINI_LB_PERSIST_INTERVAL_SECONDS"] = "0.05"

from gemini_lb.core.config.settings import get_settings  # noqa: E402
from gemini_lb.main import create_app  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    # Every test gets its own SQLite file so persisted pool state never leaks between tests.
    monkeypatch.setenv("GEMINI_LB_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def app_instance():
    return create_app()


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
