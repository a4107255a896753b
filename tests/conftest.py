"""Shared pytest fixtures.

Fixture summary
---------------
settings_factory: build a Settings object with test-friendly overrides.
executor: GatedExecutor that parks every scrape until released.
client: httpx.AsyncClient against an app wired to ``executor``.

No fixture launches a browser: the app under test gets a BrowserPool whose
launcher is a FakeLauncher.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any, Callable

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from rama_api.browser_pool import BrowserPool
from rama_api.config import Settings
from rama_api.main import create_app
from tests.fakes import FakeLauncher, GatedExecutor


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "max_concurrency": 2,
            "execution_timeout_seconds": 5.0,
            "job_ttl_seconds": 600.0,
            "cache_ttl_seconds": 900.0,
            "sweep_interval_seconds": 60.0,
            "cache_enabled": True,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def executor() -> GatedExecutor:
    return GatedExecutor()


@pytest.fixture
def app(settings_factory: Callable[..., Settings], executor: GatedExecutor) -> FastAPI:
    pool = BrowserPool(launcher=FakeLauncher())
    return create_app(settings_factory(), executor=executor, pool=pool)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
    await app.state.engine.scheduler.aclose()
