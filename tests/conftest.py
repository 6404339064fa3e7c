from __future__ import annotations

import contextlib
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from amicii.app import Coordinator
from amicii.config import clear_settings_cache, get_settings
from amicii.db import Store

PROJECT_KEY = "/work/acme/backend"


class FakeClock:
    """Controllable clock handed to a Store; returns naive UTC."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("RETENTION_SWEEP_ENABLED", "false")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    try:
        yield db_path
    finally:
        clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store(isolated_env, clock):
    handle = Store.from_settings(get_settings(), clock=clock)
    await handle.ensure_schema()
    try:
        yield handle
    finally:
        with contextlib.suppress(Exception):
            await handle.dispose()


@pytest_asyncio.fixture
async def coordinator(store):
    coord = Coordinator(store, get_settings())
    try:
        yield coord
    finally:
        await coord.retention.stop()


@pytest_asyncio.fixture
async def project(coordinator):
    return await coordinator.projects.ensure(PROJECT_KEY)


@pytest.fixture
def make_agent(coordinator):
    """Register an agent under an exact adjective+noun name."""

    async def _make(project, name: str, **kwargs):
        return await coordinator.agents.register(
            project,
            program=kwargs.pop("program", "codex-cli"),
            model=kwargs.pop("model", "gpt-5"),
            name_hint=name,
            **kwargs,
        )

    return _make
