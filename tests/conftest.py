from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storyteller.config import get_settings
from storyteller.db.session import create_all
from storyteller.services import poller_runtime


@pytest.fixture(autouse=True)
def settings_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv('DASHSCOPE_API_KEY', 'test-key')
    monkeypatch.setenv('LOCAL_STORE_PATH', str(tmp_path / 'stories.json'))
    monkeypatch.setenv('DATABASE_URL', f'sqlite+aiosqlite:///{tmp_path / "app.db"}')
    monkeypatch.setenv('IMAGE_POLL_MAX_ATTEMPTS', '5')
    monkeypatch.setenv('IMAGE_POLL_INTERVAL_MS', '1')
    monkeypatch.delenv('SITE_URL', raising=False)
    monkeypatch.delenv('WEB_PORT', raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
    poller_runtime.set_poller(None)


@pytest_asyncio.fixture
async def sessionmaker(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path / "test.db"}')
    await create_all(engine)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()
