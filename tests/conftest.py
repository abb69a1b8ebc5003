"""Shared fixtures: temp SQLite store, fake Redis, fully wired orchestrator."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from fakes import FakeRedis
from taskhub.cache.layer import CacheLayer
from taskhub.core.config import Settings
from taskhub.database import create_db_and_tables, create_engine, create_session_factory
from taskhub.events.broadcaster import EventBroadcaster
from taskhub.models import TaskCreate
from taskhub.repositories.task_store import TaskStore
from taskhub.services.task_service import TaskOrchestrator


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}",
        store_timeout_seconds=5.0,
        supported_locales=["en", "de", "fr"],
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(settings)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine: AsyncEngine, settings: Settings) -> TaskStore:
    return TaskStore(create_session_factory(engine), settings)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis, settings: Settings) -> CacheLayer:
    return CacheLayer(fake_redis, settings)


@pytest.fixture
def broadcaster(fake_redis: FakeRedis, settings: Settings) -> EventBroadcaster:
    return EventBroadcaster(fake_redis, settings)


@pytest.fixture
def orchestrator(store, cache, broadcaster, settings) -> TaskOrchestrator:
    return TaskOrchestrator(store, cache, broadcaster, settings)


@pytest.fixture
def new_task():
    """Build a TaskCreate with an English name and optional overrides."""

    def _new_task(name: str = "Task", **overrides) -> TaskCreate:
        fields = {"name": {"en": name}}
        fields.update(overrides)
        return TaskCreate(**fields)

    return _new_task
