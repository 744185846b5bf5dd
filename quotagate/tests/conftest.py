from __future__ import annotations

from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from quotagate.core.config import get_settings
from quotagate.domain.models import Base
from quotagate.services.resolver import reset_resolver


@pytest.fixture(autouse=True)
def _reset_caches() -> None:
    # Reset settings + resolver caches between tests to avoid leakage.
    get_settings.cache_clear()
    reset_resolver()
    yield
    get_settings.cache_clear()
    reset_resolver()


@pytest.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    # File-backed SQLite so concurrent sessions use separate connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'quotagate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session
