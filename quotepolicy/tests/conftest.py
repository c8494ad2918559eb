from __future__ import annotations

from typing import Any, AsyncIterator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from quotepolicy.core.config import Settings
from quotepolicy.domain.models import Base, legacy_metadata


def _memory_engine() -> AsyncEngine:
    # One shared in-memory connection per test so every session sees the same tables.
    return create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest_asyncio.fixture
async def db_engine() -> AsyncIterator[AsyncEngine]:
    engine = _memory_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def legacy_db_engine() -> AsyncIterator[AsyncEngine]:
    # Older deployments: same tables, but industry packs in the split-column shape.
    engine = _memory_engine()
    tables = [table for table in Base.metadata.sorted_tables if table.name != "industry_llm_packs"]
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables))
        await conn.run_sync(legacy_metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def legacy_session_factory(legacy_db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(legacy_db_engine, expire_on_commit=False)


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    # Ignore the developer's .env and ambient keys so tests are hermetic.
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "pcc_llm_config": None,
            "tenant_model_allowlist": "",
            "openai_api_key": None,
            "openai_platform_api_key": None,
            "openai_key": None,
            "config_store_timeout_ms": 2000,
            "config_cache_ttl_s": 0,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


class _UnavailableSession:
    async def __aenter__(self) -> AsyncSession:
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("database unavailable"))

    async def __aexit__(self, *exc_info: object) -> bool:
        return False


@pytest.fixture
def broken_session_factory() -> Callable[[], _UnavailableSession]:
    # Simulate a store outage at session checkout.
    return lambda: _UnavailableSession()
