from __future__ import annotations

import pytest

from tenantforge.core.config import get_settings
from tenantforge.domain.models import Base
from tenantforge.persistence.db import build_engine, build_sessionmaker
from tenantforge.providers.identity.factory import get_identity_provider
from tenantforge.providers.identity.fake import InMemoryIdentityProvider
from tenantforge.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def _reset_caches() -> None:
    # Settings, the provider and in-process counters are module-global; isolate them per test.
    get_settings.cache_clear()
    get_identity_provider.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    get_identity_provider.cache_clear()
    reset_telemetry()


@pytest.fixture
async def db_engine(tmp_path):
    # Throwaway SQLite file per test; schema comes straight from the model metadata.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tenantforge.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_sessionmaker(db_engine)


@pytest.fixture
def identity_provider() -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider()
