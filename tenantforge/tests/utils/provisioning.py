from __future__ import annotations

import asyncio
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.core.errors import RecordWriteError
from tenantforge.domain.models import ProvisioningAuditEntry, Tenant
from tenantforge.domain.state import ProvisioningStatus
from tenantforge.providers.identity.base import Identity
from tenantforge.providers.identity.fake import InMemoryIdentityProvider
from tenantforge.services.provisioning import ProvisioningCommand, ProvisioningOrchestrator
from tenantforge.services.records import TenantData
from tenantforge.services.resilience import RetryPolicy


FAST_RETRY = RetryPolicy(max_attempts=3, backoff_ms=1, race_backoff_ms=1, max_backoff_ms=5, jitter=False)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class GatedIdentityProvider(InMemoryIdentityProvider):
    """Holds every lookup until ``parties`` callers have looked up, forcing a create race."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self._parties = parties
        self._arrived = 0
        self._released = asyncio.Event()

    async def find_by_login(self, login: str) -> Identity | None:
        if self._arrived < self._parties:
            self._arrived += 1
            if self._arrived == self._parties:
                self._released.set()
            await asyncio.wait_for(self._released.wait(), timeout=5)
            return None
        return await super().find_by_login(login)


class FailingTenantStore:
    def __init__(self, error: RecordWriteError) -> None:
        self.error = error
        self.calls = 0

    async def create_tenant_records(self, tenant_data: TenantData, owner_identity_id: str) -> str:
        self.calls += 1
        raise self.error


class BlockingTenantStore:
    """Parks the write until ``release`` is set, then fails with ``error``."""

    def __init__(self, error: RecordWriteError) -> None:
        self.error = error
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def create_tenant_records(self, tenant_data: TenantData, owner_identity_id: str) -> str:
        self.entered.set()
        await asyncio.wait_for(self.release.wait(), timeout=5)
        raise self.error


class FlakyFinalizeOrchestrator(ProvisioningOrchestrator):
    # The completed transition fails to commit ``failures`` times after the tenant is written.
    def __init__(self, *args: Any, failures: int = 1, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures

    async def _transition(self, attempt: Any, target: ProvisioningStatus, **kwargs: Any) -> None:
        if target == ProvisioningStatus.COMPLETED and self.failures > 0:
            self.failures -= 1
            raise OperationalError("UPDATE provisioning_requests", {}, Exception("database is locked"))
        await super()._transition(attempt, target, **kwargs)


def make_command(**overrides: Any) -> ProvisioningCommand:
    values: dict[str, Any] = {
        "idempotency_key": f"idem-{uuid4().hex}",
        "requesting_admin_id": "admin-1",
        "tenant_name": "Golden Spoon",
        "candidate_slug": "Golden Spoon!!",
        "owner_login": "owner@goldenspoon.example",
        "owner_display_name": "Gia Spoon",
        "configuration": {},
    }
    values.update(overrides)
    return ProvisioningCommand(**values)


def make_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    provider: InMemoryIdentityProvider,
    *,
    orchestrator_cls: type[ProvisioningOrchestrator] = ProvisioningOrchestrator,
    **kwargs: Any,
) -> ProvisioningOrchestrator:
    kwargs.setdefault("retry_policy", FAST_RETRY)
    kwargs.setdefault("sleep", RecordingSleep())
    return orchestrator_cls(session_factory, provider, **kwargs)


async def count_rows(session_factory: async_sessionmaker[AsyncSession], model: Any) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())


async def audit_trail(
    session_factory: async_sessionmaker[AsyncSession], request_id: str
) -> list[ProvisioningAuditEntry]:
    async with session_factory() as session:
        result = await session.execute(
            select(ProvisioningAuditEntry)
            .where(ProvisioningAuditEntry.request_id == request_id)
            .order_by(ProvisioningAuditEntry.id.asc())
        )
        return list(result.scalars().all())


async def tenant_count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    return await count_rows(session_factory, Tenant)
