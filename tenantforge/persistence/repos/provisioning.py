from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantforge.domain.models import (
    ProvisioningIntent,
    ProvisioningRequest,
    Tenant,
    TenantFeature,
    TenantSchedule,
    TenantSetting,
)


async def get_request_by_key(session: AsyncSession, idempotency_key: str) -> ProvisioningRequest | None:
    result = await session.execute(
        select(ProvisioningRequest).where(ProvisioningRequest.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def tenant_ids_for_owner(session: AsyncSession, identity_id: str) -> list[str]:
    result = await session.execute(select(Tenant.id).where(Tenant.owner_identity_id == identity_id))
    return list(result.scalars().all())


async def get_tenant_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def count_tenant_records(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    # Used by operators and tests to verify the all-or-nothing record set.
    counts: dict[str, int] = {}
    for label, model in (
        ("features", TenantFeature),
        ("settings", TenantSetting),
        ("schedules", TenantSchedule),
        ("intents", ProvisioningIntent),
    ):
        result = await session.execute(
            select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
        )
        counts[label] = int(result.scalar_one())
    return counts
