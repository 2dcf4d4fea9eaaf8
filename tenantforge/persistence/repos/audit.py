from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantforge.domain.models import ProvisioningAuditEntry, ProvisioningMetric


async def list_entries(
    session: AsyncSession,
    *,
    request_id: str | None = None,
    tenant_id: str | None = None,
    stage: str | None = None,
    manual_cleanup_required: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ProvisioningAuditEntry]:
    # Read-only access; audit rows are never updated or deleted through this layer.
    stmt = select(ProvisioningAuditEntry)
    if request_id:
        stmt = stmt.where(ProvisioningAuditEntry.request_id == request_id)
    if tenant_id:
        stmt = stmt.where(ProvisioningAuditEntry.tenant_id == tenant_id)
    if stage:
        stmt = stmt.where(ProvisioningAuditEntry.stage == stage)
    if manual_cleanup_required is not None:
        stmt = stmt.where(ProvisioningAuditEntry.manual_cleanup_required == manual_cleanup_required)
    if occurred_from:
        stmt = stmt.where(ProvisioningAuditEntry.created_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(ProvisioningAuditEntry.created_at <= occurred_to)

    stmt = stmt.order_by(ProvisioningAuditEntry.created_at.asc(), ProvisioningAuditEntry.id.asc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_metrics(
    session: AsyncSession,
    *,
    request_id: str | None = None,
    tenant_id: str | None = None,
    success: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ProvisioningMetric]:
    stmt = select(ProvisioningMetric)
    if request_id:
        stmt = stmt.where(ProvisioningMetric.request_id == request_id)
    if tenant_id:
        stmt = stmt.where(ProvisioningMetric.tenant_id == tenant_id)
    if success is not None:
        stmt = stmt.where(ProvisioningMetric.success == success)
    if occurred_from:
        stmt = stmt.where(ProvisioningMetric.created_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(ProvisioningMetric.created_at <= occurred_to)

    stmt = stmt.order_by(ProvisioningMetric.created_at.desc(), ProvisioningMetric.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
