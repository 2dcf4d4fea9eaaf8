from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantforge.core.errors import DuplicateSlugError, InvalidReferenceError
from tenantforge.domain.models import (
    ProvisioningIntent,
    Tenant,
    TenantCategory,
    TenantFeature,
    TenantSchedule,
    TenantSetting,
)
from tenantforge.persistence.repos.provisioning import count_tenant_records, get_tenant_by_slug
from tenantforge.services.records import DEFAULT_SCHEDULE, RecordWriter, TenantData
from tenantforge.tests.utils.provisioning import count_rows


def _tenant_data(**overrides) -> TenantData:
    values = {
        "name": "Golden Spoon",
        "slug": "golden-spoon",
        "owner_login": "owner@goldenspoon.example",
        "requesting_admin_id": "admin-1",
        "request_id": "req-1",
    }
    values.update(overrides)
    return TenantData(**values)


@pytest.mark.asyncio
async def test_writes_tenant_and_all_dependent_records(session_factory) -> None:
    writer = RecordWriter(session_factory)
    tenant_id = await writer.create_tenant_records(
        _tenant_data(configuration={"timezone": "Europe/Rome", "features": {"sms_reminders": True}, "theme": "dark"}),
        "identity-1",
    )

    async with session_factory() as session:
        tenant = await get_tenant_by_slug(session, "golden-spoon")
        assert tenant is not None
        assert tenant.id == tenant_id
        assert tenant.owner_identity_id == "identity-1"
        assert tenant.timezone == "Europe/Rome"
        assert tenant.currency == "USD"

        counts = await count_tenant_records(session, tenant_id)
        assert counts["features"] == 5
        assert counts["schedules"] == len(DEFAULT_SCHEDULE)
        assert counts["intents"] == 1

        settings_rows = (
            await session.execute(select(TenantSetting).where(TenantSetting.tenant_id == tenant_id))
        ).scalars().all()
        keys = {row.key for row in settings_rows}
        assert {"party_size", "notifications", "theme"} <= keys
        assert "timezone" not in keys

        feature = (
            await session.execute(
                select(TenantFeature).where(
                    TenantFeature.tenant_id == tenant_id, TenantFeature.feature_key == "sms_reminders"
                )
            )
        ).scalar_one()
        assert feature.source == "request"

        intent = (await session.execute(select(ProvisioningIntent))).scalar_one()
        assert intent.tenant_slug == "golden-spoon"
        assert intent.granted_by == "admin-1"


@pytest.mark.asyncio
async def test_duplicate_slug_leaves_no_partial_records(session_factory) -> None:
    writer = RecordWriter(session_factory)
    await writer.create_tenant_records(_tenant_data(), "identity-1")

    with pytest.raises(DuplicateSlugError) as excinfo:
        await writer.create_tenant_records(_tenant_data(request_id="req-2"), "identity-2")
    assert excinfo.value.slug == "golden-spoon"

    assert await count_rows(session_factory, Tenant) == 1
    assert await count_rows(session_factory, TenantSchedule) == len(DEFAULT_SCHEDULE)
    assert await count_rows(session_factory, ProvisioningIntent) == 1


@pytest.mark.asyncio
async def test_unknown_category_is_an_invalid_reference(session_factory) -> None:
    writer = RecordWriter(session_factory)
    with pytest.raises(InvalidReferenceError):
        await writer.create_tenant_records(_tenant_data(configuration={"category_id": "missing"}), "identity-1")

    assert await count_rows(session_factory, Tenant) == 0
    assert await count_rows(session_factory, TenantFeature) == 0
    assert await count_rows(session_factory, TenantSetting) == 0


@pytest.mark.asyncio
async def test_known_category_is_linked(session_factory) -> None:
    async with session_factory() as session:
        category = TenantCategory(name="restaurants")
        session.add(category)
        await session.commit()

    writer = RecordWriter(session_factory)
    tenant_id = await writer.create_tenant_records(
        _tenant_data(configuration={"category_id": category.id}), "identity-1"
    )
    async with session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
        assert tenant is not None
        assert tenant.category_id == category.id
