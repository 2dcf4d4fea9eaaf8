from __future__ import annotations

import pytest

from tenantforge.core.errors import ProviderConfigError
from tenantforge.domain.models import ProvisioningIntent, Tenant
from tenantforge.services.availability import AvailabilityChecker, parse_availability_sources


def test_default_sources_cover_tenants_and_intents() -> None:
    from tenantforge.services.availability import availability_sources_from_settings

    labels = [source.label for source in availability_sources_from_settings()]
    assert labels == ["tenants.slug", "provisioning_intents.tenant_slug"]


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '[{"table": "tenants; drop table tenants", "column": "slug"}]',
        '["tenants"]',
    ],
)
def test_invalid_source_configuration_is_rejected(raw: str) -> None:
    with pytest.raises(ProviderConfigError):
        parse_availability_sources(raw)


@pytest.mark.asyncio
async def test_slug_taken_in_any_source_is_unavailable(session_factory) -> None:
    checker = AvailabilityChecker(session_factory)
    assert await checker.is_available("golden-spoon")

    async with session_factory() as session:
        session.add(ProvisioningIntent(tenant_slug="golden-spoon", status="completed"))
        await session.commit()

    assert await checker.find_conflicts("golden-spoon") == ["provisioning_intents.tenant_slug"]
    assert not await checker.is_available("golden-spoon")


@pytest.mark.asyncio
async def test_failed_intents_release_the_slug(session_factory) -> None:
    async with session_factory() as session:
        session.add(ProvisioningIntent(tenant_slug="blue-plate", status="failed"))
        session.add(Tenant(slug="red-door", name="Red Door"))
        await session.commit()

    checker = AvailabilityChecker(session_factory)
    assert await checker.is_available("blue-plate")
    assert await checker.find_conflicts("red-door") == ["tenants.slug"]
