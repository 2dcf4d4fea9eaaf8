from __future__ import annotations

import httpx
import pytest

from tenantforge.core.errors import (
    IdentityAlreadyExistsError,
    IdentityProviderError,
    IdentityProviderUnavailableError,
    ProviderConfigError,
)
from tenantforge.apps.api.main import create_app, lifespan
from tenantforge.providers.identity.factory import get_identity_provider
from tenantforge.providers.identity.http import HttpIdentityProvider
from tenantforge.services.telemetry import external_call_summary


def _provider(handler) -> HttpIdentityProvider:
    client = httpx.AsyncClient(base_url="https://identity.test", transport=httpx.MockTransport(handler))
    return HttpIdentityProvider(base_url="https://identity.test", service_token="svc-token", client=client)


@pytest.mark.asyncio
async def test_find_by_login_matches_case_insensitively() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer svc-token"
        assert request.url.params["login"] == "owner@example.com"
        return httpx.Response(200, json={"users": [{"id": "u-1", "login": "Owner@Example.com"}]})

    provider = _provider(handler)
    identity = await provider.find_by_login("owner@example.com")
    assert identity is not None
    assert identity.id == "u-1"
    summary = external_call_summary(60)
    assert summary["identity.http.find_by_login"]["count"] == 1


@pytest.mark.asyncio
async def test_create_maps_conflict_to_already_exists() -> None:
    provider = _provider(lambda request: httpx.Response(409, json={"error": "exists"}))
    with pytest.raises(IdentityAlreadyExistsError):
        await provider.create("owner@example.com", {})


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_server_errors_are_transient(status_code: int) -> None:
    provider = _provider(lambda request: httpx.Response(status_code))
    with pytest.raises(IdentityProviderUnavailableError):
        await provider.create("owner@example.com", {})


@pytest.mark.asyncio
async def test_network_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    with pytest.raises(IdentityProviderUnavailableError):
        await provider.find_by_login("owner@example.com")


@pytest.mark.asyncio
async def test_client_errors_are_permanent() -> None:
    provider = _provider(lambda request: httpx.Response(400, json={"error": "bad login"}))
    with pytest.raises(IdentityProviderError) as excinfo:
        await provider.create("owner@example.com", {})
    assert not isinstance(excinfo.value, IdentityProviderUnavailableError)


@pytest.mark.asyncio
async def test_missing_token_is_a_configuration_error() -> None:
    client = httpx.AsyncClient(base_url="https://identity.test", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    provider = HttpIdentityProvider(base_url="https://identity.test", client=client)
    with pytest.raises(ProviderConfigError):
        await provider.delete("u-1")


@pytest.mark.asyncio
async def test_app_shutdown_closes_cached_provider_client(monkeypatch) -> None:
    monkeypatch.setenv("IDENTITY_PROVIDER", "http")
    monkeypatch.setenv("IDENTITY_BASE_URL", "https://identity.test")
    monkeypatch.setenv("IDENTITY_SERVICE_TOKEN", "svc-token")

    async with lifespan(create_app()):
        provider = get_identity_provider()
        assert isinstance(provider, HttpIdentityProvider)
        client = provider._get_client()
        assert not client.is_closed

    assert client.is_closed
    assert get_identity_provider.cache_info().currsize == 0
