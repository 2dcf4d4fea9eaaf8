from __future__ import annotations

from functools import lru_cache

from tenantforge.core.config import get_settings
from tenantforge.core.errors import ProviderConfigError
from tenantforge.providers.identity.base import IdentityProvider
from tenantforge.providers.identity.fake import InMemoryIdentityProvider
from tenantforge.providers.identity.http import HttpIdentityProvider


@lru_cache
def get_identity_provider() -> IdentityProvider:
    settings = get_settings()
    provider = (settings.identity_provider or "fake").lower()

    if provider == "fake":
        return InMemoryIdentityProvider()
    if provider == "http":
        return HttpIdentityProvider()

    raise ProviderConfigError(f"Unsupported identity provider: {provider}")


async def close_identity_provider() -> None:
    # Release the cached provider's transport; the next lookup builds a fresh provider.
    if get_identity_provider.cache_info().currsize == 0:
        return
    provider = get_identity_provider()
    get_identity_provider.cache_clear()
    aclose = getattr(provider, "aclose", None)
    if aclose is not None:
        await aclose()
