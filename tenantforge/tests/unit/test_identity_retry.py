from __future__ import annotations

import pytest

from tenantforge.core.errors import IdentityAlreadyExistsError, IdentityCreationFailed, IdentityProviderError
from tenantforge.providers.identity.fake import InMemoryIdentityProvider
from tenantforge.services.identity import ensure_owner_identity
from tenantforge.services.resilience import RetryPolicy
from tenantforge.services.telemetry import counters_snapshot
from tenantforge.tests.utils.provisioning import RecordingSleep


POLICY = RetryPolicy(max_attempts=3, backoff_ms=100, race_backoff_ms=10, max_backoff_ms=250, jitter=False)


def test_backoff_grows_exponentially_and_caps() -> None:
    assert POLICY.delay_for(1) == pytest.approx(0.1)
    assert POLICY.delay_for(2) == pytest.approx(0.2)
    assert POLICY.delay_for(3) == pytest.approx(0.25)


def test_jittered_backoff_stays_within_bounds() -> None:
    policy = RetryPolicy(max_attempts=3, backoff_ms=100, jitter=True)
    for _ in range(20):
        assert 0.05 <= policy.delay_for(1) <= 0.15


@pytest.mark.asyncio
async def test_existing_identity_is_reused_without_create() -> None:
    provider = InMemoryIdentityProvider()
    existing = await provider.create("owner@example.com", {})
    provider.calls.clear()

    resolution = await ensure_owner_identity(provider, "owner@example.com", policy=POLICY, sleep=RecordingSleep())
    assert resolution.identity_id == existing.id
    assert resolution.created is False
    assert provider.calls["create"] == 0


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff() -> None:
    provider = InMemoryIdentityProvider(transient_failures=2)
    sleep = RecordingSleep()

    resolution = await ensure_owner_identity(provider, "owner@example.com", policy=POLICY, sleep=sleep)
    assert resolution.created is True
    assert resolution.attempts == 3
    assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]
    assert counters_snapshot()["identity_retries_total"] == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_identity_creation_failed() -> None:
    provider = InMemoryIdentityProvider(transient_failures=5)
    sleep = RecordingSleep()

    with pytest.raises(IdentityCreationFailed) as excinfo:
        await ensure_owner_identity(provider, "owner@example.com", policy=POLICY, sleep=sleep)
    assert excinfo.value.attempts == 3
    assert provider.calls["create"] == 3
    # No sleep after the final attempt.
    assert len(sleep.delays) == 2
    assert provider.identities() == []


@pytest.mark.asyncio
async def test_permanent_rejection_is_not_retried() -> None:
    class RejectingProvider(InMemoryIdentityProvider):
        async def create(self, login, metadata):
            self.calls["create"] += 1
            raise IdentityProviderError("login domain is blocked")

    provider = RejectingProvider()
    with pytest.raises(IdentityCreationFailed) as excinfo:
        await ensure_owner_identity(provider, "owner@example.com", policy=POLICY, sleep=RecordingSleep())
    assert excinfo.value.attempts == 1
    assert provider.calls["create"] == 1


@pytest.mark.asyncio
async def test_create_race_converges_on_existing_identity() -> None:
    class LosingRaceProvider(InMemoryIdentityProvider):
        # First lookup misses; a competitor registers the login before our create lands.
        def __init__(self) -> None:
            super().__init__()
            self.first_lookup = True

        async def find_by_login(self, login):
            if self.first_lookup:
                self.first_lookup = False
                await InMemoryIdentityProvider.create(self, login, {"by": "competitor"})
                return None
            return await super().find_by_login(login)

    provider = LosingRaceProvider()
    sleep = RecordingSleep()
    resolution = await ensure_owner_identity(provider, "owner@example.com", policy=POLICY, sleep=sleep)

    assert resolution.created is False
    assert len(provider.identities()) == 1
    assert resolution.identity_id == provider.identities()[0].id
    assert sleep.delays == [pytest.approx(0.01)]


@pytest.mark.asyncio
async def test_permanent_error_on_race_lookup_raises_identity_creation_failed() -> None:
    class ForbiddenAfterRaceProvider(InMemoryIdentityProvider):
        # Create reports a conflict, then the provider refuses the follow-up lookup.
        def __init__(self) -> None:
            super().__init__()
            self.lookups = 0

        async def find_by_login(self, login):
            self.lookups += 1
            if self.lookups == 1:
                return None
            raise IdentityProviderError("identity lookup returned 403")

        async def create(self, login, metadata):
            self.calls["create"] += 1
            raise IdentityAlreadyExistsError(f"login {login} already registered")

    provider = ForbiddenAfterRaceProvider()
    with pytest.raises(IdentityCreationFailed) as excinfo:
        await ensure_owner_identity(provider, "owner@example.com", policy=POLICY, sleep=RecordingSleep())
    assert excinfo.value.attempts == 1
    assert isinstance(excinfo.value.last_error, IdentityProviderError)
    assert provider.calls["create"] == 1
