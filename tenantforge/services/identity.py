from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from tenantforge.core.errors import (
    IdentityAlreadyExistsError,
    IdentityCreationFailed,
    IdentityProviderError,
    IdentityProviderUnavailableError,
)
from tenantforge.providers.identity.base import IdentityProvider
from tenantforge.services.resilience import RetryPolicy, Sleeper, default_retry_policy, default_sleep
from tenantforge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityResolution:
    identity_id: str
    # False when the identity pre-existed or a concurrent request created it.
    created: bool
    attempts: int


async def ensure_owner_identity(
    provider: IdentityProvider,
    login: str,
    metadata: dict[str, Any] | None = None,
    *,
    policy: RetryPolicy | None = None,
    sleep: Sleeper = default_sleep,
) -> IdentityResolution:
    """Return the identity for ``login``, creating it if needed.

    Lookup and creation are not transactionally linked, so a concurrent
    request may create the login in between. That surfaces as
    ``IdentityAlreadyExistsError`` and resolves by re-querying, which makes
    racing requests converge on one identity. Transient provider failures
    back off and retry; exhaustion raises ``IdentityCreationFailed``.
    """
    policy = policy or default_retry_policy()
    max_attempts = max(policy.max_attempts, 1)
    metadata = metadata or {}
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            existing = await provider.find_by_login(login)
            if existing is not None:
                logger.info("identity_found login=%s identity_id=%s attempt=%s", login, existing.id, attempt)
                return IdentityResolution(existing.id, created=False, attempts=attempt)
            created = await provider.create(login, metadata)
            logger.info("identity_created login=%s identity_id=%s attempt=%s", login, created.id, attempt)
            return IdentityResolution(created.id, created=True, attempts=attempt)
        except IdentityAlreadyExistsError as exc:
            last_error = exc
            increment_counter("identity_create_races_total")
            logger.info("identity_create_race login=%s attempt=%s", login, attempt)
            await sleep(policy.race_delay())
            try:
                winner = await provider.find_by_login(login)
            except IdentityProviderUnavailableError as lookup_exc:
                last_error = lookup_exc
                winner = None
            except IdentityProviderError as lookup_exc:
                logger.error(
                    "identity_race_lookup_failed login=%s attempt=%s error=%s", login, attempt, lookup_exc
                )
                raise IdentityCreationFailed(login, attempt, lookup_exc) from lookup_exc
            if winner is not None:
                return IdentityResolution(winner.id, created=False, attempts=attempt)
            # Provider reported a conflict but the login is not visible yet; try again.
        except IdentityProviderUnavailableError as exc:
            last_error = exc
            increment_counter("identity_retries_total")
            logger.warning(
                "identity_transient_failure login=%s attempt=%s max_attempts=%s error=%s",
                login,
                attempt,
                max_attempts,
                exc,
            )
            if attempt < max_attempts:
                await sleep(policy.delay_for(attempt))
        except IdentityProviderError as exc:
            # Permanent rejection; retrying cannot help.
            logger.error("identity_permanent_failure login=%s attempt=%s error=%s", login, attempt, exc)
            raise IdentityCreationFailed(login, attempt, exc) from exc

    increment_counter("identity_exhausted_total")
    raise IdentityCreationFailed(login, max_attempts, last_error)
