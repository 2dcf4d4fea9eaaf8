from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.domain.models import ProvisioningRequest
from tenantforge.domain.state import ProvisioningStatus, is_terminal
from tenantforge.persistence.repos.provisioning import get_request_by_key


logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_MAX_LENGTH = 128


class IdempotencyKeyInvalid(ValueError):
    """Idempotency key is empty or too long."""


@dataclass(frozen=True)
class IdempotencyClaim:
    request: ProvisioningRequest
    # True when this call inserted the row and owns execution.
    claimed: bool

    @property
    def replayable(self) -> bool:
        # rolled_back is terminal but still moving to failed until the response is stored.
        return self.request.response_json is not None and is_terminal(self.request.status)


def normalize_key(value: str) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = (value or "").strip()
    if not cleaned:
        raise IdempotencyKeyInvalid("idempotency key is empty")
    if len(cleaned) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise IdempotencyKeyInvalid(f"idempotency key exceeds {IDEMPOTENCY_KEY_MAX_LENGTH} characters")
    return cleaned


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


async def claim_request(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    idempotency_key: str,
    requesting_admin_id: str,
    tenant_name: str,
    candidate_slug: str,
    owner_login: str,
    owner_display_name: str | None,
    configuration: dict[str, Any],
    request_hash: str,
) -> IdempotencyClaim:
    """Insert the pending request row, or return the row that already holds the key.

    The unique constraint on ``idempotency_key`` decides concurrent claims;
    the loser reads the winner's row instead of executing again.
    """
    async with session_factory() as session:
        existing = await get_request_by_key(session, idempotency_key)
        if existing is not None:
            _warn_on_mismatch(existing, request_hash)
            return IdempotencyClaim(existing, claimed=False)
        request = ProvisioningRequest(
            idempotency_key=idempotency_key,
            requesting_admin_id=requesting_admin_id,
            tenant_name=tenant_name,
            candidate_slug=candidate_slug,
            owner_login=owner_login,
            owner_display_name=owner_display_name,
            configuration=configuration,
            request_hash=request_hash,
            status=ProvisioningStatus.PENDING.value,
        )
        try:
            session.add(request)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info("idempotency_claim_lost idempotency_key=%s", idempotency_key)
        else:
            return IdempotencyClaim(request, claimed=True)

    async with session_factory() as session:
        winner = await get_request_by_key(session, idempotency_key)
    if winner is None:
        # Constraint fired but no row is visible; only possible if the winner was purged.
        raise RuntimeError(f"idempotency key {idempotency_key} conflicted but no request row exists")
    _warn_on_mismatch(winner, request_hash)
    return IdempotencyClaim(winner, claimed=False)


def _warn_on_mismatch(existing: ProvisioningRequest, request_hash: str) -> None:
    if existing.request_hash != request_hash:
        logger.warning(
            "idempotency_key_payload_mismatch idempotency_key=%s request_id=%s",
            existing.idempotency_key,
            existing.id,
        )
