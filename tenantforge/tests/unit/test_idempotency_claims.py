from __future__ import annotations

import asyncio

import pytest

from tenantforge.domain.models import ProvisioningRequest
from tenantforge.services.idempotency import (
    IdempotencyKeyInvalid,
    claim_request,
    compute_request_hash,
    normalize_key,
)
from tenantforge.tests.utils.provisioning import count_rows


def _claim_kwargs(key: str, request_hash: str = "hash-a") -> dict:
    return {
        "idempotency_key": key,
        "requesting_admin_id": "admin-1",
        "tenant_name": "Golden Spoon",
        "candidate_slug": "golden-spoon",
        "owner_login": "owner@goldenspoon.example",
        "owner_display_name": None,
        "configuration": {},
        "request_hash": request_hash,
    }


def test_normalize_key_enforces_bounds() -> None:
    assert normalize_key("  key-1 ") == "key-1"
    with pytest.raises(IdempotencyKeyInvalid):
        normalize_key("   ")
    with pytest.raises(IdempotencyKeyInvalid):
        normalize_key("k" * 129)


def test_request_hash_ignores_key_order() -> None:
    assert compute_request_hash({"a": 1, "b": [1, 2]}) == compute_request_hash({"b": [1, 2], "a": 1})
    assert compute_request_hash({"a": 1}) != compute_request_hash({"a": 2})


@pytest.mark.asyncio
async def test_second_claim_returns_existing_row(session_factory) -> None:
    first = await claim_request(session_factory, **_claim_kwargs("key-1"))
    second = await claim_request(session_factory, **_claim_kwargs("key-1", request_hash="hash-b"))

    assert first.claimed is True
    assert second.claimed is False
    assert second.request.id == first.request.id
    # Pending rows have no stored response yet.
    assert second.replayable is False
    assert await count_rows(session_factory, ProvisioningRequest) == 1


@pytest.mark.asyncio
async def test_concurrent_claims_elect_a_single_owner(session_factory) -> None:
    claims = await asyncio.gather(*(claim_request(session_factory, **_claim_kwargs("key-race")) for _ in range(4)))

    assert sum(1 for claim in claims if claim.claimed) == 1
    assert len({claim.request.id for claim in claims}) == 1
    assert await count_rows(session_factory, ProvisioningRequest) == 1
