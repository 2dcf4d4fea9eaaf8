from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from tenantforge.core.errors import (
    IdentityAlreadyExistsError,
    IdentityProviderError,
    IdentityProviderUnavailableError,
)
from tenantforge.providers.identity.base import Identity


class InMemoryIdentityProvider:
    def __init__(self, *, transient_failures: int = 0) -> None:
        # Login uniqueness mirrors a real provider so concurrent creates race the same way.
        self._by_login: dict[str, Identity] = {}
        self._lock = asyncio.Lock()
        self._transient_failures = transient_failures
        self.calls: Counter[str] = Counter()

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def identities(self) -> list[Identity]:
        return list(self._by_login.values())

    async def find_by_login(self, login: str) -> Identity | None:
        self.calls["find_by_login"] += 1
        return self._by_login.get(login.lower())

    async def create(self, login: str, metadata: dict[str, Any]) -> Identity:
        self.calls["create"] += 1
        if self._transient_failures > 0:
            self._transient_failures -= 1
            raise IdentityProviderUnavailableError("identity provider temporarily unavailable")
        key = login.lower()
        async with self._lock:
            if key in self._by_login:
                raise IdentityAlreadyExistsError(f"login {key} already registered")
            identity = Identity(
                id=uuid4().hex,
                login=key,
                created_at=datetime.now(timezone.utc),
                metadata=dict(metadata),
            )
            self._by_login[key] = identity
        return identity

    async def delete(self, identity_id: str) -> None:
        self.calls["delete"] += 1
        async with self._lock:
            for login, identity in list(self._by_login.items()):
                if identity.id == identity_id:
                    del self._by_login[login]
                    return
        raise IdentityProviderError(f"identity {identity_id} not found")
