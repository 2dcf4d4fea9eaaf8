from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass(frozen=True)
class Identity:
    id: str
    login: str
    created_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class IdentityProvider(Protocol):
    async def find_by_login(self, login: str) -> Identity | None:
        ...

    async def create(self, login: str, metadata: dict[str, Any]) -> Identity:
        ...

    async def delete(self, identity_id: str) -> None:
        ...
