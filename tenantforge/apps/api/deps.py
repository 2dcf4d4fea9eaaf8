from __future__ import annotations

import hmac
import logging
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.core.config import get_settings
from tenantforge.domain.state import ErrorCode
from tenantforge.persistence.db import SessionLocal
from tenantforge.providers.identity.base import IdentityProvider
from tenantforge.providers.identity.factory import get_identity_provider
from tenantforge.services.provisioning import ProvisioningOrchestrator


logger = logging.getLogger(__name__)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # Overridden in tests to point at a throwaway database.
    return SessionLocal


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with session_factory() as session:
        yield session


def get_identity_provider_dep() -> IdentityProvider:
    return get_identity_provider()


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    identity_provider: IdentityProvider = Depends(get_identity_provider_dep),
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(session_factory, identity_provider)


class Principal(BaseModel):
    # Authenticated platform administrator; the id is recorded on every audit row.
    admin_id: str


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": ErrorCode.UNAUTHORIZED.value, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def parse_admin_tokens(raw: str) -> dict[str, str]:
    # "admin_id:token" pairs, comma-delimited; returns token -> admin_id.
    tokens: dict[str, str] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item or ":" not in item:
            continue
        admin_id, token = item.split(":", 1)
        admin_id, token = admin_id.strip(), token.strip()
        if admin_id and token:
            tokens[token] = admin_id
    return tokens


def _parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for admin authentication.
    if not header_value:
        raise _auth_error("Missing or invalid bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_admin(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    token = _parse_bearer_token(authorization)
    known = parse_admin_tokens(get_settings().admin_api_tokens)
    for candidate, admin_id in known.items():
        if hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8")):
            return Principal(admin_id=admin_id)
    logger.warning("admin_auth_rejected known_tokens=%s", len(known))
    raise _auth_error("Missing or invalid bearer token")
