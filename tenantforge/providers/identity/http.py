from __future__ import annotations

from datetime import datetime
import logging
import time
from typing import Any

import httpx

from tenantforge.core.config import get_settings
from tenantforge.core.errors import (
    IdentityAlreadyExistsError,
    IdentityProviderError,
    IdentityProviderUnavailableError,
    ProviderConfigError,
)
from tenantforge.providers.identity.base import Identity
from tenantforge.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "identity.http"


def _parse_identity(payload: dict[str, Any]) -> Identity:
    created_raw = payload.get("created_at")
    created_at = None
    if isinstance(created_raw, str):
        try:
            created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        except ValueError:
            created_at = None
    return Identity(
        id=str(payload["id"]),
        login=str(payload.get("login") or payload.get("email") or ""),
        created_at=created_at,
        metadata=payload.get("metadata") or {},
    )


class HttpIdentityProvider:
    """Identity provider backed by an admin REST API.

    The provider enforces login uniqueness itself; a 409/422 on create is
    surfaced as ``IdentityAlreadyExistsError`` so callers can converge on the
    existing identity. Timeouts, network errors, 429 and 5xx responses are
    transient; every other 4xx is permanent.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        service_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.identity_base_url or "").rstrip("/")
        self._token = service_token or settings.identity_service_token
        self._timeout_s = settings.identity_timeout_ms / 1000.0
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if not self._base_url:
            raise ProviderConfigError("IDENTITY_BASE_URL is required for the http identity provider")
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise ProviderConfigError("IDENTITY_SERVICE_TOKEN is required for the http identity provider")
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        headers = self._headers()
        start = time.monotonic()
        try:
            response = await client.request(method, path, headers=headers, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            record_external_call(
                integration=_INTEGRATION,
                operation=operation,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise IdentityProviderUnavailableError(f"identity {operation} failed: {exc}") from exc
        record_external_call(
            integration=_INTEGRATION,
            operation=operation,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise IdentityProviderUnavailableError(
                f"identity {operation} returned {response.status_code}"
            )
        return response

    async def find_by_login(self, login: str) -> Identity | None:
        response = await self._request("find_by_login", "GET", "/admin/users", params={"login": login})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise IdentityProviderError(f"identity lookup returned {response.status_code}")
        body = response.json()
        users = body.get("users", body) if isinstance(body, dict) else body
        if isinstance(users, dict):
            users = [users]
        for item in users or []:
            candidate = _parse_identity(item)
            if candidate.login.lower() == login.lower():
                return candidate
        return None

    async def create(self, login: str, metadata: dict[str, Any]) -> Identity:
        response = await self._request(
            "create",
            "POST",
            "/admin/users",
            json={"login": login, "email_confirm": True, "metadata": metadata},
        )
        if response.status_code in {409, 422}:
            raise IdentityAlreadyExistsError(f"login {login} already registered")
        if response.status_code >= 400:
            raise IdentityProviderError(f"identity create returned {response.status_code}")
        return _parse_identity(response.json())

    async def delete(self, identity_id: str) -> None:
        response = await self._request("delete", "DELETE", f"/admin/users/{identity_id}")
        if response.status_code >= 400:
            raise IdentityProviderError(f"identity delete returned {response.status_code}")
        logger.info("identity_deleted identity_id=%s", identity_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
