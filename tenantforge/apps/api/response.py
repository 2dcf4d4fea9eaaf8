from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field


API_VERSION = "v1"


class FailureResponse(BaseModel):
    # Shared shape for every non-success response, provisioning outcome or transport error.
    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    error_code: str = Field(alias="errorCode")
    message: str
    request_id: str = Field(alias="requestId")


class ProvisioningSuccessResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    tenant_id: str = Field(alias="tenantId")
    slug: str
    owner_identity_id: str = Field(alias="ownerIdentityId")


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def failure_response(
    *,
    request: Request,
    code: str,
    message: str,
    request_id: str | None = None,
) -> dict[str, Any]:
    # Provisioning failures carry their own correlation id; transport errors reuse X-Request-Id.
    payload = FailureResponse(
        error_code=code,
        message=message,
        request_id=request_id or get_request_id(request),
    )
    return payload.model_dump(by_alias=True)
