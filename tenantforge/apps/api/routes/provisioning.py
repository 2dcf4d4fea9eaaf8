from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantforge.apps.api.deps import Principal, get_db, get_orchestrator, require_admin
from tenantforge.apps.api.errors import INVALID_REQUEST, NOT_FOUND
from tenantforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES, PROVISIONING_ERROR_RESPONSES
from tenantforge.apps.api.response import ProvisioningSuccessResponse, failure_response
from tenantforge.core.config import get_settings
from tenantforge.domain.state import ErrorCode
from tenantforge.persistence.repos import audit as audit_repo
from tenantforge.persistence.repos import provisioning as provisioning_repo
from tenantforge.services.idempotency import IDEMPOTENCY_KEY_MAX_LENGTH, IdempotencyKeyInvalid, normalize_key
from tenantforge.services.provisioning import ProvisioningCommand, ProvisioningOrchestrator


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provisioning", tags=["provisioning"], responses=DEFAULT_ERROR_RESPONSES)

# Caller-visible code -> HTTP status.
ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_SLUG: 400,
    ErrorCode.INVALID_LOGIN: 400,
    ErrorCode.INVALID_REFERENCE: 400,
    ErrorCode.DUPLICATE_SLUG: 409,
    ErrorCode.IN_PROGRESS: 409,
    ErrorCode.IDENTITY_CREATION_FAILED: 502,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.UNKNOWN: 500,
}


class ProvisionTenantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=IDEMPOTENCY_KEY_MAX_LENGTH)
    tenant_name: str = Field(alias="tenantName", min_length=1, max_length=200)
    candidate_slug: str = Field(alias="candidateSlug", max_length=200)
    owner_login: str = Field(alias="ownerLogin", max_length=320)
    owner_display_name: str = Field(alias="ownerDisplayName", min_length=1, max_length=200)
    configuration: dict[str, Any] = Field(default_factory=dict)


class ProvisioningRequestView(BaseModel):
    request_id: str
    idempotency_key: str
    status: str
    requesting_admin_id: str
    tenant_name: str
    candidate_slug: str
    slug: str | None
    tenant_id: str | None
    owner_identity_id: str | None
    identity_created: bool
    retry_count: int
    error_code: str | None
    duration_ms: int | None
    response: dict[str, Any] | None
    created_at: str | None
    completed_at: str | None


class AuditEntryResponse(BaseModel):
    id: int
    request_id: str
    idempotency_key: str | None
    tenant_id: str | None
    requesting_admin_id: str | None
    stage: str
    status: str
    payload_snapshot: dict[str, Any] | None
    error_code: str | None
    error_detail: str | None
    manual_cleanup_required: bool
    duration_ms: int | None
    created_at: str


class AuditEntriesPage(BaseModel):
    items: list[AuditEntryResponse]
    next_offset: int | None


class MetricResponse(BaseModel):
    id: int
    request_id: str
    tenant_id: str | None
    requesting_admin_id: str | None
    duration_ms: int
    success: bool
    retry_count: int
    failure_code: str | None
    failure_reason: str | None
    created_at: str


class MetricsPage(BaseModel):
    items: list[MetricResponse]
    next_offset: int | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _page_limit(limit: int | None) -> int:
    # Clamp page sizes to configured bounds.
    settings = get_settings()
    if limit is None:
        return settings.audit_default_page_size
    return max(1, min(limit, settings.audit_max_page_size))


@router.post(
    "/tenants",
    response_model=ProvisioningSuccessResponse,
    responses=PROVISIONING_ERROR_RESPONSES,
)
async def provision_tenant(
    payload: ProvisionTenantRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    try:
        command = ProvisioningCommand(
            idempotency_key=normalize_key(payload.idempotency_key),
            requesting_admin_id=principal.admin_id,
            tenant_name=payload.tenant_name,
            candidate_slug=payload.candidate_slug,
            owner_login=payload.owner_login,
            owner_display_name=payload.owner_display_name,
            configuration=payload.configuration,
        )
    except IdempotencyKeyInvalid as exc:
        return JSONResponse(
            content=failure_response(request=request, code=INVALID_REQUEST, message=str(exc)),
            status_code=422,
        )

    result = await orchestrator.provision(command)
    headers = {"Idempotency-Replayed": "true"} if result.replayed else None
    status_code = 200 if result.success else ERROR_STATUS.get(result.error_code or ErrorCode.UNKNOWN, 500)
    return JSONResponse(content=result.to_response(), status_code=status_code, headers=headers)


@router.get("/requests/{idempotency_key}", response_model=ProvisioningRequestView)
async def get_provisioning_request(
    idempotency_key: str,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> ProvisioningRequestView:
    # Polling view for callers that lost the first response.
    try:
        row = await provisioning_repo.get_request_by_key(db, idempotency_key.strip())
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching provisioning request") from exc
    if row is None:
        raise HTTPException(
            status_code=404,
            detail={"code": NOT_FOUND, "message": "Provisioning request not found"},
        )
    return ProvisioningRequestView(
        request_id=row.id,
        idempotency_key=row.idempotency_key,
        status=row.status,
        requesting_admin_id=row.requesting_admin_id,
        tenant_name=row.tenant_name,
        candidate_slug=row.candidate_slug,
        slug=row.slug,
        tenant_id=row.tenant_id,
        owner_identity_id=row.owner_identity_id,
        identity_created=bool(row.identity_created),
        retry_count=row.retry_count or 0,
        error_code=row.error_code,
        duration_ms=row.duration_ms,
        response=row.response_json,
        created_at=_iso(row.created_at),
        completed_at=_iso(row.completed_at),
    )


@router.get("/audit", response_model=AuditEntriesPage)
async def list_audit_entries(
    request_id: str | None = None,
    tenant_id: str | None = None,
    stage: str | None = None,
    manual_cleanup_required: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> AuditEntriesPage:
    page_size = _page_limit(limit)
    try:
        entries = await audit_repo.list_entries(
            db,
            request_id=request_id,
            tenant_id=tenant_id,
            stage=stage,
            manual_cleanup_required=manual_cleanup_required,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=page_size + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit entries") from exc

    next_offset = None
    if len(entries) > page_size:
        entries = entries[:page_size]
        next_offset = offset + page_size

    items = [
        AuditEntryResponse(
            id=entry.id,
            request_id=entry.request_id,
            idempotency_key=entry.idempotency_key,
            tenant_id=entry.tenant_id,
            requesting_admin_id=entry.requesting_admin_id,
            stage=entry.stage,
            status=entry.status,
            payload_snapshot=entry.payload_snapshot,
            error_code=entry.error_code,
            error_detail=entry.error_detail,
            manual_cleanup_required=bool(entry.manual_cleanup_required),
            duration_ms=entry.duration_ms,
            created_at=entry.created_at.isoformat(),
        )
        for entry in entries
    ]
    return AuditEntriesPage(items=items, next_offset=next_offset)


@router.get("/metrics", response_model=MetricsPage)
async def list_provisioning_metrics(
    request_id: str | None = None,
    tenant_id: str | None = None,
    success: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> MetricsPage:
    page_size = _page_limit(limit)
    try:
        metrics = await audit_repo.list_metrics(
            db,
            request_id=request_id,
            tenant_id=tenant_id,
            success=success,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=page_size + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching provisioning metrics") from exc

    next_offset = None
    if len(metrics) > page_size:
        metrics = metrics[:page_size]
        next_offset = offset + page_size

    items = [
        MetricResponse(
            id=metric.id,
            request_id=metric.request_id,
            tenant_id=metric.tenant_id,
            requesting_admin_id=metric.requesting_admin_id,
            duration_ms=metric.duration_ms,
            success=bool(metric.success),
            retry_count=metric.retry_count or 0,
            failure_code=metric.failure_code,
            failure_reason=metric.failure_reason,
            created_at=metric.created_at.isoformat(),
        )
        for metric in metrics
    ]
    return MetricsPage(items=items, next_offset=next_offset)
