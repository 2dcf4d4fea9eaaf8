from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.domain.models import ProvisioningAuditEntry, ProvisioningMetric


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def build_audit_entry(
    *,
    request_id: str,
    stage: str,
    status: str,
    idempotency_key: str | None = None,
    tenant_id: str | None = None,
    requesting_admin_id: str | None = None,
    payload: dict[str, Any] | None = None,
    error_code: str | None = None,
    error_detail: str | None = None,
    manual_cleanup_required: bool = False,
    duration_ms: int | None = None,
) -> ProvisioningAuditEntry:
    return ProvisioningAuditEntry(
        request_id=request_id,
        idempotency_key=idempotency_key,
        tenant_id=tenant_id,
        requesting_admin_id=requesting_admin_id,
        stage=stage,
        status=status,
        payload_snapshot=sanitize_metadata(payload or {}),
        error_code=error_code,
        error_detail=error_detail,
        manual_cleanup_required=manual_cleanup_required,
        duration_ms=duration_ms,
        created_at=datetime.now(timezone.utc),
    )


async def record_stage(
    *,
    session: AsyncSession,
    entry: ProvisioningAuditEntry,
    best_effort: bool = True,
) -> None:
    # The row joins the caller's transaction and commits with the status update.
    try:
        session.add(entry)
    except SQLAlchemyError as exc:
        level = logger.warning if best_effort else logger.error
        level(
            "audit_entry_write_failed stage=%s request_id=%s cleanup_required=%s",
            entry.stage,
            entry.request_id,
            entry.manual_cleanup_required,
            exc_info=exc,
        )


async def record_metrics(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    request_id: str,
    tenant_id: str | None,
    requesting_admin_id: str | None,
    duration_ms: int,
    success: bool,
    retry_count: int,
    failure_code: str | None = None,
    failure_reason: str | None = None,
    configuration: dict[str, Any] | None = None,
) -> None:
    # One row per attempt, written at terminal state only.
    metric = ProvisioningMetric(
        request_id=request_id,
        tenant_id=tenant_id,
        requesting_admin_id=requesting_admin_id,
        duration_ms=duration_ms,
        success=success,
        retry_count=retry_count,
        failure_code=failure_code,
        failure_reason=failure_reason,
        configuration=sanitize_metadata(configuration or {}),
        created_at=datetime.now(timezone.utc),
    )
    async with session_factory() as session:
        try:
            session.add(metric)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("provisioning_metric_write_failed request_id=%s", request_id, exc_info=exc)
