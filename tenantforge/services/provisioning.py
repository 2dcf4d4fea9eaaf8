from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.core.config import get_settings
from tenantforge.core.errors import (
    DuplicateSlugError,
    IdentityCreationFailed,
    IdentityProviderError,
    InvalidReferenceError,
    RecordWriteError,
    UnknownRecordError,
)
from tenantforge.domain.models import ProvisioningRequest
from tenantforge.domain.state import ErrorCode, ProvisioningStatus, ensure_transition
from tenantforge.persistence.repos import provisioning as provisioning_repo
from tenantforge.providers.identity.base import IdentityProvider
from tenantforge.services.audit import build_audit_entry, record_metrics, record_stage
from tenantforge.services.availability import AvailabilityChecker
from tenantforge.services.idempotency import claim_request, compute_request_hash, normalize_key
from tenantforge.services.identity import ensure_owner_identity
from tenantforge.services.records import RecordWriter, TenantData, TenantStore
from tenantforge.services.resilience import RetryPolicy, Sleeper, default_retry_policy, default_sleep
from tenantforge.services.slugs import (
    SlugPolicy,
    normalize_login,
    sanitize_slug,
    slug_policy_from_settings,
    validate_login,
    validate_slug,
)
from tenantforge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Provisioning failed due to an internal error; contact support with the request id"
IN_PROGRESS_MESSAGE = "A provisioning attempt with this idempotency key is still in progress"

CLEANUP_FLAG_ONLY = "flag_only"
CLEANUP_AUTO_DELETE = "auto_delete"

FINALIZE_ATTEMPTS = 2

_PRE_WRITE_STATES = (
    ProvisioningStatus.PENDING,
    ProvisioningStatus.VALIDATING,
    ProvisioningStatus.CREATING_IDENTITY,
)


@dataclass(frozen=True)
class ProvisioningCommand:
    idempotency_key: str
    requesting_admin_id: str
    tenant_name: str
    candidate_slug: str
    owner_login: str
    owner_display_name: str
    configuration: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisioningResult:
    success: bool
    request_id: str
    tenant_id: str | None = None
    slug: str | None = None
    owner_identity_id: str | None = None
    error_code: ErrorCode | None = None
    message: str | None = None
    replayed: bool = False

    def to_response(self) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "tenantId": self.tenant_id,
                "slug": self.slug,
                "ownerIdentityId": self.owner_identity_id,
            }
        return {
            "success": False,
            "errorCode": self.error_code.value if self.error_code else ErrorCode.UNKNOWN.value,
            "message": self.message or GENERIC_FAILURE_MESSAGE,
            "requestId": self.request_id,
        }

    @classmethod
    def from_stored(cls, request: ProvisioningRequest) -> "ProvisioningResult":
        body = request.response_json or {}
        if body.get("success"):
            return cls(
                success=True,
                request_id=request.id,
                tenant_id=body.get("tenantId"),
                slug=body.get("slug"),
                owner_identity_id=body.get("ownerIdentityId"),
                replayed=True,
            )
        return cls(
            success=False,
            request_id=body.get("requestId") or request.id,
            error_code=ErrorCode(body.get("errorCode") or ErrorCode.UNKNOWN.value),
            message=body.get("message"),
            replayed=True,
        )


@dataclass
class _Attempt:
    # In-memory view of the request row this orchestrator owns for one execution.
    request_id: str
    idempotency_key: str
    command: ProvisioningCommand
    configuration: dict[str, Any]
    started_at: float
    stage_started_at: float
    status: ProvisioningStatus = ProvisioningStatus.PENDING
    slug: str | None = None
    login: str | None = None
    identity_id: str | None = None
    identity_created: bool = False
    retry_count: int = 0
    tenant_id: str | None = None


def _audit_status(target: ProvisioningStatus) -> str:
    if target in (ProvisioningStatus.FAILED, ProvisioningStatus.ROLLED_BACK):
        return "failure"
    return "success"


class ProvisioningOrchestrator:
    """Saga coordinating identity creation and the atomic tenant write.

    States advance ``pending -> validating -> creating_identity ->
    writing_records -> completed``. Any state can fail; a failed write first
    passes through ``rolled_back``, where an identity created by this attempt
    and owned by no tenant is flagged for cleanup. Every transition updates
    the request row and appends an audit entry in the same commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        identity_provider: IdentityProvider,
        *,
        availability_checker: AvailabilityChecker | None = None,
        record_writer: TenantStore | None = None,
        slug_policy: SlugPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleeper = default_sleep,
        cleanup_mode: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._identity_provider = identity_provider
        self._checker = availability_checker or AvailabilityChecker(session_factory)
        self._writer = record_writer or RecordWriter(session_factory)
        self._slug_policy = slug_policy or slug_policy_from_settings()
        self._retry_policy = retry_policy or default_retry_policy()
        self._sleep = sleep
        self._cleanup_mode = (cleanup_mode or get_settings().identity_cleanup_mode).lower()

    async def provision(self, command: ProvisioningCommand) -> ProvisioningResult:
        started = time.monotonic()
        idempotency_key = normalize_key(command.idempotency_key)
        configuration = dict(command.configuration or {})
        request_hash = compute_request_hash(
            {
                "tenant_name": command.tenant_name,
                "candidate_slug": command.candidate_slug,
                "owner_login": command.owner_login,
                "owner_display_name": command.owner_display_name,
                "configuration": configuration,
            }
        )
        claim = await claim_request(
            self._session_factory,
            idempotency_key=idempotency_key,
            requesting_admin_id=command.requesting_admin_id,
            tenant_name=command.tenant_name,
            candidate_slug=command.candidate_slug,
            owner_login=command.owner_login,
            owner_display_name=command.owner_display_name,
            configuration=configuration,
            request_hash=request_hash,
        )
        if not claim.claimed:
            if claim.replayable:
                logger.info(
                    "provisioning_replayed idempotency_key=%s request_id=%s status=%s",
                    idempotency_key,
                    claim.request.id,
                    claim.request.status,
                )
                increment_counter("provisioning_replays_total")
                return ProvisioningResult.from_stored(claim.request)
            logger.info(
                "provisioning_in_progress idempotency_key=%s request_id=%s status=%s",
                idempotency_key,
                claim.request.id,
                claim.request.status,
            )
            return ProvisioningResult(
                success=False,
                request_id=claim.request.id,
                error_code=ErrorCode.IN_PROGRESS,
                message=IN_PROGRESS_MESSAGE,
            )

        attempt = _Attempt(
            request_id=claim.request.id,
            idempotency_key=idempotency_key,
            command=command,
            configuration=configuration,
            started_at=started,
            stage_started_at=started,
        )
        logger.info(
            "provisioning_started request_id=%s idempotency_key=%s admin_id=%s",
            attempt.request_id,
            idempotency_key,
            command.requesting_admin_id,
        )
        try:
            return await self._execute(attempt)
        except asyncio.CancelledError:
            if attempt.status in _PRE_WRITE_STATES:
                await asyncio.shield(self._abandon(attempt))
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "provisioning_unexpected_error request_id=%s status=%s",
                attempt.request_id,
                attempt.status.value,
            )
            return await self._fail_unexpected(attempt, exc)

    async def _execute(self, attempt: _Attempt) -> ProvisioningResult:
        command = attempt.command
        await self._transition(
            attempt,
            ProvisioningStatus.VALIDATING,
            payload={
                "tenant_name": command.tenant_name,
                "candidate_slug": command.candidate_slug,
                "owner_login": command.owner_login,
                "configuration": attempt.configuration,
            },
        )
        slug = sanitize_slug(command.candidate_slug, self._slug_policy)
        slug_check = validate_slug(slug, self._slug_policy)
        if not slug_check.ok:
            return await self._fail(attempt, ErrorCode.INVALID_SLUG, slug_check.reason or "Invalid slug")
        attempt.slug = slug
        login = normalize_login(command.owner_login)
        login_check = validate_login(login)
        if not login_check.ok:
            return await self._fail(attempt, ErrorCode.INVALID_LOGIN, login_check.reason or "Invalid login")
        attempt.login = login

        if not await self._checker.is_available(slug):
            return await self._fail(attempt, ErrorCode.DUPLICATE_SLUG, f"Slug '{slug}' is already in use")

        await self._transition(attempt, ProvisioningStatus.CREATING_IDENTITY, payload={"slug": slug, "owner_login": login})
        try:
            resolution = await ensure_owner_identity(
                self._identity_provider,
                login,
                {
                    "role": "tenant_owner",
                    "display_name": command.owner_display_name,
                    "tenant_slug": slug,
                    "provisioned_by": command.requesting_admin_id,
                },
                policy=self._retry_policy,
                sleep=self._sleep,
            )
        except IdentityCreationFailed as exc:
            attempt.retry_count = max(exc.attempts - 1, 0)
            return await self._fail(
                attempt,
                ErrorCode.IDENTITY_CREATION_FAILED,
                "Owner identity could not be created; an operator has been notified",
                detail=str(exc),
            )
        attempt.identity_id = resolution.identity_id
        attempt.identity_created = resolution.created
        attempt.retry_count = resolution.attempts - 1

        # Once the write starts the outcome must be recorded even if the caller goes away.
        return await asyncio.shield(self._write_and_finalize(attempt))

    async def _write_and_finalize(self, attempt: _Attempt) -> ProvisioningResult:
        command = attempt.command
        await self._transition(
            attempt,
            ProvisioningStatus.WRITING_RECORDS,
            payload={
                "owner_identity_id": attempt.identity_id,
                "identity_created": attempt.identity_created,
                "identity_attempts": attempt.retry_count + 1,
            },
        )
        tenant_data = TenantData(
            name=command.tenant_name.strip(),
            slug=attempt.slug or "",
            owner_login=attempt.login or "",
            requesting_admin_id=command.requesting_admin_id,
            request_id=attempt.request_id,
            owner_display_name=command.owner_display_name,
            configuration=attempt.configuration,
        )
        try:
            tenant_id = await self._writer.create_tenant_records(tenant_data, attempt.identity_id or "")
        except RecordWriteError as exc:
            return await self._roll_back(attempt, exc)
        attempt.tenant_id = tenant_id
        return await self._complete(attempt)

    async def _complete(self, attempt: _Attempt) -> ProvisioningResult:
        # The tenant is committed; finalize failures must never roll it back or flag its owner.
        result = ProvisioningResult(
            success=True,
            request_id=attempt.request_id,
            tenant_id=attempt.tenant_id,
            slug=attempt.slug,
            owner_identity_id=attempt.identity_id,
        )
        for finalize_attempt in range(1, FINALIZE_ATTEMPTS + 1):
            try:
                await self._finish(attempt, ProvisioningStatus.COMPLETED, result)
                return result
            except SQLAlchemyError:
                logger.exception(
                    "provisioning_finalize_failed request_id=%s tenant_id=%s attempt=%s",
                    attempt.request_id,
                    attempt.tenant_id,
                    finalize_attempt,
                )
        # Left in writing_records with the tenant committed; polling shows it as in progress.
        increment_counter("provisioning_finalize_failed_total")
        return result

    async def _roll_back(self, attempt: _Attempt, exc: RecordWriteError) -> ProvisioningResult:
        if isinstance(exc, DuplicateSlugError):
            code, message = ErrorCode.DUPLICATE_SLUG, f"Slug '{attempt.slug}' is already in use"
        elif isinstance(exc, InvalidReferenceError):
            code, message = ErrorCode.INVALID_REFERENCE, "Configuration references a record that does not exist"
        else:
            code, message = ErrorCode.UNKNOWN, GENERIC_FAILURE_MESSAGE

        cleanup_required = attempt.identity_created
        cleanup_outcome = "flagged" if cleanup_required else "not_required"
        ownership_known = True
        if cleanup_required:
            # A concurrent request with the same login may have converged on this identity.
            try:
                owning_tenants = await self._tenants_owned_by(attempt.identity_id or "")
            except SQLAlchemyError:
                logger.exception(
                    "identity_ownership_check_failed request_id=%s identity_id=%s",
                    attempt.request_id,
                    attempt.identity_id,
                )
                owning_tenants = []
                ownership_known = False
            if owning_tenants:
                cleanup_required = False
                cleanup_outcome = "in_use"
                logger.info(
                    "identity_cleanup_skipped request_id=%s identity_id=%s tenant_ids=%s",
                    attempt.request_id,
                    attempt.identity_id,
                    ",".join(owning_tenants),
                )
        if cleanup_required and ownership_known and self._cleanup_mode == CLEANUP_AUTO_DELETE:
            try:
                await self._identity_provider.delete(attempt.identity_id or "")
            except IdentityProviderError as delete_exc:
                cleanup_outcome = f"delete_failed: {delete_exc}"
            else:
                cleanup_required = False
                cleanup_outcome = "deleted"
        if cleanup_required:
            increment_counter("identity_cleanup_required_total")
            logger.error(
                "identity_cleanup_required request_id=%s identity_id=%s login=%s",
                attempt.request_id,
                attempt.identity_id,
                attempt.login,
            )
        await self._transition(
            attempt,
            ProvisioningStatus.ROLLED_BACK,
            error_code=code,
            error_detail=exc.detail,
            manual_cleanup_required=cleanup_required,
            payload={
                "owner_identity_id": attempt.identity_id,
                "identity_created": attempt.identity_created,
                "cleanup": cleanup_outcome,
                "write_error": type(exc).__name__,
            },
        )
        return await self._fail(attempt, code, message, detail=exc.detail)

    async def _tenants_owned_by(self, identity_id: str) -> list[str]:
        async with self._session_factory() as session:
            return await provisioning_repo.tenant_ids_for_owner(session, identity_id)

    async def _fail(
        self,
        attempt: _Attempt,
        code: ErrorCode,
        message: str,
        *,
        detail: str | None = None,
    ) -> ProvisioningResult:
        result = ProvisioningResult(
            success=False,
            request_id=attempt.request_id,
            error_code=code,
            message=message,
        )
        await self._finish(attempt, ProvisioningStatus.FAILED, result, error_detail=detail or message)
        return result

    async def _fail_unexpected(self, attempt: _Attempt, exc: Exception) -> ProvisioningResult:
        if attempt.status in (ProvisioningStatus.COMPLETED, ProvisioningStatus.FAILED):
            raise exc
        if attempt.tenant_id is not None:
            return await self._complete(attempt)
        detail = f"{type(exc).__name__}: {exc}"
        if attempt.status == ProvisioningStatus.WRITING_RECORDS:
            return await self._roll_back(attempt, UnknownRecordError("tenant record write failed", detail=detail))
        return await self._fail(attempt, ErrorCode.UNKNOWN, GENERIC_FAILURE_MESSAGE, detail=detail)

    async def _abandon(self, attempt: _Attempt) -> None:
        # Caller cancelled before the write; close the request so replays stop reporting in-progress.
        try:
            if attempt.identity_created:
                logger.error(
                    "identity_cleanup_required request_id=%s identity_id=%s reason=cancelled",
                    attempt.request_id,
                    attempt.identity_id,
                )
            await self._fail(
                attempt,
                ErrorCode.UNKNOWN,
                GENERIC_FAILURE_MESSAGE,
                detail="cancelled before tenant records were written",
            )
        except SQLAlchemyError:
            logger.exception("provisioning_abandon_failed request_id=%s", attempt.request_id)

    async def _finish(
        self,
        attempt: _Attempt,
        target: ProvisioningStatus,
        result: ProvisioningResult,
        *,
        error_detail: str | None = None,
    ) -> None:
        duration_ms = int((time.monotonic() - attempt.started_at) * 1000)
        await self._transition(
            attempt,
            target,
            error_code=result.error_code,
            error_detail=error_detail,
            payload={"tenant_id": attempt.tenant_id, "slug": attempt.slug},
            response=result.to_response(),
            duration_ms=duration_ms,
        )
        await record_metrics(
            session_factory=self._session_factory,
            request_id=attempt.request_id,
            tenant_id=attempt.tenant_id,
            requesting_admin_id=attempt.command.requesting_admin_id,
            duration_ms=duration_ms,
            success=result.success,
            retry_count=attempt.retry_count,
            failure_code=result.error_code.value if result.error_code else None,
            failure_reason=error_detail,
            configuration=attempt.configuration,
        )
        outcome = "success" if result.success else (result.error_code.value if result.error_code else "unknown")
        increment_counter(f"provisioning_outcome_total.{outcome}")
        logger.info(
            "provisioning_finished request_id=%s status=%s outcome=%s duration_ms=%s",
            attempt.request_id,
            target.value,
            outcome,
            duration_ms,
        )

    async def _transition(
        self,
        attempt: _Attempt,
        target: ProvisioningStatus,
        *,
        error_code: ErrorCode | None = None,
        error_detail: str | None = None,
        manual_cleanup_required: bool = False,
        payload: dict[str, Any] | None = None,
        response: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> None:
        previous = attempt.status
        ensure_transition(previous, target)
        now = time.monotonic()
        stage_ms = int((now - attempt.stage_started_at) * 1000)
        async with self._session_factory() as session:
            request = await session.get(ProvisioningRequest, attempt.request_id)
            if request is None:
                raise RuntimeError(f"provisioning request {attempt.request_id} disappeared")
            request.status = target.value
            request.slug = attempt.slug
            request.owner_identity_id = attempt.identity_id
            request.identity_created = attempt.identity_created
            request.retry_count = attempt.retry_count
            request.tenant_id = attempt.tenant_id
            if error_code is not None:
                request.error_code = error_code.value
                request.error_message = error_detail
            if response is not None:
                request.response_json = response
                request.duration_ms = duration_ms
                request.completed_at = datetime.now(timezone.utc)
            entry = build_audit_entry(
                request_id=attempt.request_id,
                idempotency_key=attempt.idempotency_key,
                tenant_id=attempt.tenant_id,
                requesting_admin_id=attempt.command.requesting_admin_id,
                stage=target.value,
                status=_audit_status(target),
                payload=payload,
                error_code=error_code.value if error_code else None,
                error_detail=error_detail,
                manual_cleanup_required=manual_cleanup_required,
                duration_ms=stage_ms,
            )
            await record_stage(session=session, entry=entry, best_effort=not manual_cleanup_required)
            await session.commit()
        attempt.status = target
        attempt.stage_started_at = now
        logger.info(
            "provisioning_transition request_id=%s from=%s to=%s stage_ms=%s",
            attempt.request_id,
            previous.value,
            target.value,
            stage_ms,
        )
