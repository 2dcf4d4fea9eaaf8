from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.core.config import get_settings
from tenantforge.core.errors import (
    ConstraintViolationError,
    DuplicateSlugError,
    InvalidReferenceError,
    RecordWriteError,
    UnknownRecordError,
)
from tenantforge.domain.models import (
    ProvisioningIntent,
    Tenant,
    TenantFeature,
    TenantSchedule,
    TenantSetting,
    new_id,
)


logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"

# Configuration keys consumed as tenant columns or feature overrides rather than setting rows.
_RESERVED_CONFIG_KEYS = {"category_id", "timezone", "currency", "features"}

# (day_of_week, is_open, open, close); Sunday closed until the owner configures it.
DEFAULT_SCHEDULE: tuple[tuple[int, bool, str | None, str | None], ...] = (
    (0, False, None, None),
    (1, True, "09:00", "22:00"),
    (2, True, "09:00", "22:00"),
    (3, True, "09:00", "22:00"),
    (4, True, "09:00", "22:00"),
    (5, True, "09:00", "23:00"),
    (6, True, "09:00", "23:00"),
)

DEFAULT_SETTINGS: dict[str, Any] = {
    "party_size": {"min": 1, "max": 12, "default": 2, "large_party_threshold": 8},
    "notifications": {"email": True},
}


@dataclass(frozen=True)
class TenantData:
    name: str
    slug: str
    owner_login: str
    requesting_admin_id: str
    request_id: str
    owner_display_name: str | None = None
    configuration: dict[str, Any] = field(default_factory=dict)


class TenantStore(Protocol):
    async def create_tenant_records(self, tenant_data: TenantData, owner_identity_id: str) -> str:
        ...


def _sqlstate(exc: IntegrityError) -> str | None:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if isinstance(value, str):
            return value
    cause = getattr(orig, "__cause__", None)
    value = getattr(cause, "sqlstate", None)
    return value if isinstance(value, str) else None


def classify_integrity_error(exc: IntegrityError, slug: str) -> RecordWriteError:
    """Translate a driver integrity error into the writer's typed errors."""
    detail = str(getattr(exc, "orig", None) or exc)
    lowered = detail.lower()
    state = _sqlstate(exc)
    is_unique = state == _UNIQUE_VIOLATION or "unique constraint" in lowered or "duplicate key" in lowered
    is_fk = state == _FOREIGN_KEY_VIOLATION or "foreign key constraint" in lowered
    if is_unique and ("slug" in lowered or "uq_tenants_slug" in lowered):
        return DuplicateSlugError(slug, detail=detail)
    if is_fk:
        return InvalidReferenceError("configuration references a record that does not exist", detail=detail)
    return ConstraintViolationError("tenant records violate a database constraint", detail=detail)


def _feature_rows(tenant_id: str, configuration: dict[str, Any]) -> list[TenantFeature]:
    settings = get_settings()
    features: dict[str, tuple[bool, str]] = {
        key.strip(): (True, "plan") for key in settings.default_features.split(",") if key.strip()
    }
    overrides = configuration.get("features")
    if isinstance(overrides, dict):
        for key, enabled in overrides.items():
            features[str(key)] = (bool(enabled), "request")
    return [
        TenantFeature(tenant_id=tenant_id, feature_key=key, enabled=enabled, source=source)
        for key, (enabled, source) in sorted(features.items())
    ]


def _setting_rows(tenant_id: str, configuration: dict[str, Any]) -> list[TenantSetting]:
    merged = dict(DEFAULT_SETTINGS)
    for key, value in configuration.items():
        if key not in _RESERVED_CONFIG_KEYS:
            merged[str(key)] = value
    return [TenantSetting(tenant_id=tenant_id, key=key, value_json=value) for key, value in sorted(merged.items())]


def _schedule_rows(tenant_id: str) -> list[TenantSchedule]:
    return [
        TenantSchedule(
            tenant_id=tenant_id,
            day_of_week=day,
            is_open=is_open,
            open_time=open_time,
            close_time=close_time,
        )
        for day, is_open, open_time, close_time in DEFAULT_SCHEDULE
    ]


class RecordWriter:
    """Single transactional entry point for tenant creation.

    The tenant row, feature defaults, seed settings, schedule rows and the
    record-of-intent row are written inside one transaction. Any failure
    rolls all of them back and surfaces as a ``RecordWriteError`` subclass.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_tenant_records(self, tenant_data: TenantData, owner_identity_id: str) -> str:
        settings = get_settings()
        configuration = dict(tenant_data.configuration or {})
        tenant_id = new_id()
        tenant = Tenant(
            id=tenant_id,
            slug=tenant_data.slug,
            name=tenant_data.name,
            owner_identity_id=owner_identity_id,
            owner_login=tenant_data.owner_login,
            category_id=configuration.get("category_id") or None,
            timezone=str(configuration.get("timezone") or settings.default_timezone),
            currency=str(configuration.get("currency") or settings.default_currency),
            status="active",
        )
        intent = ProvisioningIntent(
            tenant_id=tenant_id,
            tenant_slug=tenant_data.slug,
            owner_identity_id=owner_identity_id,
            role_granted="owner",
            granted_by=tenant_data.requesting_admin_id,
            request_id=tenant_data.request_id,
            status="completed",
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(tenant)
                    # Flush the tenant first so dependent rows satisfy their FKs.
                    await session.flush()
                    session.add_all(_feature_rows(tenant_id, configuration))
                    session.add_all(_setting_rows(tenant_id, configuration))
                    session.add_all(_schedule_rows(tenant_id))
                    session.add(intent)
        except IntegrityError as exc:
            error = classify_integrity_error(exc, tenant_data.slug)
            logger.warning(
                "tenant_records_rejected slug=%s request_id=%s error=%s",
                tenant_data.slug,
                tenant_data.request_id,
                type(error).__name__,
            )
            raise error from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "tenant_records_failed slug=%s request_id=%s", tenant_data.slug, tenant_data.request_id
            )
            raise UnknownRecordError("tenant record write failed", detail=str(exc)) from exc
        logger.info(
            "tenant_records_created tenant_id=%s slug=%s request_id=%s",
            tenant_id,
            tenant_data.slug,
            tenant_data.request_id,
        )
        return tenant_id
