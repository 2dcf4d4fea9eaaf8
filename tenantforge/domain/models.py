from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON on SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class TenantCategory(Base):
    __tablename__ = "tenant_categories"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (UniqueConstraint("slug", name="uq_tenants_slug"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # The unique constraint on slug is the final authority on namespace ownership.
    slug: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200))
    # Reference only; the identity provider owns the identity lifecycle.
    owner_identity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    owner_login: Mapped[str | None] = mapped_column(String, nullable=True)
    category_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenant_categories.id"), nullable=True
    )
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class TenantFeature(Base):
    __tablename__ = "tenant_features"
    __table_args__ = (UniqueConstraint("tenant_id", "feature_key", name="uq_tenant_features_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    feature_key: Mapped[str] = mapped_column(String)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    # plan for platform defaults, request for admin-supplied overrides.
    source: Mapped[str] = mapped_column(String, default="plan")


class TenantSetting(Base):
    __tablename__ = "tenant_settings"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_tenant_settings_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    key: Mapped[str] = mapped_column(String)
    value_json: Mapped[Any] = mapped_column(JSONType, nullable=True)


class TenantSchedule(Base):
    __tablename__ = "tenant_schedules"
    __table_args__ = (UniqueConstraint("tenant_id", "day_of_week", name="uq_tenant_schedules_day"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    # 0 = Sunday, matching the booking widget convention.
    day_of_week: Mapped[int] = mapped_column(SmallInteger)
    is_open: Mapped[bool] = mapped_column(Boolean, default=True)
    open_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    close_time: Mapped[str | None] = mapped_column(String(5), nullable=True)


class ProvisioningIntent(Base):
    __tablename__ = "provisioning_intents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Independently records slug usage for downstream subsystems.
    tenant_slug: Mapped[str] = mapped_column(String(64), index=True)
    owner_identity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    role_granted: Mapped[str] = mapped_column(String, default="owner")
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="completed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class ProvisioningRequest(Base):
    __tablename__ = "provisioning_requests"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_provisioning_requests_idempotency_key"),
        Index("ix_provisioning_requests_status", "status"),
        Index("ix_provisioning_requests_created_at", "created_at"),
    )

    # Doubles as the correlation id returned to callers.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    idempotency_key: Mapped[str] = mapped_column(String(128))
    requesting_admin_id: Mapped[str] = mapped_column(String, index=True)
    tenant_name: Mapped[str] = mapped_column(String(200))
    candidate_slug: Mapped[str] = mapped_column(String)
    slug: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_login: Mapped[str] = mapped_column(String)
    owner_display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    configuration: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    request_hash: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    owner_identity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # True only when this attempt created the identity; drives compensation.
    identity_created: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    # Internal detail; never returned to callers.
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Caller-visible outcome, stored once at terminal state for idempotent replay.
    response_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProvisioningAuditEntry(Base):
    __tablename__ = "provisioning_audit_log"
    __table_args__ = (
        Index("ix_provisioning_audit_log_created_at", "created_at"),
        Index("ix_provisioning_audit_log_cleanup", "manual_cleanup_required"),
    )

    # Monotonic id keeps per-request ordering stable even with equal timestamps.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    requesting_admin_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stage: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    payload_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    manual_cleanup_required: Mapped[bool] = mapped_column(Boolean, default=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class ProvisioningMetric(Base):
    __tablename__ = "provisioning_metrics"
    __table_args__ = (Index("ix_provisioning_metrics_created_at", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    requesting_admin_id: Mapped[str | None] = mapped_column(String, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer)
    success: Mapped[bool] = mapped_column(Boolean, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_code: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    configuration: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
