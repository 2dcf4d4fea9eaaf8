"""provisioning tables

Revision ID: 0001_provisioning_init
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_provisioning_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenant_categories",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # The slug constraint is the final authority on namespace ownership.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("owner_identity_id", sa.String(), nullable=True),
        sa.Column("owner_login", sa.String(), nullable=True),
        sa.Column("category_id", sa.String(), sa.ForeignKey("tenant_categories.id"), nullable=True),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("slug", name="uq_tenants_slug"),
    )
    op.create_index("ix_tenants_owner_identity_id", "tenants", ["owner_identity_id"], unique=False)

    op.create_table(
        "tenant_features",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("feature_key", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source", sa.String(), nullable=False, server_default="plan"),
        sa.UniqueConstraint("tenant_id", "feature_key", name="uq_tenant_features_key"),
    )
    op.create_index("ix_tenant_features_tenant_id", "tenant_features", ["tenant_id"], unique=False)

    op.create_table(
        "tenant_settings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value_json", postgresql.JSONB(), nullable=True),
        sa.UniqueConstraint("tenant_id", "key", name="uq_tenant_settings_key"),
    )
    op.create_index("ix_tenant_settings_tenant_id", "tenant_settings", ["tenant_id"], unique=False)

    op.create_table(
        "tenant_schedules",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day_of_week", sa.SmallInteger(), nullable=False),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("open_time", sa.String(length=5), nullable=True),
        sa.Column("close_time", sa.String(length=5), nullable=True),
        sa.UniqueConstraint("tenant_id", "day_of_week", name="uq_tenant_schedules_day"),
    )
    op.create_index("ix_tenant_schedules_tenant_id", "tenant_schedules", ["tenant_id"], unique=False)

    op.create_table(
        "provisioning_intents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("tenant_slug", sa.String(length=64), nullable=False),
        sa.Column("owner_identity_id", sa.String(), nullable=True),
        sa.Column("role_granted", sa.String(), nullable=False, server_default="owner"),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="completed"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_provisioning_intents_tenant_id", "provisioning_intents", ["tenant_id"], unique=False)
    op.create_index("ix_provisioning_intents_tenant_slug", "provisioning_intents", ["tenant_slug"], unique=False)

    # One row per idempotency key; stores the caller-visible outcome for replay.
    op.create_table(
        "provisioning_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("requesting_admin_id", sa.String(), nullable=False),
        sa.Column("tenant_name", sa.String(length=200), nullable=False),
        sa.Column("candidate_slug", sa.String(), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=True),
        sa.Column("owner_login", sa.String(), nullable=False),
        sa.Column("owner_display_name", sa.String(), nullable=True),
        sa.Column("configuration", postgresql.JSONB(), nullable=True),
        sa.Column("request_hash", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("owner_identity_id", sa.String(), nullable=True),
        sa.Column("identity_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("response_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_provisioning_requests_idempotency_key"),
    )
    op.create_index("ix_provisioning_requests_status", "provisioning_requests", ["status"], unique=False)
    op.create_index("ix_provisioning_requests_created_at", "provisioning_requests", ["created_at"], unique=False)
    op.create_index(
        "ix_provisioning_requests_requesting_admin_id",
        "provisioning_requests",
        ["requesting_admin_id"],
        unique=False,
    )

    # Append-only; no application path updates or deletes these rows.
    op.create_table(
        "provisioning_audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("requesting_admin_id", sa.String(), nullable=True),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("manual_cleanup_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_provisioning_audit_log_request_id", "provisioning_audit_log", ["request_id"], unique=False)
    op.create_index("ix_provisioning_audit_log_tenant_id", "provisioning_audit_log", ["tenant_id"], unique=False)
    op.create_index("ix_provisioning_audit_log_created_at", "provisioning_audit_log", ["created_at"], unique=False)
    op.create_index(
        "ix_provisioning_audit_log_cleanup",
        "provisioning_audit_log",
        ["manual_cleanup_required"],
        unique=False,
    )

    op.create_table(
        "provisioning_metrics",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("requesting_admin_id", sa.String(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_code", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("configuration", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_provisioning_metrics_request_id", "provisioning_metrics", ["request_id"], unique=False)
    op.create_index("ix_provisioning_metrics_tenant_id", "provisioning_metrics", ["tenant_id"], unique=False)
    op.create_index("ix_provisioning_metrics_success", "provisioning_metrics", ["success"], unique=False)
    op.create_index("ix_provisioning_metrics_created_at", "provisioning_metrics", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_table("provisioning_metrics")
    op.drop_table("provisioning_audit_log")
    op.drop_table("provisioning_requests")
    op.drop_table("provisioning_intents")
    op.drop_table("tenant_schedules")
    op.drop_table("tenant_settings")
    op.drop_table("tenant_features")
    op.drop_table("tenants")
    op.drop_table("tenant_categories")
