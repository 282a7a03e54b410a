"""governance core

Revision ID: 0001_governance_core
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_governance_core"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    # Aliases are stored lowercased; resolution falls back to them after name matches.
    op.create_table(
        "tenant_aliases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("alias", sa.String(length=200), nullable=False, unique=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
    )
    op.create_index("ix_tenant_aliases_tenant_id", "tenant_aliases", ["tenant_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_login_at"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "uploads",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("media_kind", sa.String(length=16), nullable=False),
        sa.Column("mime_type", sa.String(length=255), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("byte_size", sa.BigInteger(), nullable=False),
        sa.Column("blob_handle", sa.String(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        _ts("reviewed_at"),
    )
    op.create_index("ix_uploads_owner_id", "uploads", ["owner_id"])
    op.create_index("ix_uploads_created_at", "uploads", ["created_at"])
    op.create_index("ix_uploads_tenant_status", "uploads", ["tenant_id", "status"])

    # One row per tenant, media kind and calendar month; the unique key arbitrates lazy inserts.
    op.create_table(
        "quota_rows",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("media_kind", sa.String(length=16), nullable=False),
        _ts("period_start", nullable=False),
        _ts("period_end", nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "media_kind", "period_start", name="uq_quota_rows_period"),
    )
    op.create_index("ix_quota_rows_tenant_id", "quota_rows", ["tenant_id"])

    op.create_table(
        "flags",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("content_type", sa.String(length=32), nullable=False),
        sa.Column("content_id", sa.BigInteger(), nullable=False),
        sa.Column("reporter_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("action_taken", sa.String(length=16), nullable=True),
        sa.Column("review_seconds", sa.Integer(), nullable=True),
        _created_at(),
        _ts("reviewed_at"),
    )
    op.create_index("ix_flags_reporter_id", "flags", ["reporter_id"])
    op.create_index("ix_flags_status_created", "flags", ["status", "created_at"])

    op.create_table(
        "moderated_items",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("content_type", sa.String(length=32), nullable=False),
        sa.Column("content_id", sa.BigInteger(), nullable=True),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("detected_flags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("action_taken", sa.String(length=16), nullable=True),
        _created_at(),
        _ts("reviewed_at"),
    )
    op.create_index("ix_moderated_items_status", "moderated_items", ["status"])

    op.create_table(
        "escalations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("moderated_item_id", sa.BigInteger(), sa.ForeignKey("moderated_items.id"), nullable=False),
        sa.Column("priority", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("escalated_by", sa.String(), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        _created_at(),
        _ts("resolved_at"),
    )
    op.create_index("ix_escalations_moderated_item_id", "escalations", ["moderated_item_id"])
    op.create_index("ix_escalations_status", "escalations", ["status"])

    op.create_table(
        "moderator_notifications",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("related_type", sa.String(length=32), nullable=True),
        sa.Column("related_id", sa.BigInteger(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("read_at"),
        _created_at(),
    )
    op.create_index("ix_moderator_notifications_recipient_id", "moderator_notifications", ["recipient_id"])

    op.create_table(
        "bans",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("target_type", sa.String(length=8), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("moderator_id", sa.String(), nullable=False),
        _ts("expires_at"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        _ts("lifted_at"),
        sa.Column("lifted_by", sa.String(), nullable=True),
    )
    op.create_index(
        "uq_bans_target_active",
        "bans",
        ["target_type", "target_id"],
        unique=True,
        postgresql_where=sa.text("active"),
        sqlite_where=sa.text("active"),
    )

    op.create_table(
        "user_warnings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("moderator_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("flag_id", sa.BigInteger(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_user_warnings_user_id", "user_warnings", ["user_id"])

    # Append-only; no update path exists in the application.
    op.create_table(
        "audit_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=32), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("before_json", postgresql.JSONB(), nullable=True),
        sa.Column("after_json", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_entries_action_type", "audit_entries", ["action_type"])
    op.create_index("ix_audit_entries_created_at", "audit_entries", ["created_at"])
    op.create_index("ix_audit_entries_actor_created", "audit_entries", ["actor_id", "created_at"])

    op.create_table(
        "analytics_snapshots",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(length=16), nullable=False),
        _ts("as_of", nullable=False),
        sa.Column("metrics", postgresql.JSONB(), nullable=False),
        sa.Column("tenant_comparison", postgresql.JSONB(), nullable=False),
        sa.Column("trends", postgresql.JSONB(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_analytics_snapshots_kind_as_of", "analytics_snapshots", ["kind", "as_of"])

    op.create_table(
        "anomalies",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("anomaly_type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=8), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_anomalies_anomaly_type", "anomalies", ["anomaly_type"])
    op.create_index("ix_anomalies_created_at", "anomalies", ["created_at"])

    # Monotonic ids give per-subject delivery order.
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        _ts("delivered_at"),
    )
    op.create_index("ix_outbox_events_subject_id", "outbox_events", ["subject_id"])
    op.create_index("ix_outbox_events_status_next", "outbox_events", ["status", "next_attempt_at"])

    op.create_table(
        "instructor_applications",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("application_text", sa.Text(), nullable=False),
        sa.Column("qualifications", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        _created_at(),
        _ts("reviewed_at"),
    )
    op.create_index("ix_instructor_applications_user_id", "instructor_applications", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_instructor_applications_user_id", table_name="instructor_applications")
    op.drop_table("instructor_applications")
    op.drop_index("ix_outbox_events_status_next", table_name="outbox_events")
    op.drop_index("ix_outbox_events_subject_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_anomalies_created_at", table_name="anomalies")
    op.drop_index("ix_anomalies_anomaly_type", table_name="anomalies")
    op.drop_table("anomalies")
    op.drop_index("ix_analytics_snapshots_kind_as_of", table_name="analytics_snapshots")
    op.drop_table("analytics_snapshots")
    op.drop_index("ix_audit_entries_actor_created", table_name="audit_entries")
    op.drop_index("ix_audit_entries_created_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_action_type", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_index("ix_user_warnings_user_id", table_name="user_warnings")
    op.drop_table("user_warnings")
    op.drop_index("uq_bans_target_active", table_name="bans")
    op.drop_table("bans")
    op.drop_index("ix_moderator_notifications_recipient_id", table_name="moderator_notifications")
    op.drop_table("moderator_notifications")
    op.drop_index("ix_escalations_status", table_name="escalations")
    op.drop_index("ix_escalations_moderated_item_id", table_name="escalations")
    op.drop_table("escalations")
    op.drop_index("ix_moderated_items_status", table_name="moderated_items")
    op.drop_table("moderated_items")
    op.drop_index("ix_flags_status_created", table_name="flags")
    op.drop_index("ix_flags_reporter_id", table_name="flags")
    op.drop_table("flags")
    op.drop_index("ix_quota_rows_tenant_id", table_name="quota_rows")
    op.drop_table("quota_rows")
    op.drop_index("ix_uploads_tenant_status", table_name="uploads")
    op.drop_index("ix_uploads_created_at", table_name="uploads")
    op.drop_index("ix_uploads_owner_id", table_name="uploads")
    op.drop_table("uploads")
    op.drop_index("ix_users_created_at", table_name="users")
    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_tenant_aliases_tenant_id", table_name="tenant_aliases")
    op.drop_table("tenant_aliases")
    op.drop_table("tenants")
