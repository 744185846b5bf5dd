"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("subject_id", sa.String(), primary_key=True),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("never_expires", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_lifetime", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("billing_customer_id", sa.String(), nullable=True),
        sa.Column("billing_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_billing_customer_id", "subscriptions", ["billing_customer_id"])

    op.create_table(
        "special_access",
        sa.Column("subject_id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), primary_key=True),
        sa.Column("access_type", sa.String(), nullable=False),
        sa.Column("limits", postgresql.JSONB(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_special_access_org_active", "special_access", ["organization_id", "is_active"])

    op.create_table(
        "subject_profiles",
        sa.Column("subject_id", sa.String(), primary_key=True),
        sa.Column("has_custom_limits", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("custom_limits", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "usage",
        sa.Column("subject_id", sa.String(), primary_key=True),
        # Calendar month in UTC, formatted YYYY-MM.
        sa.Column("period_key", sa.String(length=7), primary_key=True),
        sa.Column("alerts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("groups", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("admins", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("admin_roles", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "organization_admins",
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), primary_key=True),
        sa.Column("subject_id", sa.String(), primary_key=True),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_org_occurred", "audit_events", ["organization_id", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_org_occurred", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("organization_admins")
    op.drop_table("organizations")
    op.drop_table("usage")
    op.drop_table("subject_profiles")
    op.drop_index("ix_special_access_org_active", table_name="special_access")
    op.drop_table("special_access")
    op.drop_index("ix_subscriptions_billing_customer_id", table_name="subscriptions")
    op.drop_table("subscriptions")
