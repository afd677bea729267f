"""Baseline — plans, subscriptions, history, leases, invoices, notifications.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── users (accounts) ─────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("name", sa.String(255), server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ── subscription_plans ───────────────────────────────────────
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), unique=True, nullable=False),
        sa.Column("building_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("manager_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("features", sa.Text, server_default="{}"),
        sa.Column("status", sa.String(50), server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    # ── subscriptions ────────────────────────────────────────────
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan_id", sa.Integer, sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("building_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("manager_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("billing_cycle_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_cycle_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(50), server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "uq_subscription_active_account", "subscriptions", ["account_id"], unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index("ix_subscription_status_end", "subscriptions", ["status", "billing_cycle_end"])

    # ── subscription_history ─────────────────────────────────────
    op.create_table(
        "subscription_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("subscription_id", sa.Integer, sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("old_plan_id", sa.Integer, sa.ForeignKey("subscription_plans.id"), nullable=True),
        sa.Column("new_plan_id", sa.Integer, sa.ForeignKey("subscription_plans.id"), nullable=True),
        sa.Column("old_building_count", sa.Integer, nullable=True),
        sa.Column("new_building_count", sa.Integer, nullable=True),
        sa.Column("old_manager_count", sa.Integer, nullable=True),
        sa.Column("new_manager_count", sa.Integer, nullable=True),
        sa.Column("prorated_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_subhistory_sub", "subscription_history", ["subscription_id", "created_at"])

    # ── tenants / units / leases ─────────────────────────────────
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "units",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("unit_number", sa.String(50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "leases",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("unit_id", sa.Integer, sa.ForeignKey("units.id"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(50), server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_lease_status_end", "leases", ["status", "end_date"])

    # ── invoices ─────────────────────────────────────────────────
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("invoice_number", sa.String(64), unique=True, nullable=False),
        sa.Column("tenant_id", sa.Integer, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(50), server_default="draft"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_invoice_status_due", "invoices", ["status", "due_date"])

    # ── notifications ────────────────────────────────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("recipient_id", sa.Integer, nullable=False),
        sa.Column("recipient_type", sa.String(20), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text, server_default=""),
        sa.Column("link", sa.String(500), nullable=True),
        sa.Column("is_read", sa.Boolean, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_notification_recipient", "notifications",
                    ["recipient_type", "recipient_id", "created_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("invoices")
    op.drop_table("leases")
    op.drop_table("units")
    op.drop_table("tenants")
    op.drop_table("subscription_history")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("users")
