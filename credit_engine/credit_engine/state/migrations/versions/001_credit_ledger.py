"""Initial schema for the credit ledger store.

Creates the credit holder tables (users, workspaces), the ownership chain
(projects, deployments), usage peaks, the append-only transaction ledger,
auto top-up configuration and usage sync reports.

Revision ID: 001
Revises: None
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_CREDITS = sa.Numeric(18, 6)
_FRACTIONAL = sa.Numeric(28, 12)
_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _balance_columns() -> list[sa.Column]:
    return [
        sa.Column("credit_balance", _CREDITS, nullable=False, server_default="0"),
        sa.Column("carry_over_credits", _CREDITS, nullable=False, server_default="0"),
        _timestamp("carry_over_expires_at", nullable=True),
        sa.Column("base_plan_credits", _CREDITS, nullable=False, server_default="0"),
        sa.Column("lifetime_credits_used", _CREDITS, nullable=False, server_default="0"),
        sa.Column("monthly_credits_used", _CREDITS, nullable=False, server_default="0"),
        _timestamp("last_credit_reset", nullable=True),
        sa.Column("membership_tier", sa.String(32), nullable=False, server_default="FREE"),
        _timestamp("membership_expires_at", nullable=True),
        sa.Column("stripe_customer_id", sa.String(128), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(128), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    ]


def upgrade() -> None:
    # ------------------------------------------------------------------
    # credit holders
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=True),
        *_balance_columns(),
        sa.CheckConstraint("credit_balance >= 0", name="ck_users_balance_non_negative"),
        sa.CheckConstraint("carry_over_credits >= 0", name="ck_users_carry_over_non_negative"),
        sa.CheckConstraint("base_plan_credits >= 0", name="ck_users_base_plan_non_negative"),
    )

    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("owner_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_personal", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_balance_columns(),
        sa.CheckConstraint("credit_balance >= 0", name="ck_workspaces_balance_non_negative"),
        sa.CheckConstraint("carry_over_credits >= 0", name="ck_workspaces_carry_over_non_negative"),
        sa.CheckConstraint("base_plan_credits >= 0", name="ck_workspaces_base_plan_non_negative"),
    )
    op.create_index("ix_workspaces_owner", "workspaces", ["owner_id"])

    # ------------------------------------------------------------------
    # ownership chain
    # ------------------------------------------------------------------
    op.create_table(
        "projects",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("workspace_id", sa.String(64), sa.ForeignKey("workspaces.id"), nullable=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_projects_workspace", "projects", ["workspace_id"])

    op.create_table(
        "deployments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("deployment_name", sa.String(256), nullable=False, unique=True),
        sa.Column("project_id", sa.String(64), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("total_function_calls", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_action_compute_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_database_bandwidth_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_file_bandwidth_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_vector_bandwidth_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("document_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("index_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("file_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("vector_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("backup_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("credits_used_this_period", _FRACTIONAL, nullable=False, server_default="0"),
        _timestamp("current_period_start", nullable=True),
        _timestamp("current_period_end", nullable=True),
        _timestamp("last_usage_at", nullable=True),
        _timestamp("last_storage_update_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_deployments_project", "deployments", ["project_id"])
    op.create_index("ix_deployments_credits_used", "deployments", ["credits_used_this_period"])

    op.create_table(
        "usage_periods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(64), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("peak_database_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("peak_file_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("peak_vector_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("workspace_id", "period_start", "period_end", name="uq_usage_periods_window"),
    )

    # ------------------------------------------------------------------
    # ledger
    # ------------------------------------------------------------------
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("holder_kind", sa.String(16), nullable=False),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("actor_user_id", sa.String(64), nullable=True),
        sa.Column("amount", _CREDITS, nullable=False),
        sa.Column("balance_after", _CREDITS, nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("metadata_version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_credit_transactions_holder",
        "credit_transactions",
        ["holder_kind", "holder_id", "id"],
    )
    op.create_index("ix_credit_transactions_type", "credit_transactions", ["transaction_type"])

    # ------------------------------------------------------------------
    # auto top-up
    # ------------------------------------------------------------------
    op.create_table(
        "auto_replenish_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("holder_kind", sa.String(16), nullable=False),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("threshold_credits", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("top_up_credits", sa.Integer(), nullable=False, server_default="400"),
        sa.Column("payment_method_ref", sa.String(128), nullable=True),
        sa.Column("max_monthly_top_ups", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("top_ups_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_top_up_error", sa.Text(), nullable=True),
        _timestamp("last_top_up_at", nullable=True),
        sa.Column("last_top_up_amount", sa.Integer(), nullable=True),
        _timestamp("monthly_reset_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("holder_kind", "holder_id", name="uq_auto_replenish_holder"),
    )
    op.create_index("ix_auto_replenish_enabled", "auto_replenish_configs", ["enabled"])

    # ------------------------------------------------------------------
    # usage sync
    # ------------------------------------------------------------------
    op.create_table(
        "usage_sync_reports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("period_key", sa.String(16), nullable=False),
        sa.Column("stripe_customer_id", sa.String(128), nullable=False),
        sa.Column("reported_credits", sa.BigInteger(), nullable=False),
        sa.Column("fractional_credits", _FRACTIONAL, nullable=False),
        sa.Column("deployment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("identifier", sa.String(256), nullable=False),
        _timestamp("reported_at"),
        sa.UniqueConstraint("holder_id", "period_key", name="uq_usage_sync_reports_period"),
    )


def downgrade() -> None:
    op.drop_table("usage_sync_reports")
    op.drop_index("ix_auto_replenish_enabled", table_name="auto_replenish_configs")
    op.drop_table("auto_replenish_configs")
    op.drop_index("ix_credit_transactions_type", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_holder", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("usage_periods")
    op.drop_index("ix_deployments_credits_used", table_name="deployments")
    op.drop_index("ix_deployments_project", table_name="deployments")
    op.drop_table("deployments")
    op.drop_index("ix_projects_workspace", table_name="projects")
    op.drop_table("projects")
    op.drop_index("ix_workspaces_owner", table_name="workspaces")
    op.drop_table("workspaces")
    op.drop_table("users")
