"""SQLAlchemy 2.0 ORM table definitions for the credit ledger store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

Credit amounts are stored as ``Numeric`` so that balances and per-event
usage costs are never rounded by a binary float.  Users and workspaces share
one balance column set through :class:`CreditBalanceMixin`; the ledger never
needs to know which table a holder lives in.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_Credits = Numeric(18, 6)

# Per-event usage costs are tiny fractions of a credit and must accumulate
# without per-event rounding.
_FractionalCredits = Numeric(28, 12)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that also stays aware on SQLite.

    SQLite has no timezone support and hands back naive values; those are
    re-tagged as UTC on the way out so comparisons with aware timestamps work
    on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all credit ledger tables."""


# ---------------------------------------------------------------------------
# Credit holders
# ---------------------------------------------------------------------------


class CreditBalanceMixin:
    """Balance columns shared by every credit holder table.

    ``bonus`` is not a column: it is whatever part of ``credit_balance`` is
    not covered by the carry-over and base-plan buckets.
    """

    credit_balance: Mapped[Decimal] = mapped_column(_Credits, nullable=False, default=Decimal("0"))
    carry_over_credits: Mapped[Decimal] = mapped_column(_Credits, nullable=False, default=Decimal("0"))
    carry_over_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    base_plan_credits: Mapped[Decimal] = mapped_column(_Credits, nullable=False, default=Decimal("0"))
    lifetime_credits_used: Mapped[Decimal] = mapped_column(_Credits, nullable=False, default=Decimal("0"))
    monthly_credits_used: Mapped[Decimal] = mapped_column(_Credits, nullable=False, default=Decimal("0"))
    last_credit_reset: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    membership_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="FREE")
    membership_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Bumped by every balance write; compare-and-swap guard for concurrent writers.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


class UserTable(CreditBalanceMixin, Base):
    """Individual users, the legacy credit holder."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint("carry_over_credits >= 0", name="ck_users_carry_over_non_negative"),
        CheckConstraint("base_plan_credits >= 0", name="ck_users_base_plan_non_negative"),
    )


class WorkspaceTable(CreditBalanceMixin, Base):
    """Workspaces (teams); the current credit holder for shared billing."""

    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    is_personal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_workspaces_balance_non_negative"),
        CheckConstraint("carry_over_credits >= 0", name="ck_workspaces_carry_over_non_negative"),
        CheckConstraint("base_plan_credits >= 0", name="ck_workspaces_base_plan_non_negative"),
        Index("ix_workspaces_owner", "owner_id"),
    )


# ---------------------------------------------------------------------------
# Ownership chain: deployment -> project -> workspace -> owner
# ---------------------------------------------------------------------------


class ProjectTable(Base):
    """Projects owned by a workspace (or, for legacy rows, by a user)."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    workspace_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("workspaces.id"), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_projects_workspace", "workspace_id"),)


class DeploymentTable(Base):
    """A hosted backend deployment plus its usage accumulator state."""

    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    deployment_name: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey("projects.id"), nullable=False)

    # Cumulative counters for the current period.
    total_function_calls: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_action_compute_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_database_bandwidth_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_file_bandwidth_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_vector_bandwidth_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Storage snapshots: last reported values, overwritten on every report.
    document_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    index_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    file_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    vector_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    backup_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    credits_used_this_period: Mapped[Decimal] = mapped_column(
        _FractionalCredits, nullable=False, default=Decimal("0")
    )
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_usage_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_storage_update_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_deployments_project", "project_id"),
        Index("ix_deployments_credits_used", "credits_used_this_period"),
    )


class UsagePeriodTable(Base):
    """Peak storage and closed-out usage per workspace and billing period."""

    __tablename__ = "usage_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), ForeignKey("workspaces.id"), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    peak_database_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    peak_file_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    peak_vector_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Credits moved here from deployment counters when the period closed.
    closed_usage_credits: Mapped[Decimal] = mapped_column(_FractionalCredits, nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("workspace_id", "period_start", "period_end", name="uq_usage_periods_window"),
        Index("ix_usage_periods_status", "status", "period_start"),
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class CreditTransactionTable(Base):
    """Append-only audit row written with every balance mutation."""

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(_Credits, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(_Credits, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    metadata_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_credit_transactions_holder", "holder_kind", "holder_id", "id"),
        Index("ix_credit_transactions_type", "transaction_type"),
    )


# ---------------------------------------------------------------------------
# Auto-replenishment
# ---------------------------------------------------------------------------


class AutoReplenishConfigTable(Base):
    """Auto top-up settings and bookkeeping for one credit holder."""

    __tablename__ = "auto_replenish_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    threshold_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    top_up_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=400)
    payment_method_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    max_monthly_top_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    top_ups_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_top_up_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_top_up_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_top_up_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Set when a charge succeeded but the grant did not; blocks further charges.
    pending_review_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Number of review holds lifted; part of the charge idempotency key.
    reviews_cleared: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("holder_kind", "holder_id", name="uq_auto_replenish_holder"),
        Index("ix_auto_replenish_enabled", "enabled"),
    )


# ---------------------------------------------------------------------------
# Usage sync
# ---------------------------------------------------------------------------


class UsageSyncReportTable(Base):
    """Last total reported to the metering sink per billing owner and period."""

    __tablename__ = "usage_sync_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reported_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fractional_credits: Mapped[Decimal] = mapped_column(_FractionalCredits, nullable=False)
    deployment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    identifier: Mapped[str] = mapped_column(String(256), nullable=False)
    reported_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("holder_id", "period_key", name="uq_usage_sync_reports_period"),)
