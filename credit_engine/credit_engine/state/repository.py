"""Repository classes providing access to the credit ledger store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes call ``session.flush()``
so generated keys are populated; the caller is responsible for committing
(or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.ledger.allocation import month_window
from credit_engine.ledger.models import (
    METADATA_SCHEMA_VERSION,
    BalanceSnapshot,
    HolderKind,
    HolderRef,
    MembershipTier,
    TransactionRecord,
    TransactionType,
)
from credit_engine.metering.events import BillableDeployment, BillingOwner, PeriodUsage, UsagePeriodStatus
from credit_engine.state.tables import (
    AutoReplenishConfigTable,
    CreditTransactionTable,
    DeploymentTable,
    ProjectTable,
    UsagePeriodTable,
    UsageSyncReportTable,
    UserTable,
    WorkspaceTable,
)

logger = logging.getLogger(__name__)

_PAID_TIERS = (MembershipTier.PRO.value, MembershipTier.ENTERPRISE.value)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    """Return the dialect-specific ``INSERT`` construct (supports ``ON CONFLICT``)."""
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)
    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


def _greatest(session: AsyncSession, left: Any, right: Any) -> Any:
    """Two-argument max: ``GREATEST`` on PostgreSQL, scalar ``max`` on SQLite."""
    if "postgresql" in _dialect_name(session):
        return func.greatest(left, right)
    return func.max(left, right)


def _holder_table(kind: HolderKind) -> type[UserTable] | type[WorkspaceTable]:
    """The only place that knows which table stores which holder kind."""
    if kind is HolderKind.WORKSPACE:
        return WorkspaceTable
    return UserTable


def has_active_subscription(tier: str | None, subscription_id: str | None) -> bool:
    return tier in _PAID_TIERS and bool(subscription_id)


# ---------------------------------------------------------------------------
# CreditHolderRepository
# ---------------------------------------------------------------------------


class CreditHolderRepository:
    """Balance reads and version-checked balance writes for users and workspaces."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_snapshot(self, holder: HolderRef) -> BalanceSnapshot | None:
        """Read the current balance columns, or ``None`` if the holder does not exist."""
        table = _holder_table(holder.kind)
        result = await self._session.execute(select(table).where(table.id == holder.id))
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return BalanceSnapshot(
            holder=holder,
            balance=Decimal(row.credit_balance),
            carry_over=Decimal(row.carry_over_credits),
            carry_over_expires_at=row.carry_over_expires_at,
            base_plan=Decimal(row.base_plan_credits),
            lifetime_used=Decimal(row.lifetime_credits_used),
            monthly_used=Decimal(row.monthly_credits_used),
            last_credit_reset=row.last_credit_reset,
            membership_tier=MembershipTier(row.membership_tier),
            membership_expires_at=row.membership_expires_at,
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            version=row.version,
        )

    async def compare_and_swap(self, expected: BalanceSnapshot, new: BalanceSnapshot) -> bool:
        """Write *new* only if the stored row is still at ``expected.version``.

        Returns
        -------
        bool
            ``False`` when another writer changed the row first; nothing
            was written in that case.
        """
        table = _holder_table(expected.holder.kind)
        stmt = (
            update(table)
            .where(table.id == expected.holder.id, table.version == expected.version)
            .values(
                credit_balance=new.balance,
                carry_over_credits=new.carry_over,
                carry_over_expires_at=new.carry_over_expires_at,
                base_plan_credits=new.base_plan,
                lifetime_credits_used=new.lifetime_used,
                monthly_credits_used=new.monthly_used,
                last_credit_reset=new.last_credit_reset,
                version=table.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def create_user(self, user_id: str, email: str, name: str | None = None, **columns: Any) -> UserTable:
        row = UserTable(id=user_id, email=email, name=name, **columns)
        self._session.add(row)
        await self._session.flush()
        return row

    async def create_workspace(
        self,
        workspace_id: str,
        name: str,
        owner_id: str,
        *,
        is_personal: bool = False,
        **columns: Any,
    ) -> WorkspaceTable:
        row = WorkspaceTable(id=workspace_id, name=name, owner_id=owner_id, is_personal=is_personal, **columns)
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# CreditTransactionRepository
# ---------------------------------------------------------------------------


class CreditTransactionRepository:
    """Append-only access to ``credit_transactions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        holder: HolderRef,
        amount: Decimal,
        balance_after: Decimal,
        transaction_type: TransactionType,
        description: str,
        metadata: dict[str, Any] | None = None,
        actor_user_id: str | None = None,
    ) -> CreditTransactionTable:
        row = CreditTransactionTable(
            holder_kind=holder.kind.value,
            holder_id=holder.id,
            actor_user_id=actor_user_id,
            amount=amount,
            balance_after=balance_after,
            transaction_type=transaction_type.value,
            description=description,
            metadata_json=metadata or {},
            metadata_version=METADATA_SCHEMA_VERSION,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_holder(self, holder: HolderRef, limit: int = 50) -> list[TransactionRecord]:
        """Most recent rows first."""
        stmt = (
            select(CreditTransactionTable)
            .where(
                CreditTransactionTable.holder_kind == holder.kind.value,
                CreditTransactionTable.holder_id == holder.id,
            )
            .order_by(CreditTransactionTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [
            TransactionRecord(
                id=row.id,
                holder=holder,
                amount=Decimal(row.amount),
                balance_after=Decimal(row.balance_after),
                transaction_type=TransactionType(row.transaction_type),
                description=row.description,
                metadata=row.metadata_json or {},
                metadata_version=row.metadata_version,
                actor_user_id=row.actor_user_id,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# OwnershipRepository
# ---------------------------------------------------------------------------


def _ownership_select() -> Any:
    return (
        select(
            DeploymentTable.id,
            DeploymentTable.deployment_name,
            DeploymentTable.credits_used_this_period,
            WorkspaceTable.id,
            UserTable.id,
            UserTable.stripe_customer_id,
            UserTable.membership_tier,
            UserTable.stripe_subscription_id,
        )
        .join(ProjectTable, ProjectTable.id == DeploymentTable.project_id)
        .join(WorkspaceTable, WorkspaceTable.id == ProjectTable.workspace_id)
        .join(UserTable, UserTable.id == WorkspaceTable.owner_id)
    )


def _period_select() -> Any:
    return (
        select(
            UsagePeriodTable,
            UserTable.id,
            UserTable.stripe_customer_id,
            UserTable.membership_tier,
            UserTable.stripe_subscription_id,
        )
        .join(WorkspaceTable, WorkspaceTable.id == UsagePeriodTable.workspace_id)
        .join(UserTable, UserTable.id == WorkspaceTable.owner_id)
    )


class OwnershipRepository:
    """Resolves deployment -> project -> workspace -> owner."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def resolve(self, deployment_name: str) -> BillingOwner | None:
        """Return the billing owner of *deployment_name*, or ``None`` if unmapped."""
        result = await self._session.execute(
            _ownership_select().where(DeploymentTable.deployment_name == deployment_name)
        )
        row = result.first()
        if row is None:
            return None
        dep_id, dep_name, _credits, workspace_id, owner_id, customer_id, tier, sub_id = row
        return BillingOwner(
            deployment_id=dep_id,
            deployment_name=dep_name,
            workspace_id=workspace_id,
            owner_id=owner_id,
            stripe_customer_id=customer_id,
            has_active_subscription=has_active_subscription(tier, sub_id),
        )

    async def create_deployment(
        self,
        deployment_id: str,
        deployment_name: str,
        workspace_id: str,
        project_id: str | None = None,
    ) -> DeploymentTable:
        """Register a deployment under *workspace_id*, creating its project if needed."""
        project_id = project_id or f"proj-{workspace_id}"
        if await self._session.get(ProjectTable, project_id) is None:
            self._session.add(ProjectTable(id=project_id, name=f"Project {workspace_id}", workspace_id=workspace_id))
            await self._session.flush()
        row = DeploymentTable(id=deployment_id, deployment_name=deployment_name, project_id=project_id)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_workspace_owner(self, workspace_id: str) -> str | None:
        result = await self._session.execute(
            select(WorkspaceTable.owner_id).where(WorkspaceTable.id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def list_billable(
        self,
        period_start: datetime,
        owner_id: str | None = None,
    ) -> list[BillableDeployment]:
        """Deployments with usage in the period starting at *period_start*, joined to their owner."""
        stmt = _ownership_select().where(
            DeploymentTable.credits_used_this_period > 0,
            DeploymentTable.current_period_start == period_start,
        )
        if owner_id is not None:
            stmt = stmt.where(UserTable.id == owner_id)
        result = await self._session.execute(stmt.order_by(DeploymentTable.id))
        billable: list[BillableDeployment] = []
        for dep_id, dep_name, credits, ws_id, owner_id, customer_id, tier, sub_id in result.all():
            billable.append(
                BillableDeployment(
                    deployment_id=dep_id,
                    deployment_name=dep_name,
                    workspace_id=ws_id,
                    owner_id=owner_id,
                    stripe_customer_id=customer_id,
                    has_active_subscription=has_active_subscription(tier, sub_id),
                    credits_used_this_period=Decimal(credits),
                )
            )
        return billable

    async def list_period_storage(
        self,
        period_start: datetime,
        owner_id: str | None = None,
    ) -> list[PeriodUsage]:
        """``usage_periods`` rows of the open period starting at *period_start*."""
        stmt = _period_select().where(UsagePeriodTable.period_start == period_start)
        if owner_id is not None:
            stmt = stmt.where(UserTable.id == owner_id)
        return await self._period_rows(stmt)

    async def list_closed_periods(
        self,
        before: datetime,
        owner_id: str | None = None,
    ) -> list[PeriodUsage]:
        """Rows of periods that started before *before* and still need a final report."""
        stmt = _period_select().where(
            UsagePeriodTable.period_start < before,
            UsagePeriodTable.status.in_([UsagePeriodStatus.PENDING.value, UsagePeriodStatus.CALCULATED.value]),
        )
        if owner_id is not None:
            stmt = stmt.where(UserTable.id == owner_id)
        return await self._period_rows(stmt)

    async def _period_rows(self, stmt: Any) -> list[PeriodUsage]:
        result = await self._session.execute(stmt.order_by(UsagePeriodTable.period_start, UsagePeriodTable.id))
        rows: list[PeriodUsage] = []
        for period, owner_id, customer_id, tier, sub_id in result.all():
            rows.append(
                PeriodUsage(
                    period_id=period.id,
                    workspace_id=period.workspace_id,
                    owner_id=owner_id,
                    stripe_customer_id=customer_id,
                    has_active_subscription=has_active_subscription(tier, sub_id),
                    period_start=period.period_start,
                    period_end=period.period_end,
                    closed_usage_credits=Decimal(period.closed_usage_credits),
                    peak_database_storage_bytes=period.peak_database_storage_bytes,
                    peak_file_storage_bytes=period.peak_file_storage_bytes,
                    peak_vector_storage_bytes=period.peak_vector_storage_bytes,
                    status=UsagePeriodStatus(period.status),
                )
            )
        return rows


# ---------------------------------------------------------------------------
# UsageRepository
# ---------------------------------------------------------------------------


class UsageRepository:
    """Per-deployment usage counters and per-period storage peaks."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def increment_usage(
        self,
        deployment_id: str,
        *,
        function_calls: int,
        action_compute_ms: int,
        database_bandwidth_bytes: int,
        file_bandwidth_bytes: int,
        vector_bandwidth_bytes: int,
        credits: Decimal,
        period_start: datetime,
        period_end: datetime,
        occurred_at: datetime,
    ) -> None:
        """Add one event's counters in a single ``col = col + delta`` statement.

        When the stored period window is not *period_start* (closed out by
        :meth:`close_stale_period`, or never set) the counters restart from
        this event's values in the same statement.
        """
        same_period = DeploymentTable.current_period_start == period_start

        def _accumulate(column: Any, delta: Any) -> Any:
            return case((same_period, column + delta), else_=delta)

        stmt = (
            update(DeploymentTable)
            .where(DeploymentTable.id == deployment_id)
            .values(
                total_function_calls=_accumulate(DeploymentTable.total_function_calls, function_calls),
                total_action_compute_ms=_accumulate(DeploymentTable.total_action_compute_ms, action_compute_ms),
                total_database_bandwidth_bytes=_accumulate(
                    DeploymentTable.total_database_bandwidth_bytes, database_bandwidth_bytes
                ),
                total_file_bandwidth_bytes=_accumulate(
                    DeploymentTable.total_file_bandwidth_bytes, file_bandwidth_bytes
                ),
                total_vector_bandwidth_bytes=_accumulate(
                    DeploymentTable.total_vector_bandwidth_bytes, vector_bandwidth_bytes
                ),
                credits_used_this_period=_accumulate(DeploymentTable.credits_used_this_period, credits),
                current_period_start=period_start,
                current_period_end=period_end,
                last_usage_at=occurred_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def close_stale_period(self, deployment_id: str, workspace_id: str, current_start: datetime) -> Decimal:
        """Move counters left from a period before *current_start* into that period's row.

        The deployment's counters are zeroed and its period window cleared
        with a conditional ``UPDATE``; only the writer that wins it adds the
        credits to ``usage_periods.closed_usage_credits``, so concurrent
        closers cannot count the same usage twice.

        Returns
        -------
        Decimal
            Credits moved, or zero when there was nothing to close.
        """
        result = await self._session.execute(
            select(DeploymentTable.current_period_start, DeploymentTable.credits_used_this_period).where(
                DeploymentTable.id == deployment_id
            )
        )
        row = result.first()
        if row is None:
            return Decimal("0")
        stale_start, credits = row
        if stale_start is None or stale_start >= current_start:
            return Decimal("0")

        stmt = (
            update(DeploymentTable)
            .where(DeploymentTable.id == deployment_id, DeploymentTable.current_period_start == stale_start)
            .values(
                total_function_calls=0,
                total_action_compute_ms=0,
                total_database_bandwidth_bytes=0,
                total_file_bandwidth_bytes=0,
                total_vector_bandwidth_bytes=0,
                credits_used_this_period=Decimal("0"),
                current_period_start=None,
                current_period_end=None,
            )
            .execution_options(synchronize_session=False)
        )
        closed = await self._session.execute(stmt)
        if closed.rowcount != 1:
            return Decimal("0")

        credits = Decimal(credits)
        period_start, period_end = month_window(stale_start)
        await self.add_closed_usage(workspace_id, period_start, period_end, credits)
        logger.info(
            "Closed usage period %s for deployment %s: %s credits",
            period_start.date(),
            deployment_id,
            credits,
        )
        return credits

    async def add_closed_usage(
        self,
        workspace_id: str,
        period_start: datetime,
        period_end: datetime,
        credits: Decimal,
    ) -> None:
        """Add *credits* to the period row and mark it as needing a (new) final report."""
        now = datetime.now(UTC)
        stmt = _dialect_insert(self._session, UsagePeriodTable).values(
            workspace_id=workspace_id,
            period_start=period_start,
            period_end=period_end,
            peak_database_storage_bytes=0,
            peak_file_storage_bytes=0,
            peak_vector_storage_bytes=0,
            closed_usage_credits=credits,
            status=UsagePeriodStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["workspace_id", "period_start", "period_end"],
            set_={
                "closed_usage_credits": UsagePeriodTable.closed_usage_credits + stmt.excluded.closed_usage_credits,
                "status": UsagePeriodStatus.PENDING.value,
                "updated_at": now,
            },
        )
        await self._session.execute(stmt)

    async def list_stale_deployments(self, before: datetime) -> list[tuple[str, str]]:
        """``(deployment_id, workspace_id)`` of deployments still holding usage from before *before*."""
        stmt = (
            select(DeploymentTable.id, ProjectTable.workspace_id)
            .join(ProjectTable, ProjectTable.id == DeploymentTable.project_id)
            .where(
                ProjectTable.workspace_id.is_not(None),
                DeploymentTable.current_period_start < before,
                DeploymentTable.credits_used_this_period > 0,
            )
            .order_by(DeploymentTable.id)
        )
        result = await self._session.execute(stmt)
        return [(dep_id, ws_id) for dep_id, ws_id in result.all()]

    async def set_period_status(
        self,
        period_ids: list[int],
        status: UsagePeriodStatus,
        *,
        from_statuses: tuple[UsagePeriodStatus, ...],
    ) -> int:
        """Move the given rows to *status*, but only rows currently in *from_statuses*.

        A row reopened by :meth:`add_closed_usage` in the meantime is back
        to ``PENDING`` and is left alone by a ``CALCULATED -> REPORTED`` move.
        """
        if not period_ids:
            return 0
        stmt = (
            update(UsagePeriodTable)
            .where(
                UsagePeriodTable.id.in_(period_ids),
                UsagePeriodTable.status.in_([s.value for s in from_statuses]),
            )
            .values(status=status.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def set_storage_snapshot(
        self,
        deployment_id: str,
        *,
        document_bytes: int,
        index_bytes: int,
        file_bytes: int,
        vector_bytes: int,
        backup_bytes: int,
        occurred_at: datetime,
    ) -> None:
        """Overwrite the five storage fields with the latest measurement."""
        stmt = (
            update(DeploymentTable)
            .where(DeploymentTable.id == deployment_id)
            .values(
                document_storage_bytes=document_bytes,
                index_storage_bytes=index_bytes,
                file_storage_bytes=file_bytes,
                vector_storage_bytes=vector_bytes,
                backup_storage_bytes=backup_bytes,
                last_storage_update_at=occurred_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def raise_storage_peaks(
        self,
        workspace_id: str,
        period_start: datetime,
        period_end: datetime,
        *,
        database_bytes: int,
        file_bytes: int,
        vector_bytes: int,
    ) -> None:
        """Insert the period row or raise its peaks; peaks never decrease."""
        now = datetime.now(UTC)
        stmt = _dialect_insert(self._session, UsagePeriodTable).values(
            workspace_id=workspace_id,
            period_start=period_start,
            period_end=period_end,
            peak_database_storage_bytes=database_bytes,
            peak_file_storage_bytes=file_bytes,
            peak_vector_storage_bytes=vector_bytes,
            status=UsagePeriodStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["workspace_id", "period_start", "period_end"],
            set_={
                "peak_database_storage_bytes": _greatest(
                    self._session,
                    UsagePeriodTable.peak_database_storage_bytes,
                    stmt.excluded.peak_database_storage_bytes,
                ),
                "peak_file_storage_bytes": _greatest(
                    self._session,
                    UsagePeriodTable.peak_file_storage_bytes,
                    stmt.excluded.peak_file_storage_bytes,
                ),
                "peak_vector_storage_bytes": _greatest(
                    self._session,
                    UsagePeriodTable.peak_vector_storage_bytes,
                    stmt.excluded.peak_vector_storage_bytes,
                ),
                "updated_at": now,
            },
        )
        await self._session.execute(stmt)

    async def get_period(
        self,
        workspace_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> UsagePeriodTable | None:
        result = await self._session.execute(
            select(UsagePeriodTable).where(
                UsagePeriodTable.workspace_id == workspace_id,
                UsagePeriodTable.period_start == period_start,
                UsagePeriodTable.period_end == period_end,
            )
        )
        return result.scalar_one_or_none()

    async def get_deployment(self, deployment_name: str) -> DeploymentTable | None:
        result = await self._session.execute(
            select(DeploymentTable).where(DeploymentTable.deployment_name == deployment_name)
        )
        return result.scalar_one_or_none()

    async def list_workspace_deployments(self, workspace_id: str) -> list[DeploymentTable]:
        stmt = (
            select(DeploymentTable)
            .join(ProjectTable, ProjectTable.id == DeploymentTable.project_id)
            .where(ProjectTable.workspace_id == workspace_id)
            .order_by(DeploymentTable.deployment_name)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UsageSyncReportRepository
# ---------------------------------------------------------------------------


class UsageSyncReportRepository:
    """Last value reported to the metering sink, per owner and period."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        holder_id: str,
        period_key: str,
        *,
        stripe_customer_id: str,
        reported_credits: int,
        fractional_credits: Decimal,
        deployment_count: int,
        identifier: str,
    ) -> None:
        now = datetime.now(UTC)
        stmt = _dialect_insert(self._session, UsageSyncReportTable).values(
            holder_id=holder_id,
            period_key=period_key,
            stripe_customer_id=stripe_customer_id,
            reported_credits=reported_credits,
            fractional_credits=fractional_credits,
            deployment_count=deployment_count,
            identifier=identifier,
            reported_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["holder_id", "period_key"],
            set_={
                "stripe_customer_id": stmt.excluded.stripe_customer_id,
                "reported_credits": stmt.excluded.reported_credits,
                "fractional_credits": stmt.excluded.fractional_credits,
                "deployment_count": stmt.excluded.deployment_count,
                "identifier": stmt.excluded.identifier,
                "reported_at": stmt.excluded.reported_at,
            },
        )
        await self._session.execute(stmt)

    async def get(self, holder_id: str, period_key: str) -> UsageSyncReportTable | None:
        result = await self._session.execute(
            select(UsageSyncReportTable).where(
                UsageSyncReportTable.holder_id == holder_id,
                UsageSyncReportTable.period_key == period_key,
            )
        )
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# AutoReplenishRepository
# ---------------------------------------------------------------------------


class AutoReplenishRepository:
    """Auto top-up configuration and its bookkeeping counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, holder: HolderRef) -> AutoReplenishConfigTable | None:
        result = await self._session.execute(
            select(AutoReplenishConfigTable).where(
                AutoReplenishConfigTable.holder_kind == holder.kind.value,
                AutoReplenishConfigTable.holder_id == holder.id,
            )
        )
        return result.scalar_one_or_none()

    async def save(self, holder: HolderRef, **fields: Any) -> AutoReplenishConfigTable:
        """Create the config row or update the given fields on it."""
        row = await self.get(holder)
        if row is None:
            row = AutoReplenishConfigTable(holder_kind=holder.kind.value, holder_id=holder.id, **fields)
            self._session.add(row)
        else:
            for name, value in fields.items():
                setattr(row, name, value)
        await self._session.flush()
        return row

    async def list_eligible(self, max_consecutive_failures: int) -> list[AutoReplenishConfigTable]:
        """Enabled configs with a payment method, under both caps and not held for review."""
        stmt = (
            select(AutoReplenishConfigTable)
            .where(
                AutoReplenishConfigTable.enabled.is_(True),
                AutoReplenishConfigTable.payment_method_ref.is_not(None),
                AutoReplenishConfigTable.consecutive_failures < max_consecutive_failures,
                AutoReplenishConfigTable.top_ups_this_month < AutoReplenishConfigTable.max_monthly_top_ups,
                AutoReplenishConfigTable.pending_review_reference.is_(None),
            )
            .order_by(AutoReplenishConfigTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def reset_monthly_counters(self, first_of_month: datetime, now: datetime) -> int:
        """Zero ``top_ups_this_month`` for configs not yet reset this month."""
        stmt = (
            update(AutoReplenishConfigTable)
            .where(
                (AutoReplenishConfigTable.monthly_reset_at.is_(None))
                | (AutoReplenishConfigTable.monthly_reset_at < first_of_month)
            )
            .values(top_ups_this_month=0, monthly_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def record_failure(self, holder: HolderRef, error: str) -> None:
        """Count a failed cycle."""
        stmt = (
            update(AutoReplenishConfigTable)
            .where(
                AutoReplenishConfigTable.holder_kind == holder.kind.value,
                AutoReplenishConfigTable.holder_id == holder.id,
            )
            .values(
                consecutive_failures=AutoReplenishConfigTable.consecutive_failures + 1,
                last_top_up_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def hold_for_review(self, holder: HolderRef, payment_reference: str, error: str) -> None:
        """Block further charges until *payment_reference* is reconciled by an operator.

        Counters are left alone.
        """
        stmt = (
            update(AutoReplenishConfigTable)
            .where(
                AutoReplenishConfigTable.holder_kind == holder.kind.value,
                AutoReplenishConfigTable.holder_id == holder.id,
            )
            .values(last_top_up_error=error, pending_review_reference=payment_reference)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def record_success(self, holder: HolderRef, amount: int, at: datetime) -> None:
        stmt = (
            update(AutoReplenishConfigTable)
            .where(
                AutoReplenishConfigTable.holder_kind == holder.kind.value,
                AutoReplenishConfigTable.holder_id == holder.id,
            )
            .values(
                top_ups_this_month=AutoReplenishConfigTable.top_ups_this_month + 1,
                last_top_up_at=at,
                last_top_up_amount=amount,
                last_top_up_error=None,
                consecutive_failures=0,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
