"""Periodic reconciliation of accumulated usage with the metering sink.

Each run sums every owner's fractional usage across all deployments in all
of the owner's workspaces, adds the monthly charge for the period's peak
storage, rounds the sum up to whole credits once, and reports that
period-to-date total.  The sink keeps the last value it received, so
overlapping or repeated runs cannot double-bill; a total equal to the one
already recorded for the owner and period is not sent again.

Months that have ended are finalized as well.  Counters a deployment still
holds from an earlier month are first closed out into that month's
``usage_periods`` rows, then each owner's closed month is reported once more
under its own period key and its rows move ``PENDING -> CALCULATED ->
REPORTED``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.errors import ExternalServiceError
from credit_engine.ledger.allocation import month_window, period_key
from credit_engine.metering.events import BillableDeployment, PeriodUsage, UsagePeriodStatus
from credit_engine.metering.pricing import DEFAULT_PRICING, PricingTable, round_credits_for_sync
from credit_engine.services.meter_publisher import MeterEventPublisher, MeterReport
from credit_engine.state.database import get_session
from credit_engine.state.repository import OwnershipRepository, UsageRepository, UsageSyncReportRepository

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (UsagePeriodStatus.PENDING, UsagePeriodStatus.CALCULATED)


def sync_identifier(period: str, owner_id: str, value: int) -> str:
    """De-duplication key for one reported total."""
    return f"{period}-{owner_id}-{value}"


class OwnerPeriodTotal(BaseModel):
    """Everything one owner owes for one period, before rounding."""

    owner_id: str
    period_start: datetime
    period_end: datetime
    stripe_customer_id: str | None = None
    has_active_subscription: bool = False
    closed: bool = False
    usage_credits: Decimal = Decimal("0")
    storage_credits: Decimal = Decimal("0")
    deployment_count: int = 0
    period_ids: list[int] = Field(default_factory=list)

    @property
    def fractional_credits(self) -> Decimal:
        return self.usage_credits + self.storage_credits


class OwnerSyncResult(BaseModel):
    owner_id: str
    status: str
    period_key: str | None = None
    fractional_credits: Decimal = Decimal("0")
    storage_credits: Decimal = Decimal("0")
    reported_credits: int = 0
    deployment_count: int = 0
    identifier: str | None = None
    error: str | None = None


class SyncResult(BaseModel):
    """Summary of one reconciliation run."""

    period_key: str
    reported: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    deployments_closed: int = 0
    periods_finalized: int = 0
    owners: list[OwnerSyncResult] = Field(default_factory=list)


class UsageSyncReconciler:
    """Reports each owner's rounded period total.

    Parameters
    ----------
    session_factory:
        Factory for the read and bookkeeping sessions.
    publisher:
        Started :class:`MeterEventPublisher` that delivers the reports.
    pricing:
        Rates used to price each period's peak storage.
    clock:
        Returns "now"; selects the period being reconciled.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: MeterEventPublisher,
        pricing: PricingTable = DEFAULT_PRICING,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._pricing = pricing
        self._clock = clock or (lambda: datetime.now(UTC))

    async def sync_all(self) -> SyncResult:
        """Finalize ended months, then reconcile every owner with usage in the current one."""
        return await self._run(owner_id=None)

    async def sync_holder(self, workspace_id: str) -> SyncResult:
        """Reconcile the owner of *workspace_id*.

        The owner's total covers all of their workspaces, so this reports
        exactly what :meth:`sync_all` would for that owner.
        """
        async with self._session_factory() as session:
            owner_id = await OwnershipRepository(session).get_workspace_owner(workspace_id)
        if owner_id is None:
            return SyncResult(period_key=period_key(self._clock()))
        return await self._run(owner_id=owner_id)

    async def _run(self, owner_id: str | None) -> SyncResult:
        now = self._clock()
        current_start, current_end = month_window(now)
        closed_count = await self.close_idle_deployments(current_start)

        async with self._session_factory() as session:
            ownership = OwnershipRepository(session)
            billable = await ownership.list_billable(current_start, owner_id=owner_id)
            storage = await ownership.list_period_storage(current_start, owner_id=owner_id)
            ended = await ownership.list_closed_periods(current_start, owner_id=owner_id)

        totals = self._group(billable, storage + ended, current_start, current_end)
        result = SyncResult(period_key=period_key(now), deployments_closed=closed_count)
        for total in totals:
            outcome = await self._sync_owner(total, now)
            result.owners.append(outcome)
            if outcome.status == "reported":
                result.reported += 1
            elif outcome.status == "unchanged":
                result.unchanged += 1
            elif outcome.status == "failed":
                result.failed += 1
            else:
                result.skipped += 1
            if total.closed and outcome.status in ("reported", "unchanged"):
                result.periods_finalized += 1

        logger.info(
            "Usage sync %s: reported=%d unchanged=%d skipped=%d failed=%d finalized=%d",
            result.period_key,
            result.reported,
            result.unchanged,
            result.skipped,
            result.failed,
            result.periods_finalized,
        )
        return result

    async def close_idle_deployments(self, current_start: datetime) -> int:
        """Close out counters of deployments that saw no event since their month ended."""
        async with get_session(self._session_factory) as session:
            usage = UsageRepository(session)
            closed = 0
            for deployment_id, workspace_id in await usage.list_stale_deployments(current_start):
                if await usage.close_stale_period(deployment_id, workspace_id, current_start) > 0:
                    closed += 1
        return closed

    def _group(
        self,
        billable: list[BillableDeployment],
        periods: list[PeriodUsage],
        current_start: datetime,
        current_end: datetime,
    ) -> list[OwnerPeriodTotal]:
        totals: dict[tuple[str, datetime], OwnerPeriodTotal] = {}

        def _total(
            owner_id: str,
            start: datetime,
            end: datetime,
            customer: str | None,
            active: bool,
        ) -> OwnerPeriodTotal:
            key = (owner_id, start)
            if key not in totals:
                totals[key] = OwnerPeriodTotal(
                    owner_id=owner_id,
                    period_start=start,
                    period_end=end,
                    stripe_customer_id=customer,
                    has_active_subscription=active,
                    closed=start < current_start,
                )
            return totals[key]

        for deployment in billable:
            total = _total(
                deployment.owner_id,
                current_start,
                current_end,
                deployment.stripe_customer_id,
                deployment.has_active_subscription,
            )
            total.usage_credits += deployment.credits_used_this_period
            total.deployment_count += 1

        for period in periods:
            total = _total(
                period.owner_id,
                period.period_start,
                period.period_end,
                period.stripe_customer_id,
                period.has_active_subscription,
            )
            total.usage_credits += period.closed_usage_credits
            total.storage_credits += self._pricing.storage_credits_for_peaks(
                period.peak_database_storage_bytes,
                period.peak_file_storage_bytes,
                period.peak_vector_storage_bytes,
            )
            if total.closed:
                total.period_ids.append(period.period_id)

        return sorted(totals.values(), key=lambda t: (t.period_start, t.owner_id))

    async def _set_status(
        self,
        total: OwnerPeriodTotal,
        status: UsagePeriodStatus,
        from_statuses: tuple[UsagePeriodStatus, ...],
    ) -> None:
        if not total.closed:
            return
        async with get_session(self._session_factory) as session:
            await UsageRepository(session).set_period_status(total.period_ids, status, from_statuses=from_statuses)

    async def _sync_owner(self, total: OwnerPeriodTotal, now: datetime) -> OwnerSyncResult:
        owner_id = total.owner_id
        period = period_key(total.period_start)
        fractional = total.fractional_credits
        base = {
            "owner_id": owner_id,
            "period_key": period,
            "fractional_credits": fractional,
            "storage_credits": total.storage_credits,
            "deployment_count": total.deployment_count,
        }
        if not total.has_active_subscription or not total.stripe_customer_id:
            logger.info("Skipping usage sync for owner %s (%s): no active subscription", owner_id, period)
            return OwnerSyncResult(status="skipped", **base)

        value = round_credits_for_sync(fractional)
        if value <= 0:
            await self._set_status(total, UsagePeriodStatus.REPORTED, _OPEN_STATUSES)
            return OwnerSyncResult(status="skipped", **base)

        await self._set_status(total, UsagePeriodStatus.CALCULATED, (UsagePeriodStatus.PENDING,))
        identifier = sync_identifier(period, owner_id, value)

        async with self._session_factory() as session:
            previous = await UsageSyncReportRepository(session).get(owner_id, period)
        if (
            previous is not None
            and previous.reported_credits == value
            and previous.stripe_customer_id == total.stripe_customer_id
        ):
            await self._set_status(total, UsagePeriodStatus.REPORTED, (UsagePeriodStatus.CALCULATED,))
            logger.debug("Usage for owner %s (%s) unchanged at %d credits", owner_id, period, value)
            return OwnerSyncResult(status="unchanged", reported_credits=value, identifier=identifier, **base)

        # A closed month is reported at its last second so it lands in that month.
        reported_at = min(now, total.period_end - timedelta(seconds=1))
        try:
            delivery = await self._publisher.publish(
                MeterReport(
                    customer_id=total.stripe_customer_id,
                    value=value,
                    identifier=identifier,
                    timestamp=int(reported_at.timestamp()),
                )
            )
            await delivery
        except ExternalServiceError as exc:
            logger.error("Usage sync failed for owner %s (%s): %s", owner_id, identifier, exc)
            return OwnerSyncResult(
                status="failed",
                reported_credits=value,
                identifier=identifier,
                error=str(exc),
                **base,
            )

        async with get_session(self._session_factory) as session:
            await UsageSyncReportRepository(session).record(
                owner_id,
                period,
                stripe_customer_id=total.stripe_customer_id,
                reported_credits=value,
                fractional_credits=fractional,
                deployment_count=total.deployment_count,
                identifier=identifier,
            )
            if total.closed:
                await UsageRepository(session).set_period_status(
                    total.period_ids,
                    UsagePeriodStatus.REPORTED,
                    from_statuses=(UsagePeriodStatus.CALCULATED,),
                )

        logger.info(
            "Reported %d credits for owner %s (%s): %s fractional over %d deployments",
            value,
            owner_id,
            period,
            fractional,
            total.deployment_count,
        )
        return OwnerSyncResult(status="reported", reported_credits=value, identifier=identifier, **base)
