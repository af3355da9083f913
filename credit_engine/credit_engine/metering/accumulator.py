"""Usage accumulator: applies backend usage events to deployment counters.

Function executions add to cumulative counters and to the unrounded
``credits_used_this_period``; storage snapshots overwrite the current storage
figures and raise the period's peaks.  When a deployment's first event of
a new month arrives, its previous month's counters are moved into that
month's ``usage_periods`` row before counting restarts, so the reconciler
can still send a final report for the month.  Nothing is rounded here; the
sync reconciler rounds each owner's period total once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.ledger.allocation import month_window
from credit_engine.metering.events import (
    BillingOwner,
    FunctionExecutionEvent,
    SkipReason,
    StorageUsageEvent,
    event_deployment_name,
    parse_usage_event,
)
from credit_engine.metering.pricing import (
    DEFAULT_PRICING,
    PricingTable,
    UsageMetrics,
    round_credits_for_sync,
)
from credit_engine.state.database import get_session
from credit_engine.state.repository import OwnershipRepository, UsageRepository

logger = logging.getLogger(__name__)


class BatchResult(BaseModel):
    """Tally of one ``process_batch`` call."""

    processed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    skip_reasons: dict[SkipReason, int] = Field(default_factory=lambda: {reason: 0 for reason in SkipReason})

    def skip(self, reason: SkipReason) -> None:
        self.skipped += 1
        self.skip_reasons[reason] += 1


class DeploymentUsage(BaseModel):
    deployment_name: str
    credits_used_this_period: Decimal
    total_function_calls: int
    total_action_compute_ms: int
    total_database_bandwidth_bytes: int
    total_file_bandwidth_bytes: int
    total_vector_bandwidth_bytes: int
    storage_bytes: int
    last_usage_at: datetime | None = None


class UsageSummary(BaseModel):
    """Current-period usage of one workspace."""

    workspace_id: str
    fractional_credits: Decimal
    rounded_credits: int
    deployments: list[DeploymentUsage] = Field(default_factory=list)


class UsageAccumulator:
    """Applies usage events to the store.

    Parameters
    ----------
    session_factory:
        Factory for per-event sessions; each event commits on its own.
    pricing:
        Credit rates used for the per-event conversion.
    clock:
        Returns "now"; decides which calendar month an event is booked to.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pricing: PricingTable = DEFAULT_PRICING,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._pricing = pricing
        self._clock = clock or (lambda: datetime.now(UTC))

    async def process_batch(self, events: Iterable[dict[str, Any]]) -> BatchResult:
        """Apply a batch of raw events.

        Ownership is looked up once per deployment name for the whole batch.
        Events that cannot be attributed to a paying owner are skipped with a
        reason; an event that fails to apply is recorded in ``errors`` and
        the batch carries on.
        """
        result = BatchResult()
        owners: dict[str, BillingOwner | None] = {}

        for raw in events:
            deployment_name = event_deployment_name(raw)
            if deployment_name is None:
                result.skip(SkipReason.NO_DEPLOYMENT_MAPPING)
                continue

            try:
                if deployment_name not in owners:
                    owners[deployment_name] = await self._resolve_owner(deployment_name)
                owner = owners[deployment_name]

                if owner is None:
                    logger.info("Skipped usage event: no owner for deployment %s", deployment_name)
                    result.skip(SkipReason.NO_OWNER)
                    continue
                if not owner.has_active_subscription:
                    logger.info(
                        "Skipped usage event: owner %s of deployment %s has no active subscription",
                        owner.owner_id,
                        deployment_name,
                    )
                    result.skip(SkipReason.NO_ACTIVE_SUBSCRIPTION)
                    continue

                event = parse_usage_event(raw)
                if event is None:
                    logger.debug("Skipped usage event with topic %r", raw.get("topic"))
                    result.skip(SkipReason.UNRECOGNIZED_EVENT_TYPE)
                    continue

                if isinstance(event, FunctionExecutionEvent):
                    await self.record_function_execution(event, owner)
                else:
                    await self.record_storage_snapshot(event, owner)
                result.processed += 1
            except Exception as exc:
                logger.error("Failed to apply usage event for %s: %s", deployment_name, exc, exc_info=True)
                result.errors.append(f"{deployment_name}: {exc}")

        logger.info(
            "Processed usage batch: processed=%d skipped=%d errors=%d",
            result.processed,
            result.skipped,
            len(result.errors),
            extra={"ledger": {"skip_reasons": {k.value: v for k, v in result.skip_reasons.items()}}},
        )
        return result

    async def _resolve_owner(self, deployment_name: str) -> BillingOwner | None:
        async with self._session_factory() as session:
            return await OwnershipRepository(session).resolve(deployment_name)

    async def record_function_execution(self, event: FunctionExecutionEvent, owner: BillingOwner) -> Decimal:
        """Add one execution's usage and its unrounded credit cost.

        Returns the credits charged for the event.
        """
        usage = event.usage
        metrics = UsageMetrics(
            # Cached query results are served without running the function.
            function_calls=0 if event.is_cached_query else 1,
            action_compute_ms=event.execution_time_ms if event.is_action else 0,
            database_bandwidth_bytes=usage.database_read_bytes + usage.database_write_bytes,
            file_bandwidth_bytes=usage.file_storage_read_bytes + usage.file_storage_write_bytes,
            vector_bandwidth_bytes=usage.vector_storage_read_bytes + usage.vector_storage_write_bytes,
        )
        credits = self._pricing.credits_for(metrics)
        period_start, period_end = month_window(self._clock())

        async with get_session(self._session_factory) as session:
            usage = UsageRepository(session)
            await usage.close_stale_period(owner.deployment_id, owner.workspace_id, period_start)
            await usage.increment_usage(
                owner.deployment_id,
                function_calls=metrics.function_calls,
                action_compute_ms=metrics.action_compute_ms,
                database_bandwidth_bytes=metrics.database_bandwidth_bytes,
                file_bandwidth_bytes=metrics.file_bandwidth_bytes,
                vector_bandwidth_bytes=metrics.vector_bandwidth_bytes,
                credits=credits,
                period_start=period_start,
                period_end=period_end,
                occurred_at=event.occurred_at,
            )

        if event.is_cached_query:
            logger.debug("Cached query %s not counted as a function call", event.function.path)
        return credits

    async def record_storage_snapshot(self, event: StorageUsageEvent, owner: BillingOwner) -> None:
        """Overwrite current storage figures and raise the period peaks."""
        period_start, period_end = month_window(self._clock())
        async with get_session(self._session_factory) as session:
            usage = UsageRepository(session)
            await usage.set_storage_snapshot(
                owner.deployment_id,
                document_bytes=event.total_document_size_bytes,
                index_bytes=event.total_index_size_bytes,
                file_bytes=event.total_file_storage_bytes,
                vector_bytes=event.total_vector_storage_bytes,
                backup_bytes=event.total_backup_storage_bytes,
                occurred_at=event.occurred_at,
            )
            await usage.raise_storage_peaks(
                owner.workspace_id,
                period_start,
                period_end,
                database_bytes=event.total_document_size_bytes + event.total_index_size_bytes,
                file_bytes=event.total_file_storage_bytes + event.total_backup_storage_bytes,
                vector_bytes=event.total_vector_storage_bytes,
            )

    async def get_holder_usage(self, workspace_id: str) -> UsageSummary:
        """Per-deployment usage of a workspace, with the rounded period total.

        Counters left over from an earlier month count as zero credits.
        """
        period_start, _end = month_window(self._clock())
        async with self._session_factory() as session:
            deployments = await UsageRepository(session).list_workspace_deployments(workspace_id)

        rows = [
            DeploymentUsage(
                deployment_name=dep.deployment_name,
                credits_used_this_period=(
                    Decimal(dep.credits_used_this_period)
                    if dep.current_period_start == period_start
                    else Decimal("0")
                ),
                total_function_calls=dep.total_function_calls,
                total_action_compute_ms=dep.total_action_compute_ms,
                total_database_bandwidth_bytes=dep.total_database_bandwidth_bytes,
                total_file_bandwidth_bytes=dep.total_file_bandwidth_bytes,
                total_vector_bandwidth_bytes=dep.total_vector_bandwidth_bytes,
                storage_bytes=(
                    dep.document_storage_bytes
                    + dep.index_storage_bytes
                    + dep.file_storage_bytes
                    + dep.vector_storage_bytes
                    + dep.backup_storage_bytes
                ),
                last_usage_at=dep.last_usage_at,
            )
            for dep in deployments
        ]
        total = sum((row.credits_used_this_period for row in rows), Decimal("0"))
        return UsageSummary(
            workspace_id=workspace_id,
            fractional_credits=total,
            rounded_credits=round_credits_for_sync(total),
            deployments=rows,
        )
