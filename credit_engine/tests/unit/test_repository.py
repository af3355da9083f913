"""Tests for the state repositories against in-memory SQLite."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from credit_engine.ledger.models import HolderRef
from credit_engine.metering.events import UsagePeriodStatus
from credit_engine.state.database import get_session
from credit_engine.state.repository import (
    AutoReplenishRepository,
    CreditHolderRepository,
    OwnershipRepository,
    UsageRepository,
    UsageSyncReportRepository,
    has_active_subscription,
)
from credit_engine.state.tables import DeploymentTable, ProjectTable

_MARCH = datetime(2026, 3, 1, tzinfo=UTC)
_APRIL = datetime(2026, 4, 1, tzinfo=UTC)

# ---------------------------------------------------------------------------
# CreditHolderRepository
# ---------------------------------------------------------------------------


class TestCreditHolderRepository:
    @pytest.mark.asyncio
    async def test_snapshot_of_missing_holder(self, session_factory) -> None:
        async with session_factory() as session:
            assert await CreditHolderRepository(session).get_snapshot(HolderRef.user("nope")) is None

    @pytest.mark.asyncio
    async def test_compare_and_swap_bumps_version(self, session_factory, make_user) -> None:
        holder = await make_user("u1", balance=10)

        async with get_session(session_factory) as session:
            repo = CreditHolderRepository(session)
            snapshot = await repo.get_snapshot(holder)
            assert snapshot.version == 0
            assert await repo.compare_and_swap(snapshot, snapshot.model_copy(update={"balance": Decimal("7")}))

        async with session_factory() as session:
            stored = await CreditHolderRepository(session).get_snapshot(holder)
        assert stored.version == 1
        assert stored.balance == Decimal("7")

    @pytest.mark.asyncio
    async def test_compare_and_swap_rejects_stale_snapshot(self, session_factory, make_user) -> None:
        holder = await make_user("u1", balance=10)
        async with session_factory() as session:
            stale = await CreditHolderRepository(session).get_snapshot(holder)

        async with get_session(session_factory) as session:
            repo = CreditHolderRepository(session)
            assert await repo.compare_and_swap(stale, stale.model_copy(update={"balance": Decimal("9")}))
        async with get_session(session_factory) as session:
            repo = CreditHolderRepository(session)
            assert not await repo.compare_and_swap(stale, stale.model_copy(update={"balance": Decimal("1")}))

        async with session_factory() as session:
            assert (await CreditHolderRepository(session).get_snapshot(holder)).balance == Decimal("9")


# ---------------------------------------------------------------------------
# OwnershipRepository
# ---------------------------------------------------------------------------


class TestOwnershipRepository:
    def test_active_subscription_rule(self) -> None:
        assert has_active_subscription("PRO", "sub_1") is True
        assert has_active_subscription("PRO", None) is False
        assert has_active_subscription("FREE", "sub_1") is False

    @pytest.mark.asyncio
    async def test_resolve(self, session_factory, paying_owner, make_deployment) -> None:
        await make_deployment("dep-a", "ws-1")

        async with session_factory() as session:
            owner = await OwnershipRepository(session).resolve("dep-a")

        assert owner.workspace_id == "ws-1"
        assert owner.owner_id == "owner-1"
        assert owner.stripe_customer_id == "cus_owner1"
        assert owner.has_active_subscription is True

    @pytest.mark.asyncio
    async def test_project_without_workspace_is_unresolved(self, session_factory, make_user) -> None:
        await make_user("u1")
        async with get_session(session_factory) as session:
            session.add(ProjectTable(id="proj-personal", name="Personal", user_id="u1"))

        async with session_factory() as session:
            assert await OwnershipRepository(session).resolve("anything") is None

    @pytest.mark.asyncio
    async def test_list_billable_filters_period_and_owner(
        self, session_factory, paying_owner, make_user, make_workspace, make_deployment
    ) -> None:
        await make_user("u2", membership_tier="PRO", stripe_subscription_id="sub_2")
        await make_workspace("ws-2", "u2")
        common = {"current_period_end": datetime(2026, 4, 1, tzinfo=UTC)}
        await make_deployment("a", "ws-1", credits_used_this_period=Decimal("1"), current_period_start=_MARCH, **common)
        await make_deployment(
            "b", "ws-1", credits_used_this_period=Decimal("1"), current_period_start=datetime(2026, 2, 1, tzinfo=UTC)
        )
        await make_deployment("c", "ws-2", credits_used_this_period=Decimal("2"), current_period_start=_MARCH, **common)

        async with session_factory() as session:
            ownership = OwnershipRepository(session)
            everyone = await ownership.list_billable(_MARCH)
            only_owner = await ownership.list_billable(_MARCH, owner_id="owner-1")

        assert sorted(d.deployment_name for d in everyone) == ["a", "c"]
        assert [d.deployment_name for d in only_owner] == ["a"]

    @pytest.mark.asyncio
    async def test_create_deployment_creates_project_once(self, session_factory, paying_owner) -> None:
        async with get_session(session_factory) as session:
            ownership = OwnershipRepository(session)
            await ownership.create_deployment("dep-1", "happy-otter", "ws-1")
            await ownership.create_deployment("dep-2", "quiet-heron", "ws-1")

        async with session_factory() as session:
            owner = await OwnershipRepository(session).resolve("quiet-heron")
            project = await session.get(ProjectTable, "proj-ws-1")
        assert owner.deployment_id == "dep-2"
        assert owner.owner_id == "owner-1"
        assert project.workspace_id == "ws-1"


# ---------------------------------------------------------------------------
# UsageRepository
# ---------------------------------------------------------------------------


class TestUsageRepository:
    """Closing out a finished month and moving period rows through their statuses."""

    @pytest.mark.asyncio
    async def test_close_stale_period_moves_credits_once(self, session_factory, paying_owner, make_deployment) -> None:
        dep_id = await make_deployment(
            "a",
            "ws-1",
            credits_used_this_period=Decimal("4.25"),
            total_function_calls=10,
            current_period_start=_MARCH,
            current_period_end=_APRIL,
        )

        async with get_session(session_factory) as session:
            moved = await UsageRepository(session).close_stale_period(dep_id, "ws-1", _APRIL)
        async with get_session(session_factory) as session:
            again = await UsageRepository(session).close_stale_period(dep_id, "ws-1", _APRIL)

        assert moved == Decimal("4.25")
        assert again == Decimal("0")
        async with session_factory() as session:
            dep = await session.get(DeploymentTable, dep_id)
            period = await UsageRepository(session).get_period("ws-1", _MARCH, _APRIL)
        assert dep.total_function_calls == 0
        assert dep.current_period_start is None
        assert Decimal(period.closed_usage_credits) == Decimal("4.25")
        assert period.status == UsagePeriodStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_current_period_is_not_closed(self, session_factory, paying_owner, make_deployment) -> None:
        dep_id = await make_deployment(
            "a", "ws-1", credits_used_this_period=Decimal("1"), current_period_start=_MARCH, current_period_end=_APRIL
        )

        async with get_session(session_factory) as session:
            usage = UsageRepository(session)
            assert await usage.close_stale_period(dep_id, "ws-1", _MARCH) == Decimal("0")
            assert await usage.list_stale_deployments(_MARCH) == []
            assert await usage.list_stale_deployments(_APRIL) == [(dep_id, "ws-1")]

    @pytest.mark.asyncio
    async def test_set_period_status_only_from_given_statuses(self, session_factory, paying_owner) -> None:
        async with get_session(session_factory) as session:
            await UsageRepository(session).add_closed_usage("ws-1", _MARCH, _APRIL, Decimal("2"))
        async with session_factory() as session:
            period_id = (await UsageRepository(session).get_period("ws-1", _MARCH, _APRIL)).id

        async with get_session(session_factory) as session:
            usage = UsageRepository(session)
            skipped = await usage.set_period_status(
                [period_id], UsagePeriodStatus.REPORTED, from_statuses=(UsagePeriodStatus.CALCULATED,)
            )
            moved = await usage.set_period_status(
                [period_id], UsagePeriodStatus.CALCULATED, from_statuses=(UsagePeriodStatus.PENDING,)
            )
        assert (skipped, moved) == (0, 1)

        # More usage for a closed month sends the row back for another report.
        async with get_session(session_factory) as session:
            await UsageRepository(session).add_closed_usage("ws-1", _MARCH, _APRIL, Decimal("1"))
        async with session_factory() as session:
            period = await UsageRepository(session).get_period("ws-1", _MARCH, _APRIL)
        assert period.status == UsagePeriodStatus.PENDING.value
        assert Decimal(period.closed_usage_credits) == Decimal("3")


# ---------------------------------------------------------------------------
# UsageSyncReportRepository
# ---------------------------------------------------------------------------


class TestUsageSyncReportRepository:
    @pytest.mark.asyncio
    async def test_record_upserts_per_period(self, session_factory) -> None:
        for value in (2, 3):
            async with get_session(session_factory) as session:
                await UsageSyncReportRepository(session).record(
                    "owner-1",
                    "2026-03",
                    stripe_customer_id="cus_1",
                    reported_credits=value,
                    fractional_credits=Decimal(value) - Decimal("0.5"),
                    deployment_count=1,
                    identifier=f"2026-03-owner-1-{value}",
                )

        async with session_factory() as session:
            report = await UsageSyncReportRepository(session).get("owner-1", "2026-03")
        assert report.reported_credits == 3
        assert report.identifier == "2026-03-owner-1-3"


# ---------------------------------------------------------------------------
# AutoReplenishRepository
# ---------------------------------------------------------------------------


class TestAutoReplenishRepository:
    @pytest.mark.asyncio
    async def test_list_eligible(self, session_factory, make_user) -> None:
        for user_id in ("ok", "disabled", "no-pm", "failing", "capped", "held"):
            await make_user(user_id)
        async with get_session(session_factory) as session:
            repo = AutoReplenishRepository(session)
            await repo.save(HolderRef.user("ok"), enabled=True, payment_method_ref="pm")
            await repo.save(HolderRef.user("disabled"), enabled=False, payment_method_ref="pm")
            await repo.save(HolderRef.user("no-pm"), enabled=True)
            await repo.save(HolderRef.user("failing"), enabled=True, payment_method_ref="pm", consecutive_failures=3)
            await repo.save(
                HolderRef.user("capped"),
                enabled=True,
                payment_method_ref="pm",
                top_ups_this_month=5,
                max_monthly_top_ups=5,
            )
            await repo.save(HolderRef.user("held"), enabled=True, payment_method_ref="pm")
            await repo.hold_for_review(HolderRef.user("held"), "pi_1", "grant failed")

        async with session_factory() as session:
            eligible = await AutoReplenishRepository(session).list_eligible(3)
        assert [row.holder_id for row in eligible] == ["ok"]

    @pytest.mark.asyncio
    async def test_reset_monthly_counters_once_per_month(self, session_factory, make_user) -> None:
        await make_user("u1")
        async with get_session(session_factory) as session:
            await AutoReplenishRepository(session).save(HolderRef.user("u1"), enabled=True, top_ups_this_month=4)

        now = datetime(2026, 3, 15, tzinfo=UTC)
        async with get_session(session_factory) as session:
            assert await AutoReplenishRepository(session).reset_monthly_counters(_MARCH, now) == 1
        async with get_session(session_factory) as session:
            assert await AutoReplenishRepository(session).reset_monthly_counters(_MARCH, now) == 0

        async with session_factory() as session:
            row = await AutoReplenishRepository(session).get(HolderRef.user("u1"))
        assert row.top_ups_this_month == 0

    @pytest.mark.asyncio
    async def test_failure_and_success_counters(self, session_factory, make_user) -> None:
        holder = await make_user("u1")
        async with get_session(session_factory) as session:
            repo = AutoReplenishRepository(session)
            await repo.save(holder, enabled=True)
            await repo.record_failure(holder, "declined")
            await repo.record_failure(holder, "declined again")

        async with session_factory() as session:
            row = await AutoReplenishRepository(session).get(holder)
            assert row.consecutive_failures == 2
            assert row.last_top_up_error == "declined again"

        at = datetime(2026, 3, 15, tzinfo=UTC)
        async with get_session(session_factory) as session:
            await AutoReplenishRepository(session).record_success(holder, 400, at)

        async with session_factory() as session:
            row = await AutoReplenishRepository(session).get(holder)
            assert row.consecutive_failures == 0
            assert row.top_ups_this_month == 1
            assert row.last_top_up_amount == 400
            assert row.last_top_up_at == at
            assert row.last_top_up_error is None
