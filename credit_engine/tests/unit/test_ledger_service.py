"""Tests for CreditLedger against a real (SQLite) store.

Covers:
- deduct: bucket order, reserve floor, expiry before deduction, zero amount,
  negative amount, unknown holder, metadata, workspace holders
- add: buckets, zero amount, metadata precedence
- sweep_expired, allocate_plan_cycle, allocate_monthly_credits
- can_afford, get_balance, list_transactions
- version-checked writes: retry on conflict, give up after the budget,
  and two concurrent deductions racing for one balance
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest
import pytest_asyncio

from credit_engine.errors import (
    AccountNotFoundError,
    ConcurrentModificationError,
    InsufficientFundsError,
    InvalidAmountError,
)
from credit_engine.ledger.allocation import REASON_BELOW_RESERVE, REASON_INSUFFICIENT_BALANCE
from credit_engine.ledger.models import GrantBucket, HolderRef, TransactionType
from credit_engine.ledger.service import CreditLedger
from credit_engine.state.database import get_session, get_session_factory
from credit_engine.state.repository import CreditHolderRepository
from credit_engine.state.sqlite_adapter import create_local_tables, get_local_engine

# ---------------------------------------------------------------------------
# Deduct
# ---------------------------------------------------------------------------


class TestDeductBucketOrder:
    """Verify carry-over, then base-plan, then bonus."""

    @pytest.mark.asyncio
    async def test_carry_over_then_base_plan(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(
            balance=100,
            carry_over_credits=Decimal("30"),
            carry_over_expires_at=clock() + timedelta(days=10),
            base_plan_credits=Decimal("50"),
        )

        result = await ledger.deduct(holder, 40)

        assert result.amount == Decimal("40")
        assert result.carry_over_deducted == Decimal("30")
        assert result.base_plan_deducted == Decimal("10")
        assert result.bonus_deducted == Decimal("0")
        assert result.balance_after == Decimal("60")

        snapshot = await ledger.get_balance(holder)
        assert snapshot.carry_over == Decimal("0")
        assert snapshot.base_plan == Decimal("40")
        assert snapshot.bonus == Decimal("20")
        assert snapshot.lifetime_used == Decimal("40")
        assert snapshot.monthly_used == Decimal("40")

    @pytest.mark.asyncio
    async def test_bonus_spent_last(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=100, base_plan_credits=Decimal("50"))

        result = await ledger.deduct(holder, 70)

        assert result.base_plan_deducted == Decimal("50")
        assert result.bonus_deducted == Decimal("20")
        snapshot = await ledger.get_balance(holder)
        assert snapshot.base_plan == Decimal("0")
        assert snapshot.bonus == Decimal("30")

    @pytest.mark.asyncio
    async def test_workspace_holder(self, ledger: CreditLedger, make_user, make_workspace) -> None:
        await make_user("owner-1")
        workspace = await make_workspace("ws-1", "owner-1", balance=25, base_plan_credits=Decimal("5"))

        result = await ledger.deduct(workspace, "7.5", TransactionType.AI_GENERATION, "Generation", actor_user_id="owner-1")

        assert result.balance_after == Decimal("17.5")
        assert result.base_plan_deducted == Decimal("5")
        assert result.bonus_deducted == Decimal("2.5")
        records = await ledger.list_transactions(workspace)
        assert records[0].transaction_type is TransactionType.AI_GENERATION
        assert records[0].actor_user_id == "owner-1"
        assert Decimal(records[0].metadata["base_plan_deducted"]) == Decimal("5")


class TestDeductReserve:
    """Verify the balance floor."""

    @pytest.mark.asyncio
    async def test_rejects_deduction_below_reserve(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10)

        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.deduct(holder, "9.6")

        err = exc_info.value
        assert err.reason == REASON_BELOW_RESERVE
        assert err.current_balance == Decimal("10")
        assert err.required_amount == Decimal("9.6")
        assert err.minimum_reserve == Decimal("0.5")
        assert (await ledger.get_balance(holder)).balance == Decimal("10")
        assert await ledger.list_transactions(holder) == []

    @pytest.mark.asyncio
    async def test_rejects_more_than_balance(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=5)

        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.deduct(holder, 6)

        assert exc_info.value.reason == REASON_INSUFFICIENT_BALANCE
        assert exc_info.value.to_dict()["error"] == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_balance_never_below_reserve_after_sequence(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=20)
        for amount in ["7", "7", "5.5", "3", "0.25", "1"]:
            try:
                await ledger.deduct(holder, amount)
            except InsufficientFundsError:
                pass
            await ledger.add(holder, "0.125")
            balance = (await ledger.get_balance(holder)).balance
            assert balance >= Decimal("0")

        assert (await ledger.get_balance(holder)).balance >= Decimal("0.5")


class TestDeductExpiry:
    """Verify expired carry-over is removed before the feasibility check."""

    @pytest.mark.asyncio
    async def test_expiry_precedes_deduction(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(
            balance=25,
            carry_over_credits=Decimal("20"),
            carry_over_expires_at=clock() - timedelta(hours=1),
            base_plan_credits=Decimal("5"),
        )

        result = await ledger.deduct(holder, 3)

        assert result.expired_carry_over == Decimal("20")
        assert result.carry_over_deducted == Decimal("0")
        assert result.base_plan_deducted == Decimal("3")
        assert result.balance_after == Decimal("2")
        snapshot = await ledger.get_balance(holder)
        assert snapshot.carry_over == Decimal("0")
        assert snapshot.base_plan == Decimal("2")
        assert snapshot.carry_over_expires_at is None

        types = [r.transaction_type for r in await ledger.list_transactions(holder)]
        assert types == [TransactionType.USAGE_DEDUCTION, TransactionType.CARRY_OVER_EXPIRY]

    @pytest.mark.asyncio
    async def test_expiry_makes_deduction_infeasible(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(
            balance=25,
            carry_over_credits=Decimal("20"),
            carry_over_expires_at=clock() - timedelta(hours=1),
            base_plan_credits=Decimal("5"),
        )

        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.deduct(holder, 10)

        assert exc_info.value.current_balance == Decimal("5")
        # The expiry itself is persisted even though the deduction failed.
        snapshot = await ledger.get_balance(holder)
        assert snapshot.balance == Decimal("5")
        records = await ledger.list_transactions(holder)
        assert [r.transaction_type for r in records] == [TransactionType.CARRY_OVER_EXPIRY]
        assert records[0].amount == Decimal("-20")


class TestDeductEdgeCases:
    @pytest.mark.asyncio
    async def test_zero_amount_is_noop(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10)

        result = await ledger.deduct(holder, 0)

        assert result.amount == Decimal("0")
        assert result.balance_after == Decimal("10")
        assert result.transaction_id is None
        assert await ledger.list_transactions(holder) == []

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10)
        with pytest.raises(InvalidAmountError):
            await ledger.deduct(holder, -1)

    @pytest.mark.asyncio
    async def test_unknown_holder(self, ledger: CreditLedger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.deduct(HolderRef.user("missing"), 1)

    @pytest.mark.asyncio
    async def test_caller_metadata_cannot_override_computed_keys(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10)

        result = await ledger.deduct(
            holder,
            2,
            metadata={"bonus_deducted": "999", "request_id": "req-1"},
        )

        records = await ledger.list_transactions(holder)
        assert records[0].id == result.transaction_id
        assert records[0].metadata["request_id"] == "req-1"
        assert Decimal(records[0].metadata["bonus_deducted"]) == Decimal("2")
        assert records[0].metadata_version == 1
        assert records[0].balance_after == Decimal("8")
        assert records[0].amount == Decimal("-2")


# ---------------------------------------------------------------------------
# Add
# ---------------------------------------------------------------------------


class TestAdd:
    """Verify credit grants."""

    @pytest.mark.asyncio
    async def test_default_grant_lands_in_bonus(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10, base_plan_credits=Decimal("10"))

        result = await ledger.add(holder, 15, TransactionType.BONUS, "Welcome bonus")

        assert result.balance_after == Decimal("25")
        snapshot = await ledger.get_balance(holder)
        assert snapshot.base_plan == Decimal("10")
        assert snapshot.bonus == Decimal("15")
        record = (await ledger.list_transactions(holder))[0]
        assert record.transaction_type is TransactionType.BONUS
        assert record.metadata["target_type"] == "user"
        assert record.metadata["bucket"] == "bonus"

    @pytest.mark.asyncio
    async def test_carry_over_grant(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(balance=0)
        expires = clock() + timedelta(days=30)

        await ledger.add(holder, 50, bucket=GrantBucket.CARRY_OVER, expires_at=expires)

        snapshot = await ledger.get_balance(holder)
        assert snapshot.carry_over == Decimal("50")
        assert snapshot.carry_over_expires_at == expires

    @pytest.mark.asyncio
    async def test_zero_grant_is_noop(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=3)
        result = await ledger.add(holder, 0)
        assert result.balance_after == Decimal("3")
        assert await ledger.list_transactions(holder) == []

    @pytest.mark.asyncio
    async def test_negative_grant_rejected(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=3)
        with pytest.raises(InvalidAmountError):
            await ledger.add(holder, "-0.01")


# ---------------------------------------------------------------------------
# Sweep & allocation
# ---------------------------------------------------------------------------


class TestSweepExpired:
    @pytest.mark.asyncio
    async def test_persists_expiry(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(
            balance=30,
            carry_over_credits=Decimal("12"),
            carry_over_expires_at=clock() - timedelta(minutes=1),
        )

        expired = await ledger.sweep_expired(holder)

        assert expired == Decimal("12")
        records = await ledger.list_transactions(holder)
        assert records[0].transaction_type is TransactionType.CARRY_OVER_EXPIRY
        assert records[0].balance_after == Decimal("18")

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=30)
        assert await ledger.sweep_expired(holder) == Decimal("0")
        assert await ledger.list_transactions(holder) == []


class TestAllocation:
    """Verify plan-cycle and monthly tier allocation."""

    @pytest.mark.asyncio
    async def test_plan_cycle_carries_over_leftover(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(balance=35, base_plan_credits=Decimal("35"), monthly_credits_used=Decimal("365"))
        period_end = clock() + timedelta(days=30)

        result = await ledger.allocate_plan_cycle(holder, 400, period_end)

        assert result.carry_over == Decimal("35")
        assert result.balance_after == Decimal("435")
        snapshot = await ledger.get_balance(holder)
        assert snapshot.carry_over == Decimal("35")
        assert snapshot.carry_over_expires_at == period_end
        assert snapshot.base_plan == Decimal("400")
        assert snapshot.monthly_used == Decimal("0")
        record = (await ledger.list_transactions(holder))[0]
        assert record.transaction_type is TransactionType.MONTHLY_ALLOCATION
        assert Decimal(record.metadata["carry_over_amount"]) == Decimal("35")

    @pytest.mark.asyncio
    async def test_monthly_allocation_once_per_month(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(balance=0, membership_tier="PRO", stripe_subscription_id="sub_1")

        first = await ledger.allocate_monthly_credits(holder)
        second = await ledger.allocate_monthly_credits(holder)

        assert first is not None
        assert first.amount == Decimal("400")
        assert second is None

        clock.set(datetime(2026, 4, 2, tzinfo=UTC))
        third = await ledger.allocate_monthly_credits(holder)
        assert third is not None
        assert third.carry_over == Decimal("400")

    @pytest.mark.asyncio
    async def test_free_tier_gets_nothing(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=0)
        assert await ledger.allocate_monthly_credits(holder) is None

    @pytest.mark.asyncio
    async def test_expired_membership_gets_nothing(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(balance=0, membership_tier="PRO", membership_expires_at=clock() - timedelta(days=1))
        assert await ledger.allocate_monthly_credits(holder) is None


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


class TestReadPath:
    @pytest.mark.asyncio
    async def test_can_afford_matches_deduct(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10)

        assert (await ledger.can_afford(holder, "9.5")).can_afford is True
        check = await ledger.can_afford(holder, "9.6")
        assert check.can_afford is False
        assert check.reason == REASON_BELOW_RESERVE

    @pytest.mark.asyncio
    async def test_can_afford_ignores_expired_carry_over(self, ledger: CreditLedger, make_user, clock) -> None:
        holder = await make_user(
            balance=25,
            carry_over_credits=Decimal("20"),
            carry_over_expires_at=clock() - timedelta(seconds=1),
        )

        check = await ledger.can_afford(holder, 10)

        assert check.can_afford is False
        assert check.current_balance == Decimal("5")
        # Advisory only: nothing persisted.
        assert await ledger.list_transactions(holder) == []

    @pytest.mark.asyncio
    async def test_can_afford_unknown_holder(self, ledger: CreditLedger) -> None:
        check = await ledger.can_afford(HolderRef.workspace("nope"), 1)
        assert check.can_afford is False
        assert check.reason == "account not found"

    @pytest.mark.asyncio
    async def test_get_balance_unknown_holder(self, ledger: CreditLedger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.get_balance(HolderRef.user("nope"))

    @pytest.mark.asyncio
    async def test_transactions_newest_first_with_running_balance(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=0)
        await ledger.add(holder, 10)
        await ledger.deduct(holder, 3)
        await ledger.add(holder, 5)

        records = await ledger.list_transactions(holder)

        assert [r.amount for r in records] == [Decimal("5"), Decimal("-3"), Decimal("10")]
        running = Decimal("0")
        for record in reversed(records):
            running += record.amount
            assert record.balance_after == running

    @pytest.mark.asyncio
    async def test_list_limit(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=0)
        for _ in range(5):
            await ledger.add(holder, 1)
        assert len(await ledger.list_transactions(holder, limit=2)) == 2


# ---------------------------------------------------------------------------
# Version-checked writes
# ---------------------------------------------------------------------------


class TestVersionedWrites:
    """Verify compare-and-swap retries."""

    @pytest.mark.asyncio
    async def test_retries_after_conflict(self, ledger: CreditLedger, make_user) -> None:
        holder = await make_user(balance=10)
        original = CreditHolderRepository.compare_and_swap
        calls = {"n": 0}

        async def flaky(self, expected, new):  # type: ignore[no-untyped-def]
            calls["n"] += 1
            if calls["n"] == 1:
                return False
            return await original(self, expected, new)

        with patch.object(CreditHolderRepository, "compare_and_swap", flaky):
            result = await ledger.deduct(holder, 4)

        assert calls["n"] == 2
        assert result.balance_after == Decimal("6")
        assert len(await ledger.list_transactions(holder)) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self, ledger: CreditLedger, make_user, settings) -> None:
        holder = await make_user(balance=10)

        async def always_conflict(self, expected, new):  # type: ignore[no-untyped-def]
            return False

        with patch.object(CreditHolderRepository, "compare_and_swap", always_conflict):
            with pytest.raises(ConcurrentModificationError) as exc_info:
                await ledger.deduct(holder, 4)

        assert exc_info.value.attempts == settings.ledger_max_write_attempts
        assert (await ledger.get_balance(holder)).balance == Decimal("10")
        assert await ledger.list_transactions(holder) == []


@pytest_asyncio.fixture
async def file_ledger(tmp_path: Path, settings, clock):
    """Ledger over a file-backed SQLite store so sessions use separate connections."""
    engine = get_local_engine(tmp_path / "ledger.db")
    await create_local_tables(engine)
    factory = get_session_factory(engine)
    async with get_session(factory) as session:
        await CreditHolderRepository(session).create_user("racer", "racer@example.com", credit_balance=Decimal("10"))
    yield CreditLedger(factory, settings, clock=clock)
    await engine.dispose()


class TestConcurrentDeduction:
    @pytest.mark.asyncio
    async def test_only_one_of_two_racing_deductions_succeeds(self, file_ledger: CreditLedger) -> None:
        holder = HolderRef.user("racer")

        results = await asyncio.gather(
            file_ledger.deduct(holder, 6),
            file_ledger.deduct(holder, 6),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientFundsError)
        assert (await file_ledger.get_balance(holder)).balance == Decimal("4")
        assert len(await file_ledger.list_transactions(holder)) == 1
