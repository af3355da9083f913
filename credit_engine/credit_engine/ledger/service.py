"""Atomic credit ledger operations.

Every balance mutation follows the same pattern:

1. Read the holder's :class:`BalanceSnapshot` (including its row version).
2. Compute the new state with the pure functions in
   :mod:`credit_engine.ledger.allocation`, carry-over expiry first.
3. Write it with ``UPDATE ... WHERE version = :read_version`` and append the
   audit rows in the same database transaction.
4. If another writer bumped the version in between, roll back and start
   again from a fresh read.

A deduction therefore never succeeds on a stale balance, and a balance
change never commits without its transaction row.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.config import Settings
from credit_engine.errors import (
    AccountNotFoundError,
    ConcurrentModificationError,
    InsufficientFundsError,
    LedgerError,
)
from credit_engine.ledger.allocation import (
    allocate_cycle,
    apply_grant,
    check_affordability,
    month_window,
    needs_monthly_allocation,
    split_deduction,
    sweep_expired_carry_over,
    validate_amount,
)
from credit_engine.ledger.models import (
    ZERO,
    AffordabilityCheck,
    BalanceSnapshot,
    DeductionResult,
    GrantBucket,
    GrantResult,
    HolderRef,
    MembershipTier,
    MetadataKey,
    SweepOutcome,
    TransactionRecord,
    TransactionType,
    build_metadata,
)
from credit_engine.state.repository import CreditHolderRepository, CreditTransactionRepository

logger = logging.getLogger(__name__)

_PAID_TIERS = (MembershipTier.PRO, MembershipTier.ENTERPRISE)


class _VersionConflict(Exception):
    """The holder row changed between read and write."""


@dataclass
class _Entry:
    amount: Decimal
    balance_after: Decimal
    transaction_type: TransactionType
    description: str
    metadata: dict[str, Any]
    actor_user_id: str | None = None


@dataclass
class _Mutation:
    """New holder state plus the audit rows that explain it.

    ``error`` is raised after the mutation commits; it lets an infeasible
    deduction still persist the carry-over expiry it triggered.
    """

    snapshot: BalanceSnapshot
    entries: list[_Entry] = field(default_factory=list)
    error: LedgerError | None = None
    detail: dict[str, Any] = field(default_factory=dict)


def _backoff_delay(attempt: int) -> float:
    return min(0.005 * (2**attempt), 0.2) * random.uniform(0.5, 1.5)  # noqa: S311


def _is_lock_error(exc: OperationalError) -> bool:
    # SQLite reports a lost write race as "database is locked".
    return "locked" in str(exc).lower()


def _expiry_entry(sweep: SweepOutcome, now: datetime) -> _Entry:
    return _Entry(
        amount=-sweep.expired_amount,
        balance_after=sweep.snapshot.balance,
        transaction_type=TransactionType.CARRY_OVER_EXPIRY,
        description=f"Expired {sweep.expired_amount} carry-over credits",
        metadata=build_metadata(
            {
                MetadataKey.EXPIRED_AMOUNT.value: sweep.expired_amount,
                MetadataKey.EXPIRED_AT.value: now.isoformat(),
            }
        ),
    )


class CreditLedger:
    """Balance operations for users and workspaces.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions each operation runs in.
    settings:
        Supplies ``minimum_reserve``, the write retry budget and the
        monthly credits per tier.
    clock:
        Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def minimum_reserve(self) -> Decimal:
        return Decimal(self._settings.minimum_reserve)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _apply(
        self,
        holder: HolderRef,
        mutate: Callable[[BalanceSnapshot, datetime], _Mutation | None],
    ) -> tuple[_Mutation | None, list[int]]:
        """Run *mutate* against a fresh snapshot until the versioned write lands.

        Returns the committed mutation (``None`` when *mutate* decided there
        was nothing to write) and the ids of the appended transaction rows.
        """
        attempts = self._settings.ledger_max_write_attempts
        for attempt in range(1, attempts + 1):
            try:
                async with self._session_factory() as session, session.begin():
                    holders = CreditHolderRepository(session)
                    snapshot = await holders.get_snapshot(holder)
                    if snapshot is None:
                        raise AccountNotFoundError(holder)

                    mutation = mutate(snapshot, self._clock())
                    if mutation is None:
                        return None, []

                    if not await holders.compare_and_swap(snapshot, mutation.snapshot):
                        raise _VersionConflict()

                    transactions = CreditTransactionRepository(session)
                    ids: list[int] = []
                    for entry in mutation.entries:
                        row = await transactions.append(
                            holder,
                            entry.amount,
                            entry.balance_after,
                            entry.transaction_type,
                            entry.description,
                            entry.metadata,
                            actor_user_id=entry.actor_user_id,
                        )
                        ids.append(row.id)
            except _VersionConflict:
                logger.debug("Version conflict on %s (attempt %d/%d)", holder, attempt, attempts)
            except OperationalError as exc:
                if not _is_lock_error(exc):
                    raise
                logger.debug("Store locked for %s (attempt %d/%d)", holder, attempt, attempts)
            else:
                return mutation, ids
            await asyncio.sleep(_backoff_delay(attempt))

        logger.error("Giving up on balance write for %s after %d attempts", holder, attempts)
        raise ConcurrentModificationError(holder, attempts)

    async def deduct(
        self,
        holder: HolderRef,
        amount: Decimal | int | str,
        transaction_type: TransactionType = TransactionType.USAGE_DEDUCTION,
        description: str = "Credit usage",
        *,
        metadata: dict[str, Any] | None = None,
        actor_user_id: str | None = None,
    ) -> DeductionResult:
        """Deduct credits: carry-over first, then base-plan, then bonus.

        Expired carry-over is removed before the feasibility check, in the
        same atomic write.  A zero amount succeeds without writing anything.

        Raises
        ------
        InvalidAmountError
            If *amount* is negative.
        InsufficientFundsError
            If the balance cannot cover *amount* while keeping the minimum
            reserve.  Nothing is deducted.
        AccountNotFoundError
            If the holder does not exist.
        """
        value = validate_amount(Decimal(amount))
        if value == ZERO:
            snapshot = await self.get_balance(holder)
            logger.warning("Ignoring zero-credit deduction for %s (%s)", holder, transaction_type.value)
            return DeductionResult(holder=holder, amount=ZERO, balance_after=snapshot.balance)

        reserve = self.minimum_reserve

        def mutate(snapshot: BalanceSnapshot, now: datetime) -> _Mutation | None:
            sweep = sweep_expired_carry_over(snapshot, now)
            current = sweep.snapshot
            entries = [_expiry_entry(sweep, now)] if sweep.expired else []

            check = check_affordability(current.balance, value, reserve)
            if not check.can_afford:
                error = InsufficientFundsError(
                    holder,
                    current_balance=current.balance,
                    required_amount=value,
                    minimum_reserve=reserve,
                    reason=check.reason or "insufficient balance",
                )
                if not sweep.applied:
                    raise error
                return _Mutation(snapshot=current, entries=entries, error=error)

            split = split_deduction(current, value)
            updated = current.model_copy(
                update={
                    "balance": split.new_balance,
                    "carry_over": split.new_carry_over,
                    "base_plan": split.new_base_plan,
                    "lifetime_used": current.lifetime_used + value,
                    "monthly_used": current.monthly_used + value,
                }
            )
            entries.append(
                _Entry(
                    amount=-value,
                    balance_after=split.new_balance,
                    transaction_type=transaction_type,
                    description=description,
                    metadata=build_metadata(
                        {
                            MetadataKey.CARRY_OVER_DEDUCTED.value: split.carry_over_deducted,
                            MetadataKey.BASE_PLAN_DEDUCTED.value: split.base_plan_deducted,
                            MetadataKey.BONUS_DEDUCTED.value: split.bonus_deducted,
                            MetadataKey.NEW_CARRY_OVER.value: split.new_carry_over,
                            MetadataKey.NEW_BASE_PLAN.value: split.new_base_plan,
                            MetadataKey.NEW_BONUS.value: split.new_bonus,
                            MetadataKey.EXPIRED_CARRY_OVER.value: sweep.expired_amount,
                        },
                        metadata,
                    ),
                    actor_user_id=actor_user_id,
                )
            )
            return _Mutation(
                snapshot=updated,
                entries=entries,
                detail={"split": split, "expired": sweep.expired_amount},
            )

        mutation, ids = await self._apply(holder, mutate)
        assert mutation is not None
        if mutation.error is not None:
            logger.info("Persisted carry-over expiry for %s before rejecting deduction", holder)
            raise mutation.error

        split = mutation.detail["split"]
        logger.info(
            "Deducted %s credits from %s (balance %s)",
            value,
            holder,
            split.new_balance,
            extra={
                "ledger": {
                    "holder": str(holder),
                    "type": transaction_type.value,
                    "carry_over": str(split.carry_over_deducted),
                    "base_plan": str(split.base_plan_deducted),
                    "bonus": str(split.bonus_deducted),
                }
            },
        )
        return DeductionResult(
            holder=holder,
            amount=value,
            balance_after=split.new_balance,
            carry_over_deducted=split.carry_over_deducted,
            base_plan_deducted=split.base_plan_deducted,
            bonus_deducted=split.bonus_deducted,
            expired_carry_over=mutation.detail["expired"],
            transaction_id=ids[-1] if ids else None,
        )

    async def add(
        self,
        holder: HolderRef,
        amount: Decimal | int | str,
        transaction_type: TransactionType = TransactionType.PURCHASE,
        description: str = "Credit grant",
        *,
        metadata: dict[str, Any] | None = None,
        bucket: GrantBucket = GrantBucket.BONUS,
        expires_at: datetime | None = None,
        actor_user_id: str | None = None,
    ) -> GrantResult:
        """Grant credits.

        By default the credit lands in the derived bonus bucket.  Pass
        ``bucket=GrantBucket.BASE_PLAN`` or ``GrantBucket.CARRY_OVER`` (with
        *expires_at*) to raise that bucket as well.

        Raises
        ------
        InvalidAmountError
            If *amount* is negative, or a carry-over grant has no expiry.
        AccountNotFoundError
            If the holder does not exist.
        """
        value = validate_amount(Decimal(amount))
        if value == ZERO:
            snapshot = await self.get_balance(holder)
            return GrantResult(holder=holder, amount=ZERO, balance_after=snapshot.balance)

        def mutate(snapshot: BalanceSnapshot, now: datetime) -> _Mutation:
            sweep = sweep_expired_carry_over(snapshot, now)
            entries = [_expiry_entry(sweep, now)] if sweep.expired else []
            updated = apply_grant(sweep.snapshot, value, bucket, expires_at)
            entries.append(
                _Entry(
                    amount=value,
                    balance_after=updated.balance,
                    transaction_type=transaction_type,
                    description=description,
                    metadata=build_metadata(
                        {
                            MetadataKey.TARGET_TYPE.value: holder.kind.value,
                            MetadataKey.BUCKET.value: bucket.value,
                        },
                        metadata,
                    ),
                    actor_user_id=actor_user_id,
                )
            )
            return _Mutation(snapshot=updated, entries=entries)

        mutation, ids = await self._apply(holder, mutate)
        assert mutation is not None
        logger.info("Granted %s credits to %s (%s)", value, holder, transaction_type.value)
        return GrantResult(
            holder=holder,
            amount=value,
            balance_after=mutation.snapshot.balance,
            transaction_id=ids[-1],
        )

    async def sweep_expired(self, holder: HolderRef) -> Decimal:
        """Persist carry-over expiry on its own.  Returns the expired amount."""

        def mutate(snapshot: BalanceSnapshot, now: datetime) -> _Mutation | None:
            sweep = sweep_expired_carry_over(snapshot, now)
            if not sweep.applied:
                return None
            entries = [_expiry_entry(sweep, now)] if sweep.expired else []
            return _Mutation(snapshot=sweep.snapshot, entries=entries, detail={"expired": sweep.expired_amount})

        mutation, _ids = await self._apply(holder, mutate)
        if mutation is None:
            return ZERO
        expired: Decimal = mutation.detail["expired"]
        if expired > ZERO:
            logger.info("Expired %s carry-over credits for %s", expired, holder)
        return expired

    async def allocate_plan_cycle(
        self,
        holder: HolderRef,
        plan_credits: Decimal | int,
        period_end: datetime,
    ) -> GrantResult:
        """Start a new plan cycle.

        The unexpired balance becomes carry-over expiring at *period_end*,
        the base-plan bucket becomes *plan_credits* and the monthly usage
        counter resets.
        """
        result = await self._allocate(holder, validate_amount(Decimal(plan_credits)), period_end, False)
        assert result is not None
        return result

    async def allocate_monthly_credits(
        self,
        holder: HolderRef,
        *,
        now: datetime | None = None,
    ) -> GrantResult | None:
        """Allocate this month's tier credits if that has not happened yet.

        Returns ``None`` when the holder has already been allocated this
        calendar month, has no active paid membership, or its tier carries
        no monthly credits.
        """
        now = now or self._clock()
        snapshot = await self.get_balance(holder)
        tier = snapshot.membership_tier
        if tier not in _PAID_TIERS:
            return None
        if snapshot.membership_expires_at is not None and snapshot.membership_expires_at <= now:
            return None
        credits = self._settings.monthly_credits_for(tier.value)
        if credits <= 0:
            return None
        if not needs_monthly_allocation(snapshot.last_credit_reset, now):
            return None
        _start, period_end = month_window(now)
        return await self._allocate(holder, Decimal(credits), period_end, True, at=now)

    async def _allocate(
        self,
        holder: HolderRef,
        plan_credits: Decimal,
        period_end: datetime,
        only_if_new_month: bool,
        at: datetime | None = None,
    ) -> GrantResult | None:
        def mutate(snapshot: BalanceSnapshot, now: datetime) -> _Mutation | None:
            now = at or now
            # Re-checked on the fresh snapshot so two racing allocators grant once.
            if only_if_new_month and not needs_monthly_allocation(snapshot.last_credit_reset, now):
                return None
            sweep = sweep_expired_carry_over(snapshot, now)
            entries = [_expiry_entry(sweep, now)] if sweep.expired else []
            allocated, carried = allocate_cycle(sweep.snapshot, plan_credits, period_end, now)
            entries.append(
                _Entry(
                    amount=plan_credits,
                    balance_after=allocated.balance,
                    transaction_type=TransactionType.MONTHLY_ALLOCATION,
                    description=f"Plan allocation of {plan_credits} credits",
                    metadata=build_metadata(
                        {
                            MetadataKey.TARGET_TYPE.value: holder.kind.value,
                            MetadataKey.BUCKET.value: GrantBucket.BASE_PLAN.value,
                            MetadataKey.PLAN_CREDITS.value: plan_credits,
                            MetadataKey.CARRY_OVER_AMOUNT.value: carried,
                        }
                    ),
                )
            )
            return _Mutation(snapshot=allocated, entries=entries, detail={"carried": carried})

        mutation, ids = await self._apply(holder, mutate)
        if mutation is None:
            return None
        carried: Decimal = mutation.detail["carried"]
        logger.info(
            "Allocated %s plan credits to %s (carry-over %s until %s)",
            plan_credits,
            holder,
            carried,
            period_end.isoformat(),
        )
        return GrantResult(
            holder=holder,
            amount=plan_credits,
            balance_after=mutation.snapshot.balance,
            transaction_id=ids[-1],
            carry_over=carried,
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_balance(self, holder: HolderRef) -> BalanceSnapshot:
        """Current balance with any due carry-over expiry applied in memory.

        Raises
        ------
        AccountNotFoundError
            If the holder does not exist.
        """
        async with self._session_factory() as session:
            snapshot = await CreditHolderRepository(session).get_snapshot(holder)
        if snapshot is None:
            raise AccountNotFoundError(holder)
        return sweep_expired_carry_over(snapshot, self._clock()).snapshot

    async def can_afford(self, holder: HolderRef, amount: Decimal | int | str) -> AffordabilityCheck:
        """Advisory feasibility check; ``deduct`` re-checks atomically."""
        value = validate_amount(Decimal(amount))
        try:
            snapshot = await self.get_balance(holder)
        except AccountNotFoundError:
            return AffordabilityCheck(can_afford=False, reason="account not found")
        return check_affordability(snapshot.balance, value, self.minimum_reserve)

    async def list_transactions(self, holder: HolderRef, limit: int = 50) -> list[TransactionRecord]:
        async with self._session_factory() as session:
            return await CreditTransactionRepository(session).list_for_holder(holder, limit=limit)
