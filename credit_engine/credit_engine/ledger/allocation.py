"""Pure balance arithmetic for the credit ledger.

Nothing here touches the database.  The service reads a
:class:`~credit_engine.ledger.models.BalanceSnapshot`, runs it through these
functions and writes the result back with a version check, so the same
rules decide both the advisory ``can_afford`` answer and the real deduction.

Deductions consume buckets in a fixed order: carry-over first (it expires),
then base-plan (it renews monthly), then bonus.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from credit_engine.errors import InvalidAmountError
from credit_engine.ledger.models import (
    ZERO,
    AffordabilityCheck,
    BalanceSnapshot,
    BucketDeduction,
    GrantBucket,
    SweepOutcome,
)

REASON_INSUFFICIENT_BALANCE = "insufficient balance"
REASON_BELOW_RESERVE = "would breach minimum reserve"


def month_window(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the calendar month containing *now* (UTC)."""
    now = now.astimezone(UTC)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def period_key(now: datetime) -> str:
    """``YYYY-MM`` label of the calendar month containing *now*."""
    return now.astimezone(UTC).strftime("%Y-%m")


def validate_amount(amount: Decimal) -> Decimal:
    """Coerce *amount* to ``Decimal`` and reject negatives and non-finite values."""
    value = Decimal(amount)
    if not value.is_finite() or value < ZERO:
        raise InvalidAmountError(value)
    return value


def sweep_expired_carry_over(snapshot: BalanceSnapshot, now: datetime) -> SweepOutcome:
    """Drop carry-over credit whose expiry is at or before *now*.

    The expired amount leaves the balance too.  A snapshot without an expiry
    timestamp, or with nothing carried over, comes back unchanged.
    """
    expires_at = snapshot.carry_over_expires_at
    if expires_at is None or expires_at > now:
        return SweepOutcome(snapshot=snapshot)

    expired = min(snapshot.carry_over, snapshot.balance)
    swept = snapshot.model_copy(
        update={
            "balance": snapshot.balance - expired,
            "carry_over": ZERO,
            "carry_over_expires_at": None,
            "base_plan": min(snapshot.base_plan, snapshot.balance - expired),
        }
    )
    return SweepOutcome(snapshot=swept, expired_amount=expired, applied=True)


def check_affordability(
    balance: Decimal,
    amount: Decimal,
    minimum_reserve: Decimal,
) -> AffordabilityCheck:
    """Feasibility test used by both ``can_afford`` and ``deduct``.

    Parameters
    ----------
    balance:
        Spendable balance after any carry-over expiry.
    amount:
        Credits the operation would consume (non-negative).
    minimum_reserve:
        Floor the balance may not drop below after a deduction.
    """
    if amount == ZERO:
        return AffordabilityCheck(can_afford=True, current_balance=balance, balance_after_operation=balance)
    after = balance - amount
    if balance < amount:
        return AffordabilityCheck(
            can_afford=False,
            reason=REASON_INSUFFICIENT_BALANCE,
            current_balance=balance,
        )
    if after < minimum_reserve:
        return AffordabilityCheck(
            can_afford=False,
            reason=REASON_BELOW_RESERVE,
            current_balance=balance,
            balance_after_operation=after,
        )
    return AffordabilityCheck(can_afford=True, current_balance=balance, balance_after_operation=after)


def split_deduction(snapshot: BalanceSnapshot, amount: Decimal) -> BucketDeduction:
    """Split *amount* across carry-over, base-plan and bonus, in that order.

    The caller must have checked feasibility first; the split never produces
    a negative bucket.  Buckets are clamped to the new balance afterwards so
    the "bucket never exceeds balance" invariant holds even if the stored
    buckets had drifted.
    """
    remaining = amount

    from_carry = min(remaining, snapshot.carry_over)
    remaining -= from_carry
    from_base = min(remaining, snapshot.base_plan)
    remaining -= from_base
    from_bonus = min(remaining, snapshot.bonus)

    new_balance = snapshot.balance - amount
    return BucketDeduction(
        amount=amount,
        carry_over_deducted=from_carry,
        base_plan_deducted=from_base,
        bonus_deducted=from_bonus,
        new_balance=new_balance,
        new_carry_over=max(ZERO, min(snapshot.carry_over - from_carry, new_balance)),
        new_base_plan=max(ZERO, min(snapshot.base_plan - from_base, new_balance)),
    )


def apply_grant(
    snapshot: BalanceSnapshot,
    amount: Decimal,
    bucket: GrantBucket = GrantBucket.BONUS,
    expires_at: datetime | None = None,
) -> BalanceSnapshot:
    """Return *snapshot* with *amount* credited to the chosen bucket.

    Raises
    ------
    InvalidAmountError
        If a carry-over grant has no expiry.
    """
    update: dict[str, object] = {"balance": snapshot.balance + amount}
    if bucket is GrantBucket.BASE_PLAN:
        update["base_plan"] = snapshot.base_plan + amount
    elif bucket is GrantBucket.CARRY_OVER:
        if expires_at is None:
            raise InvalidAmountError(amount, "Carry-over grants need an expiry")
        update["carry_over"] = snapshot.carry_over + amount
        update["carry_over_expires_at"] = expires_at
    return snapshot.model_copy(update=update)


def allocate_cycle(
    snapshot: BalanceSnapshot,
    plan_credits: Decimal,
    period_end: datetime,
    now: datetime,
) -> tuple[BalanceSnapshot, Decimal]:
    """Start a new plan cycle on an already-swept snapshot.

    Whatever balance is left becomes carry-over expiring at *period_end*,
    the base-plan bucket is replaced by *plan_credits* and the monthly usage
    counter restarts.

    Returns
    -------
    tuple
        The new snapshot and the carry-over amount.
    """
    leftover = snapshot.balance
    allocated = snapshot.model_copy(
        update={
            "balance": leftover + plan_credits,
            "carry_over": leftover,
            "carry_over_expires_at": period_end if leftover > ZERO else None,
            "base_plan": plan_credits,
            "monthly_used": ZERO,
            "last_credit_reset": now,
        }
    )
    return allocated, leftover


def needs_monthly_allocation(last_credit_reset: datetime | None, now: datetime) -> bool:
    """True when no allocation has happened yet in *now*'s calendar month."""
    if last_credit_reset is None:
        return True
    return period_key(last_credit_reset) != period_key(now)
