"""Automatic top-up of low credit balances.

Each cycle walks the enabled configurations and, for every holder whose
live balance is under its threshold, charges the saved payment method and
then grants the purchased credits::

    idle -> eligible -> charging -> granting -> idle
                            |           |
                          failed    requires_review

A charge that succeeds followed by a grant that fails is not an ordinary
failure: money has moved without credit.  It leaves the monthly and failure
counters alone, writes a zero-amount audit row flagged for manual
intervention, logs at CRITICAL and holds the configuration for review:
no further charge is attempted until an operator clears the hold with
:meth:`AutoReplenishController.clear_review` or re-enables auto top-up.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.config import Settings
from credit_engine.errors import AccountNotFoundError, GrantAfterChargeError, InvalidAmountError
from credit_engine.ledger.allocation import month_window, period_key
from credit_engine.ledger.models import HolderKind, HolderRef, MetadataKey, TransactionType, build_metadata
from credit_engine.ledger.service import CreditLedger
from credit_engine.services.payments import ChargeResult, PaymentGateway
from credit_engine.state.database import get_session
from credit_engine.state.repository import (
    AutoReplenishRepository,
    CreditHolderRepository,
    CreditTransactionRepository,
)
from credit_engine.state.tables import AutoReplenishConfigTable

logger = logging.getLogger(__name__)


class ReplenishState(str, Enum):
    IDLE = "idle"
    ELIGIBLE = "eligible"
    CHARGING = "charging"
    GRANTING = "granting"
    FAILED = "failed"
    SKIPPED = "skipped"
    REQUIRES_REVIEW = "requires_review"


class ReplenishOutcome(BaseModel):
    """Result of one holder's top-up attempt."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    holder: HolderRef
    state: ReplenishState
    success: bool = False
    skip_reason: str | None = None
    payment_reference: str | None = None
    credits_granted: int = 0
    error: str | None = None
    grant_error: GrantAfterChargeError | None = None


class ReplenishRunResult(BaseModel):
    counters_reset: int = 0
    checked: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    requires_review: int = 0
    outcomes: list[ReplenishOutcome] = Field(default_factory=list)


class AutoReplenishStatus(BaseModel):
    """User-facing view of a holder's auto top-up configuration."""

    enabled: bool
    threshold_credits: int
    top_up_credits: int
    payment_method_ref: str | None
    max_monthly_top_ups: int
    top_ups_this_month: int
    remaining_top_ups: int
    last_top_up_at: datetime | None
    last_top_up_amount: int | None
    last_top_up_error: str | None
    consecutive_failures: int
    disabled_due_to_failures: bool
    pending_review_reference: str | None = None


class AutoReplenishController:
    """Drives the charge-then-grant cycle.

    Parameters
    ----------
    session_factory:
        Factory for configuration and audit sessions.
    ledger:
        Ledger used for live balances and for granting credits.
    gateway:
        Payment provider seam.
    settings:
        Limits, defaults, pricing and the external call timeout.
    clock:
        Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        gateway: PaymentGateway,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._gateway = gateway
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def max_consecutive_failures(self) -> int:
        return self._settings.max_consecutive_failures

    def _status(self, row: AutoReplenishConfigTable) -> AutoReplenishStatus:
        return AutoReplenishStatus(
            enabled=row.enabled,
            threshold_credits=row.threshold_credits,
            top_up_credits=row.top_up_credits,
            payment_method_ref=row.payment_method_ref,
            max_monthly_top_ups=row.max_monthly_top_ups,
            top_ups_this_month=row.top_ups_this_month,
            remaining_top_ups=max(0, row.max_monthly_top_ups - row.top_ups_this_month),
            last_top_up_at=row.last_top_up_at,
            last_top_up_amount=row.last_top_up_amount,
            last_top_up_error=row.last_top_up_error,
            consecutive_failures=row.consecutive_failures,
            disabled_due_to_failures=row.consecutive_failures >= self.max_consecutive_failures,
            pending_review_reference=row.pending_review_reference,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def configure(
        self,
        holder: HolderRef,
        *,
        enabled: bool,
        threshold_credits: int | None = None,
        top_up_credits: int | None = None,
        payment_method_ref: str | None = None,
        max_monthly_top_ups: int | None = None,
    ) -> AutoReplenishStatus:
        """Create or update the holder's configuration.

        Enabling clears the failure counter, the last error and any review
        hold, which is the only way back after the failure cap was hit.

        Raises
        ------
        InvalidAmountError
            If *top_up_credits* is under the minimum purchase, or
            *threshold_credits* / *max_monthly_top_ups* is negative.
        AccountNotFoundError
            If the holder does not exist.
        """
        if top_up_credits is not None and top_up_credits < self._settings.min_top_up_credits:
            raise InvalidAmountError(
                Decimal(top_up_credits),
                f"Minimum top-up amount is {self._settings.min_top_up_credits} credits",
            )
        if threshold_credits is not None and threshold_credits < 0:
            raise InvalidAmountError(Decimal(threshold_credits), "Threshold must be non-negative")
        if max_monthly_top_ups is not None and max_monthly_top_ups < 0:
            raise InvalidAmountError(Decimal(max_monthly_top_ups), "Monthly top-up limit must be non-negative")

        async with get_session(self._session_factory) as session:
            if await CreditHolderRepository(session).get_snapshot(holder) is None:
                raise AccountNotFoundError(holder)
            repo = AutoReplenishRepository(session)
            existing = await repo.get(holder)

            fields: dict[str, object] = {"enabled": enabled}
            if existing is None:
                fields.update(
                    threshold_credits=self._settings.default_threshold_credits,
                    top_up_credits=self._settings.default_top_up_credits,
                    max_monthly_top_ups=self._settings.default_max_monthly_top_ups,
                    top_ups_this_month=0,
                    consecutive_failures=0,
                )
            if threshold_credits is not None:
                fields["threshold_credits"] = threshold_credits
            if top_up_credits is not None:
                fields["top_up_credits"] = top_up_credits
            if payment_method_ref is not None:
                fields["payment_method_ref"] = payment_method_ref
            if max_monthly_top_ups is not None:
                fields["max_monthly_top_ups"] = max_monthly_top_ups
            if enabled:
                fields.update(consecutive_failures=0, last_top_up_error=None)
                if existing is not None and existing.pending_review_reference:
                    fields.update(pending_review_reference=None, reviews_cleared=existing.reviews_cleared + 1)

            row = await repo.save(holder, **fields)
            status = self._status(row)

        logger.info("Configured auto top-up for %s: enabled=%s", holder, enabled)
        return status

    async def disable(self, holder: HolderRef) -> AutoReplenishStatus | None:
        """Turn auto top-up off.  Returns ``None`` if it was never configured."""
        async with get_session(self._session_factory) as session:
            repo = AutoReplenishRepository(session)
            if await repo.get(holder) is None:
                return None
            row = await repo.save(holder, enabled=False)
            status = self._status(row)
        logger.info("Disabled auto top-up for %s", holder)
        return status

    async def clear_review(self, holder: HolderRef) -> AutoReplenishStatus | None:
        """Lift the review hold once the stranded payment has been settled.

        The monthly and failure counters are left as they are; the next
        charge uses a fresh idempotency key.  Returns ``None`` if auto top-up was
        never configured.
        """
        async with get_session(self._session_factory) as session:
            repo = AutoReplenishRepository(session)
            row = await repo.get(holder)
            if row is None:
                return None
            reference = row.pending_review_reference
            if reference is not None:
                row = await repo.save(holder, pending_review_reference=None, reviews_cleared=row.reviews_cleared + 1)
            status = self._status(row)
        logger.info("Cleared auto top-up review hold for %s (%s)", holder, reference)
        return status

    async def get_config(self, holder: HolderRef) -> AutoReplenishStatus | None:
        async with self._session_factory() as session:
            row = await AutoReplenishRepository(session).get(holder)
            return None if row is None else self._status(row)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def reset_monthly_counters(self) -> int:
        """Zero ``top_ups_this_month`` on configs not yet reset this month."""
        now = self._clock()
        first_of_month, _end = month_window(now)
        async with get_session(self._session_factory) as session:
            count = await AutoReplenishRepository(session).reset_monthly_counters(first_of_month, now)
        if count:
            logger.info("Reset monthly auto top-up counters for %d config(s)", count)
        return count

    async def run_cycle(self) -> ReplenishRunResult:
        """Reset monthly counters, then process every eligible holder."""
        result = ReplenishRunResult(counters_reset=await self.reset_monthly_counters())

        async with self._session_factory() as session:
            configs = await AutoReplenishRepository(session).list_eligible(self.max_consecutive_failures)
            holders = [HolderRef(kind=HolderKind(c.holder_kind), id=c.holder_id) for c in configs]

        for holder in holders:
            result.checked += 1
            try:
                outcome = await self.process_holder(holder)
            except Exception as exc:
                logger.error("Auto top-up failed unexpectedly for %s: %s", holder, exc, exc_info=True)
                outcome = ReplenishOutcome(holder=holder, state=ReplenishState.FAILED, error=str(exc))
            result.outcomes.append(outcome)
            if outcome.state is ReplenishState.IDLE and outcome.success:
                result.succeeded += 1
            elif outcome.state is ReplenishState.SKIPPED:
                result.skipped += 1
            elif outcome.state is ReplenishState.REQUIRES_REVIEW:
                result.requires_review += 1
            else:
                result.failed += 1

        logger.info(
            "Auto top-up cycle: checked=%d succeeded=%d skipped=%d failed=%d review=%d",
            result.checked,
            result.succeeded,
            result.skipped,
            result.failed,
            result.requires_review,
        )
        return result

    def _skip(self, holder: HolderRef, reason: str) -> ReplenishOutcome:
        logger.debug("Auto top-up skipped for %s: %s", holder, reason)
        return ReplenishOutcome(holder=holder, state=ReplenishState.SKIPPED, skip_reason=reason)

    async def process_holder(self, holder: HolderRef) -> ReplenishOutcome:
        """Run one charge-then-grant attempt for *holder* if it needs one."""
        async with self._session_factory() as session:
            config = await AutoReplenishRepository(session).get(holder)

        if config is None:
            return self._skip(holder, "Auto top-up not configured")
        if not config.enabled:
            return self._skip(holder, "Auto top-up disabled")
        if config.pending_review_reference:
            return self._skip(holder, f"Awaiting review of payment {config.pending_review_reference}")
        if not config.payment_method_ref:
            return self._skip(holder, "No payment method configured")
        if config.top_ups_this_month >= config.max_monthly_top_ups:
            return self._skip(
                holder, f"Monthly limit reached ({config.top_ups_this_month}/{config.max_monthly_top_ups})"
            )
        if config.consecutive_failures >= self.max_consecutive_failures:
            return self._skip(holder, f"Too many consecutive failures ({config.consecutive_failures})")

        try:
            snapshot = await self._ledger.get_balance(holder)
        except AccountNotFoundError:
            return self._skip(holder, "Credit holder not found")
        if not snapshot.stripe_customer_id:
            return self._skip(holder, "No payment customer")
        if snapshot.balance >= config.threshold_credits:
            return self._skip(holder, f"Balance ({snapshot.balance}) above threshold ({config.threshold_credits})")

        # eligible -> charging
        credits = config.top_up_credits
        amount_cents = credits * self._settings.cents_per_credit
        now = self._clock()
        # One key per holder, month, top-up slot and attempt: a retried call for
        # the same attempt cannot charge twice, a later attempt can charge again.
        # A lifted review hold starts a new attempt.
        idempotency_key = (
            f"auto-top-up-{holder.kind.value}-{holder.id}-{period_key(now)}-"
            f"{config.top_ups_this_month + 1}-{config.consecutive_failures}"
        )
        if config.reviews_cleared:
            idempotency_key += f"-r{config.reviews_cleared}"
        logger.info(
            "Processing auto top-up for %s: balance=%s threshold=%d credits=%d",
            holder,
            snapshot.balance,
            config.threshold_credits,
            credits,
        )

        timeout = self._settings.external_call_timeout_seconds
        try:
            charge = await asyncio.wait_for(
                self._gateway.charge(
                    snapshot.stripe_customer_id,
                    config.payment_method_ref,
                    amount_cents,
                    idempotency_key=idempotency_key,
                    description=f"Auto Top-Up: {credits} credits",
                    metadata={
                        "holder_type": holder.kind.value,
                        "holder_id": holder.id,
                        "type": "auto_top_up",
                        "credits": str(credits),
                    },
                ),
                timeout=timeout,
            )
        except TimeoutError:
            return await self._charge_failed(holder, f"Payment timed out after {timeout}s")
        except Exception as exc:
            logger.warning("Auto top-up charge raised for %s: %s", holder, exc, exc_info=True)
            return await self._charge_failed(holder, f"Payment failed: {exc}")

        if not charge.succeeded:
            return await self._charge_failed(holder, f"Payment status: {charge.status}", charge.reference)

        # charging -> granting
        try:
            grant_id = await asyncio.wait_for(
                self._gateway.grant_credits(
                    snapshot.stripe_customer_id,
                    credits,
                    reference=charge.reference,
                    metadata={"holder_type": holder.kind.value, "holder_id": holder.id, "auto_top_up": "true"},
                ),
                timeout=timeout,
            )
            await self._ledger.add(
                holder,
                credits,
                TransactionType.TOP_UP,
                f"Auto top-up: {credits} credits",
                metadata={
                    MetadataKey.PAYMENT_REFERENCE.value: charge.reference,
                    MetadataKey.CREDIT_GRANT_ID.value: grant_id,
                    MetadataKey.AUTO_TOP_UP.value: True,
                },
            )
        except Exception as exc:
            cause = f"timed out after {timeout}s" if isinstance(exc, TimeoutError) else str(exc)
            return await self._grant_failed(holder, charge, credits, cause)

        # granting -> idle
        async with get_session(self._session_factory) as session:
            await AutoReplenishRepository(session).record_success(holder, credits, self._clock())
        logger.info("Auto top-up succeeded for %s: %d credits (%s)", holder, credits, charge.reference)
        return ReplenishOutcome(
            holder=holder,
            state=ReplenishState.IDLE,
            success=True,
            payment_reference=charge.reference,
            credits_granted=credits,
        )

    async def _charge_failed(
        self,
        holder: HolderRef,
        error: str,
        payment_reference: str | None = None,
    ) -> ReplenishOutcome:
        async with get_session(self._session_factory) as session:
            await AutoReplenishRepository(session).record_failure(holder, error)
        logger.warning("Auto top-up charge failed for %s: %s", holder, error)
        return ReplenishOutcome(
            holder=holder,
            state=ReplenishState.FAILED,
            payment_reference=payment_reference,
            error=error,
        )

    async def _grant_failed(
        self,
        holder: HolderRef,
        charge: ChargeResult,
        credits: int,
        cause: str,
    ) -> ReplenishOutcome:
        grant_error = GrantAfterChargeError(holder, charge.reference, credits, cause)
        logger.critical(
            "Auto top-up payment succeeded but credit grant failed for %s; manual intervention required",
            holder,
            extra={
                "ledger": {
                    "holder": str(holder),
                    "payment_reference": charge.reference,
                    "credits": credits,
                    "error": cause,
                }
            },
        )
        async with get_session(self._session_factory) as session:
            await AutoReplenishRepository(session).hold_for_review(holder, charge.reference, str(grant_error))
            snapshot = await CreditHolderRepository(session).get_snapshot(holder)
            await CreditTransactionRepository(session).append(
                holder,
                Decimal("0"),
                snapshot.balance if snapshot is not None else Decimal("0"),
                TransactionType.PURCHASE,
                "FAILED Auto top-up: Payment succeeded but credit grant failed",
                build_metadata(
                    {
                        MetadataKey.PAYMENT_REFERENCE.value: charge.reference,
                        MetadataKey.INTENDED_CREDITS.value: credits,
                        MetadataKey.ERROR.value: cause,
                        MetadataKey.REQUIRES_MANUAL_INTERVENTION.value: True,
                        MetadataKey.AUTO_TOP_UP.value: True,
                    }
                ),
            )
        return ReplenishOutcome(
            holder=holder,
            state=ReplenishState.REQUIRES_REVIEW,
            payment_reference=charge.reference,
            error=str(grant_error),
            grant_error=grant_error,
        )
