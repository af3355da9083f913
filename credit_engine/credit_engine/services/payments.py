"""Payment gateway used by auto-replenishment.

:class:`PaymentGateway` is the seam the controller depends on;
:class:`StripePaymentGateway` implements it with off-session PaymentIntents
and Billing Credit Grants.  The Stripe SDK is synchronous, so calls run in
a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from pydantic import BaseModel

from credit_engine.config import Settings

logger = logging.getLogger(__name__)

CHARGE_SUCCEEDED = "succeeded"


class ChargeResult(BaseModel):
    """Outcome of a charge attempt that reached the provider."""

    reference: str
    status: str
    amount_cents: int

    @property
    def succeeded(self) -> bool:
        return self.status == CHARGE_SUCCEEDED


class PaymentGateway(Protocol):
    async def charge(
        self,
        customer_id: str,
        payment_method_ref: str,
        amount_cents: int,
        *,
        idempotency_key: str,
        description: str,
        metadata: dict[str, str],
    ) -> ChargeResult: ...

    async def grant_credits(
        self,
        customer_id: str,
        credits: int,
        *,
        reference: str,
        metadata: dict[str, str],
    ) -> str: ...


class StripePaymentGateway:
    """Charges saved payment methods and records credit grants in Stripe.

    Parameters
    ----------
    settings:
        Supplies the Stripe secret key, currency and cents per credit.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def charge(
        self,
        customer_id: str,
        payment_method_ref: str,
        amount_cents: int,
        *,
        idempotency_key: str,
        description: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        stripe = self._get_stripe()
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self._settings.currency,
            customer=customer_id,
            payment_method=payment_method_ref,
            confirm=True,
            off_session=True,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info("PaymentIntent %s for customer %s: %s", intent["id"], customer_id, intent["status"])
        return ChargeResult(reference=intent["id"], status=intent["status"], amount_cents=amount_cents)

    async def grant_credits(
        self,
        customer_id: str,
        credits: int,
        *,
        reference: str,
        metadata: dict[str, str],
    ) -> str:
        stripe = self._get_stripe()
        grant = await asyncio.to_thread(
            stripe.billing.CreditGrant.create,
            customer=customer_id,
            name=f"Auto Top-Up - {credits} credits",
            category="paid",
            applicability_config={"scope": {"price_type": "metered"}},
            amount={
                "type": "monetary",
                "monetary": {
                    "value": credits * self._settings.cents_per_credit,
                    "currency": self._settings.currency,
                },
            },
            metadata={"credits": str(credits), "payment_reference": reference, **metadata},
            idempotency_key=f"grant-{reference}",
        )
        logger.info("Credit grant %s created for customer %s (%d credits)", grant["id"], customer_id, credits)
        return str(grant["id"])
