"""Exception taxonomy for the credit ledger.

Every error a caller may need to branch on derives from :class:`LedgerError`
and exposes ``to_dict()`` with the fields that are safe to show a user.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from credit_engine.ledger.models import HolderRef


class LedgerError(Exception):
    """Base class for credit ledger failures."""

    code = "ledger_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class InsufficientFundsError(LedgerError):
    """Raised when a deduction would overdraw the balance or breach the reserve."""

    code = "insufficient_funds"

    def __init__(
        self,
        holder: HolderRef,
        current_balance: Decimal,
        required_amount: Decimal,
        minimum_reserve: Decimal,
        reason: str,
    ) -> None:
        self.holder = holder
        self.current_balance = current_balance
        self.required_amount = required_amount
        self.minimum_reserve = minimum_reserve
        self.reason = reason
        super().__init__(
            f"Insufficient credits for {holder}: {reason} "
            f"(balance {current_balance}, required {required_amount}, reserve {minimum_reserve})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "reason": self.reason,
            "current_balance": str(self.current_balance),
            "required_amount": str(self.required_amount),
            "minimum_reserve": str(self.minimum_reserve),
        }


class InvalidAmountError(LedgerError):
    """Raised for negative (or otherwise unusable) credit amounts."""

    code = "invalid_amount"

    def __init__(self, amount: Decimal, message: str = "Credit amount must not be negative") -> None:
        self.amount = amount
        super().__init__(f"{message}: {amount}")


class AccountNotFoundError(LedgerError):
    """Raised when the referenced user or workspace does not exist."""

    code = "account_not_found"

    def __init__(self, holder: HolderRef) -> None:
        self.holder = holder
        super().__init__(f"Credit holder not found: {holder}")


class ConcurrentModificationError(LedgerError):
    """Raised when a balance write keeps losing the version race."""

    code = "concurrent_modification"

    def __init__(self, holder: HolderRef, attempts: int) -> None:
        self.holder = holder
        self.attempts = attempts
        super().__init__(f"Balance of {holder} changed concurrently; gave up after {attempts} attempts")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": "Balance changed concurrently, retry the operation"}


class GrantAfterChargeError(LedgerError):
    """The payment succeeded but the credit was never granted.

    Money moved without credit moving; this always needs an operator.
    """

    code = "grant_after_charge_failed"

    def __init__(
        self,
        holder: HolderRef,
        payment_reference: str,
        intended_credits: int,
        cause: str,
    ) -> None:
        self.holder = holder
        self.payment_reference = payment_reference
        self.intended_credits = intended_credits
        self.cause = cause
        super().__init__(
            f"Payment succeeded ({payment_reference}) but credit grant failed for {holder}: {cause}. "
            "Manual intervention required."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": "Payment was taken but credits were not added; support has been notified",
            "payment_reference": self.payment_reference,
        }


class ExternalServiceError(LedgerError):
    """A payment or metering provider call failed or timed out."""

    code = "external_service_error"

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": "An upstream service is unavailable"}
