"""Credit balances, buckets and the append-only transaction ledger.

:class:`credit_engine.ledger.service.CreditLedger` performs the atomic
operations; the models below are what callers pass in and get back.
"""

from credit_engine.ledger.models import (
    BalanceSnapshot,
    DeductionResult,
    GrantBucket,
    GrantResult,
    HolderKind,
    HolderRef,
    TransactionType,
)

__all__ = [
    "BalanceSnapshot",
    "DeductionResult",
    "GrantBucket",
    "GrantResult",
    "HolderKind",
    "HolderRef",
    "TransactionType",
]
