"""State persistence layer using PostgreSQL or SQLite."""

from credit_engine.state.database import get_engine, get_session, get_session_factory
from credit_engine.state.repository import (
    AutoReplenishRepository,
    CreditHolderRepository,
    CreditTransactionRepository,
    OwnershipRepository,
    UsageRepository,
    UsageSyncReportRepository,
)

__all__ = [
    "AutoReplenishRepository",
    "CreditHolderRepository",
    "CreditTransactionRepository",
    "OwnershipRepository",
    "UsageRepository",
    "UsageSyncReportRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
