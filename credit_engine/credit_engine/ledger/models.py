"""Value types shared by the ledger, the usage pipeline and the services.

Credit amounts are ``Decimal`` throughout.  A credit holder is addressed by
:class:`HolderRef`; whether it is a user or a workspace only matters to the
repository that maps it onto a table.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Stored on every transaction row next to ``metadata_json``.  Bump when the
# set or meaning of the ledger-computed keys below changes.
METADATA_SCHEMA_VERSION = 1

ZERO = Decimal("0")


class HolderKind(str, Enum):
    """The two credit holder variants."""

    USER = "user"
    WORKSPACE = "workspace"


class MembershipTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class TransactionType(str, Enum):
    """Reason recorded on every ledger row."""

    PURCHASE = "PURCHASE"
    MONTHLY_ALLOCATION = "MONTHLY_ALLOCATION"
    USAGE_DEDUCTION = "USAGE_DEDUCTION"
    AI_GENERATION = "AI_GENERATION"
    SANDBOX_USAGE = "SANDBOX_USAGE"
    DEPLOYMENT = "DEPLOYMENT"
    TEAM_COLLABORATION = "TEAM_COLLABORATION"
    BONUS = "BONUS"
    FIRST_DEPLOYMENT_BONUS = "FIRST_DEPLOYMENT_BONUS"
    TOP_UP = "TOP_UP"
    REFUND = "REFUND"
    CARRY_OVER_EXPIRY = "CARRY_OVER_EXPIRY"


class GrantBucket(str, Enum):
    """Where granted credit lands.

    ``BONUS`` leaves the stored buckets alone, so the credit shows up in the
    derived bonus amount.
    """

    BONUS = "bonus"
    BASE_PLAN = "base_plan"
    CARRY_OVER = "carry_over"


class MetadataKey(str, Enum):
    """Ledger-computed metadata keys.

    Caller-supplied metadata is merged into the row but can never overwrite
    one of these.

    Deductions
        ``carry_over_deducted``, ``base_plan_deducted``, ``bonus_deducted``,
        ``new_carry_over``, ``new_base_plan``, ``new_bonus``,
        ``expired_carry_over``.
    Grants
        ``target_type``, ``bucket``.
    Auto top-up
        ``payment_reference``, ``credit_grant_id``, ``auto_top_up``,
        ``intended_credits``, ``requires_manual_intervention``, ``error``.
    Expiry / allocation
        ``expired_amount``, ``expired_at``, ``carry_over_amount``,
        ``plan_credits``.
    """

    CARRY_OVER_DEDUCTED = "carry_over_deducted"
    BASE_PLAN_DEDUCTED = "base_plan_deducted"
    BONUS_DEDUCTED = "bonus_deducted"
    NEW_CARRY_OVER = "new_carry_over"
    NEW_BASE_PLAN = "new_base_plan"
    NEW_BONUS = "new_bonus"
    EXPIRED_CARRY_OVER = "expired_carry_over"
    TARGET_TYPE = "target_type"
    BUCKET = "bucket"
    PAYMENT_REFERENCE = "payment_reference"
    CREDIT_GRANT_ID = "credit_grant_id"
    AUTO_TOP_UP = "auto_top_up"
    INTENDED_CREDITS = "intended_credits"
    REQUIRES_MANUAL_INTERVENTION = "requires_manual_intervention"
    ERROR = "error"
    EXPIRED_AMOUNT = "expired_amount"
    EXPIRED_AT = "expired_at"
    CARRY_OVER_AMOUNT = "carry_over_amount"
    PLAN_CREDITS = "plan_credits"


def build_metadata(computed: dict[str, Any], extra: dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge caller metadata under ledger-computed keys.

    ``Decimal`` values are rendered as strings so the map is JSON-safe and
    keeps full precision.
    """
    merged: dict[str, Any] = dict(extra or {})
    merged.update(computed)
    return {key: str(value) if isinstance(value, Decimal) else value for key, value in merged.items()}


class HolderRef(BaseModel):
    """Address of a credit holder."""

    model_config = ConfigDict(frozen=True)

    kind: HolderKind
    id: str

    @classmethod
    def user(cls, user_id: str) -> HolderRef:
        return cls(kind=HolderKind.USER, id=user_id)

    @classmethod
    def workspace(cls, workspace_id: str) -> HolderRef:
        return cls(kind=HolderKind.WORKSPACE, id=workspace_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class BalanceSnapshot(BaseModel):
    """Point-in-time view of a holder's balance and buckets.

    Attributes
    ----------
    holder:
        Which holder this snapshot belongs to.
    balance:
        Total spendable credit.
    carry_over:
        Part of ``balance`` that expires at ``carry_over_expires_at``.
    base_plan:
        Part of ``balance`` granted by the current subscription tier.
    version:
        Row version the snapshot was read at.  A write based on this
        snapshot only succeeds while the stored version still matches.
    """

    model_config = ConfigDict(frozen=True)

    holder: HolderRef
    balance: Decimal
    carry_over: Decimal = ZERO
    carry_over_expires_at: datetime | None = None
    base_plan: Decimal = ZERO
    lifetime_used: Decimal = ZERO
    monthly_used: Decimal = ZERO
    last_credit_reset: datetime | None = None
    membership_tier: MembershipTier = MembershipTier.FREE
    membership_expires_at: datetime | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    version: int = 0

    @property
    def bonus(self) -> Decimal:
        """Credit not covered by the carry-over and base-plan buckets."""
        return max(ZERO, self.balance - self.carry_over - self.base_plan)


class SweepOutcome(BaseModel):
    """Result of applying carry-over expiry to a snapshot."""

    model_config = ConfigDict(frozen=True)

    snapshot: BalanceSnapshot
    expired_amount: Decimal = ZERO
    # Set once the expiry timestamp was reached, even with nothing left to expire.
    applied: bool = False

    @property
    def expired(self) -> bool:
        return self.expired_amount > ZERO


class AffordabilityCheck(BaseModel):
    """Outcome of the feasibility test shared by ``can_afford`` and ``deduct``."""

    can_afford: bool
    reason: str | None = None
    current_balance: Decimal = ZERO
    balance_after_operation: Decimal | None = None


class BucketDeduction(BaseModel):
    """Per-bucket split of one deduction and the resulting bucket values."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    carry_over_deducted: Decimal = ZERO
    base_plan_deducted: Decimal = ZERO
    bonus_deducted: Decimal = ZERO
    new_balance: Decimal
    new_carry_over: Decimal
    new_base_plan: Decimal

    @property
    def new_bonus(self) -> Decimal:
        return max(ZERO, self.new_balance - self.new_carry_over - self.new_base_plan)


class DeductionResult(BaseModel):
    """Returned by a successful (or zero-amount) deduction."""

    holder: HolderRef
    amount: Decimal
    balance_after: Decimal
    carry_over_deducted: Decimal = ZERO
    base_plan_deducted: Decimal = ZERO
    bonus_deducted: Decimal = ZERO
    expired_carry_over: Decimal = ZERO
    transaction_id: int | None = None


class GrantResult(BaseModel):
    """Returned by ``add`` and the allocation operations."""

    holder: HolderRef
    amount: Decimal
    balance_after: Decimal
    transaction_id: int | None = None
    carry_over: Decimal = ZERO


class TransactionRecord(BaseModel):
    """Read model for one ledger row."""

    id: int
    holder: HolderRef
    amount: Decimal
    balance_after: Decimal
    transaction_type: TransactionType
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    metadata_version: int = METADATA_SCHEMA_VERSION
    actor_user_id: str | None = None
    created_at: datetime
