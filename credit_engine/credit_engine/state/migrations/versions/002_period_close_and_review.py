"""Closed-period usage totals and the auto top-up review hold.

Adds ``usage_periods.closed_usage_credits``, which receives a deployment's
counters when its month ends, and
``auto_replenish_configs.pending_review_reference``, set when a charge went
through but the credit grant did not.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "usage_periods",
        sa.Column("closed_usage_credits", sa.Numeric(28, 12), nullable=False, server_default="0"),
    )
    op.create_index("ix_usage_periods_status", "usage_periods", ["status", "period_start"])
    op.add_column(
        "auto_replenish_configs",
        sa.Column("pending_review_reference", sa.String(128), nullable=True),
    )
    op.add_column(
        "auto_replenish_configs",
        sa.Column("reviews_cleared", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_column("auto_replenish_configs", "reviews_cleared")
    op.drop_column("auto_replenish_configs", "pending_review_reference")
    op.drop_index("ix_usage_periods_status", table_name="usage_periods")
    op.drop_column("usage_periods", "closed_usage_credits")
