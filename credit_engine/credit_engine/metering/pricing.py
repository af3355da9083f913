"""Conversion of raw backend resource usage into credits.

One credit is one US cent.  Every conversion here returns an unrounded
``Decimal``; the only rounding step in the usage-to-credits path is
:func:`round_credits_for_sync`, applied once per period total.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_HALF_EVEN, Decimal

from pydantic import BaseModel, ConfigDict

BYTES_PER_GB = Decimal(1024 * 1024 * 1024)
MS_PER_HOUR = Decimal(3_600_000)
MB_PER_GB = Decimal(1024)
CALLS_PER_MILLION = Decimal(1_000_000)

# SQLite stores Numeric columns as REAL, so a summed total can come back as
# e.g. 2.000000000000001.  Totals are snapped to this grid before the
# ceiling so binary noise never bumps a bill by a whole credit.
SYNC_NOISE_QUANTUM = Decimal("0.000001")


class UsageMetrics(BaseModel):
    """Raw resource counters for one event or one period."""

    function_calls: int = 0
    action_compute_ms: int = 0
    database_bandwidth_bytes: int = 0
    file_bandwidth_bytes: int = 0
    vector_bandwidth_bytes: int = 0
    database_storage_bytes: int = 0
    file_storage_bytes: int = 0
    vector_storage_bytes: int = 0


class CreditLine(BaseModel):
    """One row of a usage breakdown."""

    usage: Decimal
    unit: str
    credits: Decimal


class PricingTable(BaseModel):
    """Per-unit credit rates.

    Storage rates are per GB-month and only apply to peak storage; the
    per-event path passes zero storage.
    """

    model_config = ConfigDict(frozen=True)

    function_calls_per_million: Decimal = Decimal("300")
    action_compute_per_gb_hour: Decimal = Decimal("45")
    database_bandwidth_per_gb: Decimal = Decimal("30")
    file_bandwidth_per_gb: Decimal = Decimal("45")
    vector_bandwidth_per_gb: Decimal = Decimal("15")
    database_storage_per_gb_month: Decimal = Decimal("30")
    file_storage_per_gb_month: Decimal = Decimal("4.5")
    vector_storage_per_gb_month: Decimal = Decimal("75")
    # Actions are billed as if they always ran with this much memory.
    action_memory_mb: Decimal = Decimal("128")

    def gb_hours(self, compute_ms: int) -> Decimal:
        return (self.action_memory_mb / MB_PER_GB) * (Decimal(compute_ms) / MS_PER_HOUR)

    def breakdown(self, metrics: UsageMetrics) -> dict[str, CreditLine]:
        """Per-resource usage and credits, unrounded."""
        calls = Decimal(metrics.function_calls)
        gb_hours = self.gb_hours(metrics.action_compute_ms)
        db_bw = Decimal(metrics.database_bandwidth_bytes) / BYTES_PER_GB
        file_bw = Decimal(metrics.file_bandwidth_bytes) / BYTES_PER_GB
        vector_bw = Decimal(metrics.vector_bandwidth_bytes) / BYTES_PER_GB
        db_storage = Decimal(metrics.database_storage_bytes) / BYTES_PER_GB
        file_storage = Decimal(metrics.file_storage_bytes) / BYTES_PER_GB
        vector_storage = Decimal(metrics.vector_storage_bytes) / BYTES_PER_GB

        return {
            "function_calls": CreditLine(
                usage=calls,
                unit="calls",
                credits=calls / CALLS_PER_MILLION * self.function_calls_per_million,
            ),
            "action_compute": CreditLine(
                usage=gb_hours, unit="GB-hours", credits=gb_hours * self.action_compute_per_gb_hour
            ),
            "database_bandwidth": CreditLine(
                usage=db_bw, unit="GB", credits=db_bw * self.database_bandwidth_per_gb
            ),
            "database_storage": CreditLine(
                usage=db_storage, unit="GB", credits=db_storage * self.database_storage_per_gb_month
            ),
            "file_bandwidth": CreditLine(usage=file_bw, unit="GB", credits=file_bw * self.file_bandwidth_per_gb),
            "file_storage": CreditLine(
                usage=file_storage, unit="GB", credits=file_storage * self.file_storage_per_gb_month
            ),
            "vector_bandwidth": CreditLine(
                usage=vector_bw, unit="GB", credits=vector_bw * self.vector_bandwidth_per_gb
            ),
            "vector_storage": CreditLine(
                usage=vector_storage, unit="GB", credits=vector_storage * self.vector_storage_per_gb_month
            ),
        }

    def credits_for(self, metrics: UsageMetrics) -> Decimal:
        """Total credits for *metrics*, without rounding."""
        return sum((line.credits for line in self.breakdown(metrics).values()), Decimal("0"))

    def storage_credits_for_peaks(
        self,
        peak_database_bytes: int,
        peak_file_bytes: int,
        peak_vector_bytes: int,
    ) -> Decimal:
        """Monthly storage charge for a period's peak storage, without rounding."""
        return self.credits_for(
            UsageMetrics(
                database_storage_bytes=peak_database_bytes,
                file_storage_bytes=peak_file_bytes,
                vector_storage_bytes=peak_vector_bytes,
            )
        )


DEFAULT_PRICING = PricingTable()


def round_credits_for_sync(fractional: Decimal) -> int:
    """Round a period's fractional credit total to whole credits, upwards.

    Non-positive totals round to 0.
    """
    value = Decimal(fractional).quantize(SYNC_NOISE_QUANTUM, rounding=ROUND_HALF_EVEN)
    if value <= 0:
        return 0
    return int(value.to_integral_value(rounding=ROUND_CEILING))
