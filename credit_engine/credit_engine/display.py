"""Rich output formatting for the credit engine CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON output on *stdout* stays clean.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from rich.console import Console

    from credit_engine.ledger.models import BalanceSnapshot, TransactionRecord
    from credit_engine.metering.accumulator import BatchResult
    from credit_engine.services.auto_replenish import AutoReplenishStatus, ReplenishRunResult
    from credit_engine.services.sync_reconciler import SyncResult


_STATUS_COLOURS: dict[str, str] = {
    "reported": "green",
    "unchanged": "green",
    "idle": "green",
    "skipped": "dim",
    "failed": "red",
    "requires_review": "bold red",
}


def _coloured_status(status: str) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _signed(amount: object) -> str:
    text = str(amount)
    if text.startswith("-"):
        return f"[red]{text}[/red]"
    return f"[green]+{text}[/green]"


def display_balance(console: Console, snapshot: BalanceSnapshot) -> None:
    """Render the balance and its buckets as a panel."""
    expires = snapshot.carry_over_expires_at.isoformat() if snapshot.carry_over_expires_at else "-"
    lines = [
        f"[bold]Balance:[/bold]     {snapshot.balance}",
        f"[bold]Carry-over:[/bold]  {snapshot.carry_over} (expires {expires})",
        f"[bold]Base plan:[/bold]   {snapshot.base_plan}",
        f"[bold]Bonus:[/bold]       {snapshot.bonus}",
        f"[bold]Tier:[/bold]        {snapshot.membership_tier.value}",
        f"[bold]Used (month):[/bold] {snapshot.monthly_used}",
    ]
    console.print(Panel("\n".join(lines), title=str(snapshot.holder), border_style="blue"))


def display_transactions(console: Console, records: list[TransactionRecord]) -> None:
    """Render ledger rows, newest first."""
    if not records:
        console.print("[dim]No transactions.[/dim]")
        return

    table = Table(title="Transactions", show_lines=False)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("When")
    table.add_column("Type", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Description")

    for record in records:
        table.add_row(
            str(record.id),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.transaction_type.value,
            _signed(record.amount),
            str(record.balance_after),
            record.description,
        )
    console.print(table)


def display_sync_result(console: Console, result: SyncResult) -> None:
    table = Table(title=f"Usage sync {result.period_key}")
    table.add_column("Owner")
    table.add_column("Period")
    table.add_column("Status")
    table.add_column("Fractional", justify="right")
    table.add_column("Reported", justify="right")
    table.add_column("Deployments", justify="right")

    for owner in result.owners:
        table.add_row(
            owner.owner_id,
            owner.period_key or result.period_key,
            _coloured_status(owner.status),
            str(owner.fractional_credits),
            str(owner.reported_credits),
            str(owner.deployment_count),
        )
    console.print(table)
    console.print(
        f"reported={result.reported} unchanged={result.unchanged} skipped={result.skipped} "
        f"failed={result.failed} finalized={result.periods_finalized}"
    )


def display_replenish_result(console: Console, result: ReplenishRunResult) -> None:
    table = Table(title="Auto top-up cycle")
    table.add_column("Holder")
    table.add_column("State")
    table.add_column("Credits", justify="right")
    table.add_column("Detail")

    for outcome in result.outcomes:
        table.add_row(
            str(outcome.holder),
            _coloured_status(outcome.state.value),
            str(outcome.credits_granted),
            outcome.skip_reason or outcome.error or outcome.payment_reference or "",
        )
    console.print(table)
    console.print(
        f"checked={result.checked} succeeded={result.succeeded} skipped={result.skipped} "
        f"failed={result.failed} review={result.requires_review} reset={result.counters_reset}"
    )


def display_auto_top_up_status(console: Console, holder: str, status: AutoReplenishStatus) -> None:
    """Render a holder's auto top-up configuration as a panel."""
    last = f"{status.last_top_up_amount} at {status.last_top_up_at.isoformat()}" if status.last_top_up_at else "-"
    lines = [
        f"[bold]Enabled:[/bold]       {status.enabled}",
        f"[bold]Threshold:[/bold]     {status.threshold_credits}",
        f"[bold]Top-up:[/bold]        {status.top_up_credits}",
        f"[bold]Payment method:[/bold] {status.payment_method_ref or '-'}",
        f"[bold]This month:[/bold]    {status.top_ups_this_month}/{status.max_monthly_top_ups}",
        f"[bold]Last top-up:[/bold]   {last}",
        f"[bold]Failures:[/bold]      {status.consecutive_failures}",
    ]
    if status.last_top_up_error:
        lines.append(f"[bold]Last error:[/bold]    [red]{status.last_top_up_error}[/red]")
    if status.pending_review_reference:
        lines.append(f"[bold red]Held for review of payment {status.pending_review_reference}[/bold red]")
    console.print(Panel("\n".join(lines), title=f"Auto top-up {holder}", border_style="blue"))


def display_batch_result(console: Console, result: BatchResult) -> None:
    console.print(f"processed={result.processed} skipped={result.skipped} errors={len(result.errors)}")
    for reason, count in result.skip_reasons.items():
        if count:
            console.print(f"  [dim]{reason.value}: {count}[/dim]")
    for error in result.errors:
        console.print(f"  [red]{error}[/red]")
