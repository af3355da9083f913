"""Credit engine CLI -- Typer-based operator interface.

Provides commands for creating the local store and its holders and
deployments, inspecting balances, granting and deducting credits, ingesting
usage events, configuring auto top-up, and running the usage sync and auto
top-up jobs by hand or on a schedule.  Human-readable output goes to *stderr* via
Rich; ``--json`` writes machine-readable results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from decimal import Decimal
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.config import Settings, load_settings
from credit_engine.display import (
    display_auto_top_up_status,
    display_balance,
    display_batch_result,
    display_replenish_result,
    display_sync_result,
    display_transactions,
)
from credit_engine.errors import LedgerError
from credit_engine.ledger.models import GrantBucket, HolderKind, HolderRef, MembershipTier, TransactionType
from credit_engine.ledger.service import CreditLedger
from credit_engine.log_format import configure_logging
from credit_engine.state.database import get_engine, get_session, get_session_factory

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="credit-engine",
    help="Credit ledger, usage metering and auto top-up operations.",
    no_args_is_help=True,
)
auto_top_up_app = typer.Typer(
    name="auto-top-up",
    help="Configure automatic credit top-ups.",
    no_args_is_help=True,
)
app.add_typer(auto_top_up_app, name="auto-top-up")

console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_settings: Settings | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Override CREDITS_DATABASE_URL.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _settings  # noqa: PLW0603
    _json_output = json_mode
    overrides: dict[str, Any] = {}
    if database_url:
        overrides["database_url"] = database_url
    _settings = load_settings(**overrides)
    configure_logging(_settings)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_settings() -> Settings:
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run(work: Callable[[Settings, async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Run *work* with a fresh engine, mapping ledger errors to exit code 1."""
    settings = _get_settings()

    async def _main() -> T:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            return await work(settings, get_session_factory(engine))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except LedgerError as exc:
        if _json_output:
            _emit_json(exc.to_dict())
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _require_stripe(settings: Settings) -> None:
    if not settings.is_stripe_configured():
        console.print("[red]CREDITS_STRIPE_SECRET_KEY is not set.[/red]")
        raise typer.Exit(code=1)


def _holder(kind: HolderKind, holder_id: str) -> HolderRef:
    return HolderRef(kind=kind, id=holder_id)


# ---------------------------------------------------------------------------
# init-db / create-user / create-workspace
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the ledger tables in a SQLite store.

    PostgreSQL deployments use the Alembic migrations instead.
    """
    settings = _get_settings()
    if not settings.database_url.startswith("sqlite"):
        console.print("[yellow]Non-SQLite database: run `alembic upgrade head` instead.[/yellow]")
        raise typer.Exit(code=1)

    from credit_engine.state.sqlite_adapter import create_local_tables

    async def _main() -> None:
        engine = get_engine(settings.database_url)
        try:
            await create_local_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_main())
    console.print(f"[green]Tables ready at {settings.database_url}[/green]")


@app.command("create-user")
def create_user(
    user_id: str = typer.Argument(..., help="User id."),
    email: str = typer.Argument(..., help="Unique e-mail address."),
    name: str | None = typer.Option(None, "--name", help="Display name."),
    tier: MembershipTier = typer.Option(MembershipTier.FREE, "--tier", help="Membership tier."),
    stripe_customer_id: str | None = typer.Option(None, "--stripe-customer", help="Stripe customer id."),
    stripe_subscription_id: str | None = typer.Option(None, "--stripe-subscription", help="Stripe subscription id."),
) -> None:
    """Create a user credit holder with a zero balance."""
    from credit_engine.state.repository import CreditHolderRepository

    async def work(_settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> None:
        async with get_session(session_factory) as session:
            await CreditHolderRepository(session).create_user(
                user_id,
                email,
                name,
                membership_tier=tier.value,
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id,
            )

    _run(work)
    console.print(f"Created user [bold]{user_id}[/bold]")


@app.command("create-workspace")
def create_workspace(
    workspace_id: str = typer.Argument(..., help="Workspace id."),
    name: str = typer.Argument(..., help="Workspace name."),
    owner_id: str = typer.Argument(..., help="Owning user id."),
    personal: bool = typer.Option(False, "--personal", help="Mark as the owner's personal workspace."),
) -> None:
    """Create a workspace credit holder with a zero balance."""
    from credit_engine.state.repository import CreditHolderRepository

    async def work(_settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> None:
        async with get_session(session_factory) as session:
            await CreditHolderRepository(session).create_workspace(workspace_id, name, owner_id, is_personal=personal)

    _run(work)
    console.print(f"Created workspace [bold]{workspace_id}[/bold] owned by {owner_id}")


# ---------------------------------------------------------------------------
# balance / grant / deduct
# ---------------------------------------------------------------------------


@app.command()
def balance(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent transactions to show."),
) -> None:
    """Show a holder's balance, buckets and recent transactions."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> tuple[Any, Any]:
        ledger = CreditLedger(session_factory, settings)
        return await ledger.get_balance(holder), await ledger.list_transactions(holder, limit=limit)

    snapshot, records = _run(work)
    if _json_output:
        _emit_json(
            {
                "balance": snapshot.model_dump(mode="json") | {"bonus": str(snapshot.bonus)},
                "transactions": [r.model_dump(mode="json") for r in records],
            }
        )
        return
    display_balance(console, snapshot)
    display_transactions(console, records)


@app.command()
def grant(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
    amount: str = typer.Argument(..., help="Credits to grant."),
    transaction_type: TransactionType = typer.Option(TransactionType.BONUS, "--type", help="Transaction type."),
    bucket: GrantBucket = typer.Option(GrantBucket.BONUS, "--bucket", help="Bucket the credit lands in."),
    description: str = typer.Option("Manual credit grant", "--description", "-d"),
) -> None:
    """Grant credits to a holder."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await CreditLedger(session_factory, settings).add(
            holder, Decimal(amount), transaction_type, description, bucket=bucket
        )

    result = _run(work)
    if _json_output:
        _emit_json(result.model_dump(mode="json"))
        return
    console.print(f"[green]Granted {result.amount} credits to {holder}; balance {result.balance_after}[/green]")


@app.command()
def deduct(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
    amount: str = typer.Argument(..., help="Credits to deduct."),
    transaction_type: TransactionType = typer.Option(
        TransactionType.USAGE_DEDUCTION, "--type", help="Transaction type."
    ),
    description: str = typer.Option("Manual credit deduction", "--description", "-d"),
) -> None:
    """Deduct credits from a holder (carry-over, then base plan, then bonus)."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await CreditLedger(session_factory, settings).deduct(holder, Decimal(amount), transaction_type, description)

    result = _run(work)
    if _json_output:
        _emit_json(result.model_dump(mode="json"))
        return
    console.print(
        f"Deducted {result.amount} from {holder}: carry-over {result.carry_over_deducted}, "
        f"base plan {result.base_plan_deducted}, bonus {result.bonus_deducted}; "
        f"balance [bold]{result.balance_after}[/bold]"
    )


# ---------------------------------------------------------------------------
# create-deployment / ingest
# ---------------------------------------------------------------------------


@app.command("create-deployment")
def create_deployment(
    deployment_name: str = typer.Argument(..., help="Deployment name carried by usage events."),
    workspace_id: str = typer.Argument(..., help="Workspace that pays for the deployment."),
    project_id: str | None = typer.Option(None, "--project", help="Project id (default: proj-<workspace>)."),
) -> None:
    """Register a deployment so its usage events can be attributed."""
    from credit_engine.state.repository import OwnershipRepository

    async def work(_settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> None:
        async with get_session(session_factory) as session:
            await OwnershipRepository(session).create_deployment(
                f"dep-{deployment_name}", deployment_name, workspace_id, project_id
            )

    _run(work)
    console.print(f"Created deployment [bold]{deployment_name}[/bold] in {workspace_id}")


def _read_events(path: Path) -> list[dict[str, Any]]:
    """Load events from a JSON array or from JSON lines; ``-`` reads stdin."""
    text = sys.stdin.read() if str(path) == "-" else path.read_text(encoding="utf-8")
    stripped = text.strip()
    if not stripped:
        return []
    if stripped.startswith("["):
        return list(json.loads(stripped))
    return [json.loads(line) for line in stripped.splitlines() if line.strip()]


@app.command()
def ingest(
    events_file: Path = typer.Argument(..., help="JSON array or JSON-lines file of usage events ('-' for stdin)."),
) -> None:
    """Apply a batch of backend usage events to deployment counters."""
    from credit_engine.metering.accumulator import UsageAccumulator

    if str(events_file) != "-" and not events_file.is_file():
        console.print(f"[red]No such file: {events_file}[/red]")
        raise typer.Exit(code=1)
    try:
        events = _read_events(events_file)
    except json.JSONDecodeError as exc:
        console.print(f"[red]Invalid JSON in {events_file}: {exc}[/red]")
        raise typer.Exit(code=1) from exc

    async def work(_settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await UsageAccumulator(session_factory).process_batch(events)

    result = _run(work)
    if _json_output:
        _emit_json(result.model_dump(mode="json"))
        return
    display_batch_result(console, result)
    if result.errors:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# auto-top-up configure / disable / status / clear-review
# ---------------------------------------------------------------------------


def _controller(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
    from credit_engine.services.auto_replenish import AutoReplenishController
    from credit_engine.services.payments import StripePaymentGateway

    return AutoReplenishController(
        session_factory,
        CreditLedger(session_factory, settings),
        StripePaymentGateway(settings),
        settings,
    )


def _show_auto_top_up(holder: HolderRef, status: Any) -> None:
    if status is None:
        if _json_output:
            _emit_json({"holder": str(holder), "configured": False})
        console.print(f"[yellow]Auto top-up is not configured for {holder}.[/yellow]")
        raise typer.Exit(code=1)
    if _json_output:
        _emit_json(status.model_dump(mode="json"))
        return
    display_auto_top_up_status(console, str(holder), status)


@auto_top_up_app.command("configure")
def auto_top_up_configure(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
    payment_method: str | None = typer.Option(None, "--payment-method", help="Saved payment method reference."),
    threshold: int | None = typer.Option(None, "--threshold", help="Top up when the balance falls below this."),
    top_up: int | None = typer.Option(None, "--top-up", help="Credits bought per top-up."),
    max_monthly: int | None = typer.Option(None, "--max-monthly", help="Top-ups allowed per calendar month."),
) -> None:
    """Enable auto top-up for a holder (also clears failures and any review hold)."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await _controller(settings, session_factory).configure(
            holder,
            enabled=True,
            threshold_credits=threshold,
            top_up_credits=top_up,
            payment_method_ref=payment_method,
            max_monthly_top_ups=max_monthly,
        )

    _show_auto_top_up(holder, _run(work))


@auto_top_up_app.command("disable")
def auto_top_up_disable(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
) -> None:
    """Turn auto top-up off for a holder."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await _controller(settings, session_factory).disable(holder)

    _show_auto_top_up(holder, _run(work))


@auto_top_up_app.command("status")
def auto_top_up_status(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
) -> None:
    """Show a holder's auto top-up configuration and counters."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await _controller(settings, session_factory).get_config(holder)

    _show_auto_top_up(holder, _run(work))


@auto_top_up_app.command("clear-review")
def auto_top_up_clear_review(
    kind: HolderKind = typer.Argument(..., help="Holder kind (user | workspace)."),
    holder_id: str = typer.Argument(..., help="Holder id."),
) -> None:
    """Lift the hold placed after a charge whose credit grant failed."""
    holder = _holder(kind, holder_id)

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        return await _controller(settings, session_factory).clear_review(holder)

    _show_auto_top_up(holder, _run(work))


# ---------------------------------------------------------------------------
# sync / replenish / run-scheduler
# ---------------------------------------------------------------------------


@app.command()
def sync(
    workspace_id: str | None = typer.Option(
        None, "--workspace", "-w", help="Only sync the owner of this workspace."
    ),
) -> None:
    """Report period-to-date usage totals to Stripe."""
    settings = _get_settings()
    _require_stripe(settings)

    from credit_engine.services.meter_publisher import MeterEventPublisher, StripeMeterSink
    from credit_engine.services.sync_reconciler import UsageSyncReconciler

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        publisher = MeterEventPublisher.from_settings(StripeMeterSink(settings), settings)
        await publisher.start()
        try:
            reconciler = UsageSyncReconciler(session_factory, publisher)
            if workspace_id:
                return await reconciler.sync_holder(workspace_id)
            return await reconciler.sync_all()
        finally:
            await publisher.close()

    result = _run(work)
    if _json_output:
        _emit_json(result.model_dump(mode="json"))
        return
    display_sync_result(console, result)
    if result.failed:
        raise typer.Exit(code=1)


@app.command()
def replenish(
    kind: HolderKind | None = typer.Option(None, "--kind", help="Holder kind of a single holder to process."),
    holder_id: str | None = typer.Option(None, "--holder", help="Id of a single holder to process."),
) -> None:
    """Run one auto top-up cycle (or a single holder's attempt)."""
    settings = _get_settings()
    _require_stripe(settings)
    if (kind is None) != (holder_id is None):
        console.print("[red]--kind and --holder must be given together.[/red]")
        raise typer.Exit(code=1)

    from credit_engine.services.auto_replenish import AutoReplenishController, ReplenishRunResult
    from credit_engine.services.payments import StripePaymentGateway

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> Any:
        controller = AutoReplenishController(
            session_factory,
            CreditLedger(session_factory, settings),
            StripePaymentGateway(settings),
            settings,
        )
        if kind is not None and holder_id is not None:
            outcome = await controller.process_holder(_holder(kind, holder_id))
            return ReplenishRunResult(checked=1, outcomes=[outcome])
        return await controller.run_cycle()

    result = _run(work)
    if _json_output:
        _emit_json(result.model_dump(mode="json", exclude={"outcomes": {"__all__": {"grant_error"}}}))
        return
    display_replenish_result(console, result)


@app.command("run-scheduler")
def run_scheduler() -> None:
    """Run the usage sync and auto top-up jobs until interrupted."""
    settings = _get_settings()
    _require_stripe(settings)

    from credit_engine.services.auto_replenish import AutoReplenishController
    from credit_engine.services.meter_publisher import MeterEventPublisher, StripeMeterSink
    from credit_engine.services.payments import StripePaymentGateway
    from credit_engine.services.scheduler import CreditScheduler
    from credit_engine.services.sync_reconciler import UsageSyncReconciler

    async def work(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> None:
        publisher = MeterEventPublisher.from_settings(StripeMeterSink(settings), settings)
        scheduler = CreditScheduler(
            UsageSyncReconciler(session_factory, publisher),
            AutoReplenishController(
                session_factory,
                CreditLedger(session_factory, settings),
                StripePaymentGateway(settings),
                settings,
            ),
            sync_interval_seconds=settings.sync_interval_seconds,
            replenish_interval_seconds=settings.replenish_interval_seconds,
        )
        await publisher.start()
        await scheduler.start()
        console.print("[green]Scheduler running. Press Ctrl+C to stop.[/green]")
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()
            await publisher.close()

    try:
        _run(work)
    except KeyboardInterrupt:
        console.print("Scheduler stopped.")
