"""Shared fixtures for credit engine tests.

Provides an in-memory SQLite store per test, a controllable clock, settings
with test-friendly values and small factories for seeding holders,
projects and deployments.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.config import Settings, load_settings
from credit_engine.ledger.models import HolderRef
from credit_engine.ledger.service import CreditLedger
from credit_engine.state.database import get_session, get_session_factory
from credit_engine.state.repository import CreditHolderRepository
from credit_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from credit_engine.state.tables import DeploymentTable, ProjectTable

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 15, 12, 0, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Settings & store
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return load_settings(
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_secret_key="sk_test_credit_engine",
        external_call_timeout_seconds=1.0,
        _env_file=None,
    )


@pytest_asyncio.fixture
async def session_factory():
    """Async session factory backed by a fresh in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield get_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession], settings: Settings, clock: FakeClock) -> CreditLedger:
    return CreditLedger(session_factory, settings, clock=clock)


# ---------------------------------------------------------------------------
# Seed factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[HolderRef]]:
    """Create a user holder; keyword arguments set balance columns directly."""

    async def _make(user_id: str = "user-1", *, balance: Decimal | int | str = 0, **columns: Any) -> HolderRef:
        async with get_session(session_factory) as session:
            await CreditHolderRepository(session).create_user(
                user_id,
                f"{user_id}@example.com",
                credit_balance=Decimal(balance),
                **columns,
            )
        return HolderRef.user(user_id)

    return _make


@pytest.fixture
def make_workspace(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[HolderRef]]:
    """Create a workspace holder owned by an existing user."""

    async def _make(
        workspace_id: str = "ws-1",
        owner_id: str = "user-1",
        *,
        balance: Decimal | int | str = 0,
        **columns: Any,
    ) -> HolderRef:
        async with get_session(session_factory) as session:
            await CreditHolderRepository(session).create_workspace(
                workspace_id,
                f"Workspace {workspace_id}",
                owner_id,
                credit_balance=Decimal(balance),
                **columns,
            )
        return HolderRef.workspace(workspace_id)

    return _make


@pytest.fixture
def make_deployment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[str]]:
    """Create a project (if needed) and a deployment under *workspace_id*."""

    async def _make(deployment_name: str, workspace_id: str = "ws-1", **columns: Any) -> str:
        project_id = f"proj-{workspace_id}"
        async with get_session(session_factory) as session:
            if await session.get(ProjectTable, project_id) is None:
                session.add(ProjectTable(id=project_id, name=f"Project {workspace_id}", workspace_id=workspace_id))
                await session.flush()
            session.add(
                DeploymentTable(
                    id=f"dep-{deployment_name}",
                    deployment_name=deployment_name,
                    project_id=project_id,
                    **columns,
                )
            )
        return f"dep-{deployment_name}"

    return _make


@pytest_asyncio.fixture
async def paying_owner(make_user, make_workspace) -> HolderRef:
    """A PRO user with a Stripe customer and subscription, owning ``ws-1``."""
    await make_user(
        "owner-1",
        membership_tier="PRO",
        stripe_customer_id="cus_owner1",
        stripe_subscription_id="sub_owner1",
    )
    return await make_workspace("ws-1", "owner-1")
