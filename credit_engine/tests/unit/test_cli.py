"""Tests for the credit-engine CLI using Typer's CliRunner against a SQLite file."""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from credit_engine.cli import app

runner = CliRunner()


def _json_from(output: str) -> Any:
    """Decode the JSON document in *output*, skipping any log lines before it."""
    start = output.index("{")
    payload, _end = json.JSONDecoder().raw_decode(output[start:])
    return payload


@pytest.fixture
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CREDITS_STRIPE_SECRET_KEY", raising=False)
    monkeypatch.setenv("CREDITS_LOG_LEVEL", "WARNING")
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    result = runner.invoke(app, ["--database-url", url, "init-db"])
    assert result.exit_code == 0, result.output
    return url


@pytest.fixture
def user(db_url: str) -> str:
    result = runner.invoke(
        app,
        ["--database-url", db_url, "create-user", "u1", "u1@example.com", "--tier", "PRO", "--stripe-customer", "cus_1"],
    )
    assert result.exit_code == 0, result.output
    return "u1"


# ---------------------------------------------------------------------------
# Store setup
# ---------------------------------------------------------------------------


class TestSetup:
    def test_init_db_refuses_postgres(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(app, ["--database-url", "postgresql+asyncpg://x@localhost/db", "init-db"])
        assert result.exit_code == 1
        assert "alembic" in result.output

    def test_create_workspace(self, db_url: str, user: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "create-workspace", "ws-1", "Team", user])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["--database-url", db_url, "--json", "balance", "workspace", "ws-1"])
        assert result.exit_code == 0, result.output
        assert Decimal(_json_from(result.stdout)["balance"]["balance"]) == Decimal("0")

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "credit" in result.output.lower()


# ---------------------------------------------------------------------------
# Ledger commands
# ---------------------------------------------------------------------------


class TestLedgerCommands:
    def test_grant_deduct_balance(self, db_url: str, user: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "grant", "user", user, "20"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["--database-url", db_url, "--json", "deduct", "user", user, "5"])
        assert result.exit_code == 0, result.output
        deduction = _json_from(result.stdout)
        assert Decimal(deduction["bonus_deducted"]) == Decimal("5")

        result = runner.invoke(app, ["--database-url", db_url, "--json", "balance", "user", user])
        assert result.exit_code == 0, result.output
        payload = _json_from(result.stdout)
        assert Decimal(payload["balance"]["balance"]) == Decimal("15")
        assert Decimal(payload["balance"]["bonus"]) == Decimal("15")
        assert [t["transaction_type"] for t in payload["transactions"]] == ["USAGE_DEDUCTION", "BONUS"]

    def test_human_balance_output(self, db_url: str, user: str) -> None:
        runner.invoke(app, ["--database-url", db_url, "grant", "user", user, "3"])
        result = runner.invoke(app, ["--database-url", db_url, "balance", "user", user])
        assert result.exit_code == 0, result.output
        assert "Balance" in result.output

    def test_insufficient_funds_exit_code(self, db_url: str, user: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "deduct", "user", user, "1"])
        assert result.exit_code == 1
        assert "Insufficient" in result.output

    def test_insufficient_funds_json(self, db_url: str, user: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "--json", "deduct", "user", user, "1"])
        assert result.exit_code == 1
        assert _json_from(result.stdout)["error"] == "insufficient_funds"

    def test_unknown_holder(self, db_url: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "balance", "user", "ghost"])
        assert result.exit_code == 1
        assert "not found" in result.output


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TestJobCommands:
    def test_sync_requires_stripe(self, db_url: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "sync"])
        assert result.exit_code == 1
        assert "CREDITS_STRIPE_SECRET_KEY" in result.output

    def test_replenish_requires_kind_and_holder_together(
        self, db_url: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CREDITS_STRIPE_SECRET_KEY", "sk_test_cli")
        result = runner.invoke(app, ["--database-url", db_url, "replenish", "--kind", "user"])
        assert result.exit_code == 1
        assert "together" in result.output

    def test_replenish_with_nothing_configured(self, db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CREDITS_STRIPE_SECRET_KEY", "sk_test_cli")
        result = runner.invoke(app, ["--database-url", db_url, "--json", "replenish"])
        assert result.exit_code == 0, result.output
        payload = _json_from(result.stdout)
        assert payload["checked"] == 0
        assert payload["outcomes"] == []


# ---------------------------------------------------------------------------
# Usage ingestion
# ---------------------------------------------------------------------------


@pytest.fixture
def deployment(db_url: str) -> str:
    for args in (
        ["create-user", "owner-1", "owner@example.com", "--tier", "PRO"]
        + ["--stripe-customer", "cus_owner1", "--stripe-subscription", "sub_owner1"],
        ["create-workspace", "ws-1", "Team", "owner-1"],
        ["create-deployment", "happy-otter", "ws-1"],
    ):
        result = runner.invoke(app, ["--database-url", db_url, *args])
        assert result.exit_code == 0, result.output
    return "happy-otter"


def _event(deployment_name: str) -> dict:
    return {
        "topic": "function_execution",
        "timestamp": 1773576000000,
        "function": {"type": "mutation", "path": "tasks:update", "cached": False},
        "execution_time_ms": 12,
        "usage": {"database_read_bytes": 2048},
        "convex": {"deployment_name": deployment_name},
    }


class TestIngest:
    def test_ingest_json_lines(self, db_url: str, deployment: str, tmp_path: Path) -> None:
        events = tmp_path / "events.jsonl"
        events.write_text("\n".join(json.dumps(_event(name)) for name in (deployment, "unknown-dep")) + "\n")

        result = runner.invoke(app, ["--database-url", db_url, "--json", "ingest", str(events)])

        assert result.exit_code == 0, result.output
        payload = _json_from(result.stdout)
        assert payload["processed"] == 1
        assert payload["skipped"] == 1
        assert payload["errors"] == []

    def test_ingest_json_array(self, db_url: str, deployment: str, tmp_path: Path) -> None:
        events = tmp_path / "events.json"
        events.write_text(json.dumps([_event(deployment), _event(deployment)]))

        result = runner.invoke(app, ["--database-url", db_url, "ingest", str(events)])

        assert result.exit_code == 0, result.output
        assert "processed=2" in result.output

    def test_ingest_missing_file(self, db_url: str, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "ingest", str(tmp_path / "nope.jsonl")])
        assert result.exit_code == 1
        assert "No such file" in result.output

    def test_ingest_invalid_json(self, db_url: str, tmp_path: Path) -> None:
        events = tmp_path / "broken.jsonl"
        events.write_text("{not json\n")

        result = runner.invoke(app, ["--database-url", db_url, "ingest", str(events)])

        assert result.exit_code == 1
        assert "Invalid JSON" in result.output


# ---------------------------------------------------------------------------
# Auto top-up
# ---------------------------------------------------------------------------


class TestAutoTopUpCommands:
    def test_configure_status_disable(self, db_url: str, user: str) -> None:
        base = ["--database-url", db_url, "--json", "auto-top-up"]

        result = runner.invoke(app, [*base, "configure", "user", user, "--payment-method", "pm_1", "--threshold", "50"])
        assert result.exit_code == 0, result.output
        configured = _json_from(result.stdout)
        assert configured["enabled"] is True
        assert configured["payment_method_ref"] == "pm_1"
        assert configured["threshold_credits"] == 50
        assert configured["top_up_credits"] == 400

        result = runner.invoke(app, [*base, "status", "user", user])
        assert result.exit_code == 0, result.output
        assert _json_from(result.stdout)["remaining_top_ups"] == configured["max_monthly_top_ups"]

        result = runner.invoke(app, [*base, "disable", "user", user])
        assert result.exit_code == 0, result.output
        assert _json_from(result.stdout)["enabled"] is False

    def test_clear_review_without_hold(self, db_url: str, user: str) -> None:
        runner.invoke(app, ["--database-url", db_url, "auto-top-up", "configure", "user", user, "--payment-method", "pm_1"])

        result = runner.invoke(app, ["--database-url", db_url, "--json", "auto-top-up", "clear-review", "user", user])

        assert result.exit_code == 0, result.output
        assert _json_from(result.stdout)["pending_review_reference"] is None

    def test_status_when_not_configured(self, db_url: str, user: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "auto-top-up", "status", "user", user])
        assert result.exit_code == 1
        assert "not configured" in result.output

    def test_configure_rejects_small_top_up(self, db_url: str, user: str) -> None:
        result = runner.invoke(app, ["--database-url", db_url, "auto-top-up", "configure", "user", user, "--top-up", "10"])
        assert result.exit_code == 1
        assert "Minimum top-up" in result.output
