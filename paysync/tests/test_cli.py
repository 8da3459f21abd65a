"""Tests for the PaySync operator CLI.

Each command builds its runtime from the environment, so the tests point
``PAYSYNC_DATABASE_URL`` at a SQLite file and seed it directly.
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from typer.testing import CliRunner

from paysync import runtime as runtime_module
from paysync.cli import app
from paysync.services.ledger_service import LedgerAccountant
from paysync_core.state.repository import MirrorRecordRepository, RawEventRepository, RetryJobRepository
from paysync_core.state.tables import Base, LedgerEntryTable

runner = CliRunner()


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    for name in list(os.environ):
        if name.startswith("PAYSYNC_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(runtime_module, "configure_logging", lambda *args, **kwargs: None)
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("PAYSYNC_DATABASE_URL", url)
    return url


def _seed(url: str, work) -> None:
    async def _main() -> None:
        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_sessionmaker(engine, expire_on_commit=False)() as session:
            await work(session)
            await session.commit()
        await engine.dispose()

    asyncio.run(_main())


async def _two_credits(session) -> None:
    ledger = LedgerAccountant(fee_percent=10)
    for source_id in ("in_1", "in_2"):
        await ledger.credit_net_proceeds(
            session, tenant_id="T1", source_id=source_id, gross_amount=5000, currency="usd", description="paid"
        )


class TestVerifyLedger:
    def test_empty_database(self, database_url: str) -> None:
        result = runner.invoke(app, ["verify-ledger"])
        assert result.exit_code == 0
        assert "No ledger entries" in result.output

    def test_consistent_ledger(self, database_url: str) -> None:
        _seed(database_url, _two_credits)
        result = runner.invoke(app, ["verify-ledger", "-t", "T1"])
        assert result.exit_code == 0
        assert "T1" in result.output

    def test_tampered_ledger_fails(self, database_url: str) -> None:
        async def _tamper(session) -> None:
            await _two_credits(session)
            await session.execute(
                update(LedgerEntryTable).where(LedgerEntryTable.source_id == "in_2").values(running_balance=1)
            )

        _seed(database_url, _tamper)
        result = runner.invoke(app, ["verify-ledger"])
        assert result.exit_code == 1


class TestRetryCommands:
    def test_status_of_unknown_invoice(self, database_url: str) -> None:
        result = runner.invoke(app, ["retry-status", "inv_missing"])
        assert result.exit_code == 1
        assert "No retry jobs for invoice inv_missing" in result.output

    def test_status_of_scheduled_job(self, database_url: str) -> None:
        async def _job(session) -> None:
            await RetryJobRepository(session).create(
                tenant_id="T1",
                invoice_id="inv_1",
                processor_customer_id="cus_1",
                payment_method_id="pm_1",
                amount=5000,
                currency="usd",
                retry_at=datetime.now(UTC) + timedelta(minutes=5),
            )

        _seed(database_url, _job)
        result = runner.invoke(app, ["retry-status", "inv_1"])
        assert result.exit_code == 0
        assert "pending" in result.output

    @pytest.mark.parametrize("command", ["sweep-retries", "sweep-mirrors"])
    def test_sweeps_need_processor_key(self, database_url: str, command: str) -> None:
        result = runner.invoke(app, [command])
        assert result.exit_code == 2
        assert "STRIPE_SECRET_KEY" in result.output


class TestReplayEvents:
    def test_nothing_to_replay(self, database_url: str) -> None:
        result = runner.invoke(app, ["replay-events"])
        assert result.exit_code == 0
        assert "No unprocessed events" in result.output

    def test_replays_stored_event(self, database_url: str) -> None:
        async def _event(session) -> None:
            await RawEventRepository(session).insert_if_absent(
                event_id="evt_1",
                event_type="invoice.upcoming",
                payload={"id": "evt_1", "type": "invoice.upcoming", "data": {"object": {"id": "in_1"}}},
            )

        _seed(database_url, _event)
        result = runner.invoke(app, ["replay-events", "--limit", "10"])
        assert result.exit_code == 0
        assert "Event Replay" in result.output


class TestTriageCommands:
    def test_no_flagged_events(self, database_url: str) -> None:
        result = runner.invoke(app, ["list-flagged"])
        assert result.exit_code == 0
        assert "No flagged events" in result.output

    def test_lists_flagged_events_only(self, database_url: str) -> None:
        async def _events(session) -> None:
            repo = RawEventRepository(session)
            for event_id in ("evt_ok", "evt_bad"):
                await repo.insert_if_absent(
                    event_id=event_id,
                    event_type="customer.updated",
                    payload={"id": event_id, "type": "customer.updated", "data": {"object": {}}},
                )
            await repo.mark_processed("evt_ok")
            await repo.mark_processed("evt_bad", flagged=True, note="unknown customer")

        _seed(database_url, _events)
        result = runner.invoke(app, ["list-flagged"])
        assert result.exit_code == 0
        assert "Flagged Events" in result.output
        assert "evt_bad" in result.output
        assert "evt_ok" not in result.output

    def test_lists_unmatched_mirrors_only(self, database_url: str) -> None:
        async def _mirrors(session) -> None:
            repo = MirrorRecordRepository(session)
            await repo.insert(processor_charge_id="ch_lost", mode="unmatched", amount=100, currency="usd")
            await repo.insert(processor_charge_id="ch_done", mode="created", amount=100, currency="usd")

        _seed(database_url, _mirrors)
        result = runner.invoke(app, ["list-unmatched", "--limit", "5"])
        assert result.exit_code == 0
        assert "ch_lost" in result.output
        assert "ch_done" not in result.output

    def test_no_unmatched_mirrors(self, database_url: str) -> None:
        result = runner.invoke(app, ["list-unmatched"])
        assert result.exit_code == 0
        assert "No unmatched external payments" in result.output
