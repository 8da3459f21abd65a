"""Tests for the event store, idempotency guard and processing pipeline."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from paysync.errors import TransientProcessingError
from paysync.handlers import HANDLERS, Outcome
from paysync.services.event_intake import EventIntake
from paysync.services.event_router import EventRouter
from paysync.services.worker_pool import EventWorkerPool
from paysync_core.events.types import EventKind
from paysync_core.state.tables import LedgerEntryTable, RawEventTable


async def _count(session_factory, table) -> int:
    async with session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(table))).scalar_one())


class TestIngest:
    @pytest.mark.asyncio
    async def test_first_delivery_applies_and_marks_processed(
        self, intake, seed_customer, event_factory, invoice_factory, raw_event, ledger_entries
    ) -> None:
        await seed_customer()
        result = await intake.ingest(event_factory("invoice.paid", invoice_factory(amount_paid=5000, status="paid")))

        assert result.accepted is True
        assert result.duplicate is False
        assert result.outcome is Outcome.APPLIED

        row = await raw_event("evt_1")
        assert row.processed is True
        assert row.flagged is False
        assert row.payload["type"] == "invoice.paid"

        (entry,) = await ledger_entries("T1")
        assert entry.amount == 4500
        assert entry.running_balance == 4500

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate_with_no_writes(
        self, intake, session_factory, seed_customer, event_factory, invoice_factory
    ) -> None:
        await seed_customer()
        event = event_factory("invoice.paid", invoice_factory(amount_paid=5000, status="paid"))
        await intake.ingest(event)

        again = await intake.ingest(event)
        assert again.duplicate is True
        assert again.accepted is False
        assert again.outcome is None
        assert await _count(session_factory, RawEventTable) == 1
        assert await _count(session_factory, LedgerEntryTable) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_apply_once(
        self, intake, session_factory, seed_customer, event_factory, invoice_factory, ledger_entries
    ) -> None:
        await seed_customer()
        event = event_factory("invoice.paid", invoice_factory(amount_paid=5000, status="paid"))

        results = await asyncio.gather(intake.ingest(event), intake.ingest(event))

        assert sorted(r.duplicate for r in results) == [False, True]
        entries = await ledger_entries("T1")
        assert len(entries) == 1
        assert entries[0].running_balance == 4500

    @pytest.mark.asyncio
    async def test_unrecognized_type_is_processed_without_flag(self, intake, event_factory, raw_event) -> None:
        result = await intake.ingest(event_factory("balance.available", {"id": "bal_1"}))
        assert result.outcome is Outcome.IGNORED
        row = await raw_event("evt_1")
        assert row.processed is True
        assert row.flagged is False

    @pytest.mark.asyncio
    async def test_terminal_skip_flags_event(self, intake, event_factory, invoice_factory, raw_event) -> None:
        result = await intake.ingest(event_factory("invoice.paid", invoice_factory(customer="cus_unknown")))

        assert result.outcome is Outcome.SKIPPED
        row = await raw_event("evt_1")
        assert row.processed is True
        assert row.flagged is True
        assert "unknown customer cus_unknown" in row.error_message

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_event_for_replay(
        self,
        session_factory,
        ledger,
        service_settings,
        retry_policy,
        seed_customer,
        event_factory,
        invoice_factory,
        raw_event,
        ledger_entries,
    ) -> None:
        """A handler failure rolls back, but the raw event survives unprocessed."""
        await seed_customer()
        broken = AsyncMock(side_effect=RuntimeError("connection reset"))
        failing = EventIntake(
            session_factory,
            EventRouter({**HANDLERS, EventKind.INVOICE_PAID: broken}),
            ledger,
            service_settings,
            retry_policy,
        )
        event = event_factory("invoice.paid", invoice_factory(amount_paid=5000, status="paid"))

        with pytest.raises(TransientProcessingError) as exc_info:
            await failing.ingest(event)
        assert exc_info.value.event_id == "evt_1"

        row = await raw_event("evt_1")
        assert row.processed is False
        assert row.attempts == 1
        assert "connection reset" in row.error_message
        assert await ledger_entries("T1") == []

        healthy = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy)
        summary = await healthy.replay_unprocessed()
        assert (summary.found, summary.processed, summary.failed) == (1, 1, 0)
        assert (await raw_event("evt_1")).processed is True
        assert [e.amount for e in await ledger_entries("T1")] == [4500]

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_reprocesses(
        self,
        session_factory,
        ledger,
        service_settings,
        retry_policy,
        seed_customer,
        event_factory,
        invoice_factory,
        ledger_entries,
    ) -> None:
        await seed_customer()
        failing = EventIntake(
            session_factory,
            EventRouter({**HANDLERS, EventKind.INVOICE_PAID: AsyncMock(side_effect=RuntimeError("boom"))}),
            ledger,
            service_settings,
            retry_policy,
        )
        event = event_factory("invoice.paid", invoice_factory(amount_paid=5000, status="paid"))
        with pytest.raises(TransientProcessingError):
            await failing.ingest(event)

        healthy = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy)
        result = await healthy.ingest(event)
        assert result.outcome is Outcome.APPLIED
        assert len(await ledger_entries("T1")) == 1


class TestReceive:
    @pytest.mark.asyncio
    async def test_requires_pool(self, intake, event_factory) -> None:
        with pytest.raises(RuntimeError):
            await intake.receive(event_factory("invoice.paid", {"id": "in_1"}))

    @pytest.mark.asyncio
    async def test_worker_processes_stored_event(
        self,
        session_factory,
        ledger,
        service_settings,
        retry_policy,
        seed_customer,
        event_factory,
        invoice_factory,
        raw_event,
        ledger_entries,
    ) -> None:
        await seed_customer()
        pool = EventWorkerPool(worker_count=1, max_size=10)
        intake = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy, pool=pool)
        pool.start()
        try:
            result = await intake.receive(
                event_factory("invoice.paid", invoice_factory(amount_paid=5000, status="paid"))
            )
            assert result.accepted is True
            assert result.outcome is None
            await pool.drain()
        finally:
            await pool.stop()

        assert (await raw_event("evt_1")).processed is True
        assert [e.running_balance for e in await ledger_entries("T1")] == [4500]
        assert pool.stats().completed == 1

    @pytest.mark.asyncio
    async def test_full_queue_leaves_event_for_replay(
        self, session_factory, ledger, service_settings, retry_policy, event_factory, raw_event
    ) -> None:
        pool = EventWorkerPool(worker_count=1, max_size=1)
        assert pool.submit("occupied", AsyncMock())
        intake = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy, pool=pool)

        result = await intake.receive(event_factory("balance.available", {"id": "bal_1"}))

        assert result.accepted is True
        assert pool.stats().rejected == 1
        assert (await raw_event("evt_1")).processed is False

        summary = await intake.replay_unprocessed()
        assert summary.processed == 1
        assert (await raw_event("evt_1")).processed is True

    @pytest.mark.asyncio
    async def test_processed_event_is_duplicate(
        self, session_factory, ledger, service_settings, retry_policy, event_factory
    ) -> None:
        pool = EventWorkerPool(worker_count=1, max_size=10)
        intake = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy, pool=pool)
        event = event_factory("balance.available", {"id": "bal_1"})
        await intake.ingest(event)

        result = await intake.receive(event)
        assert result.duplicate is True
        assert pool.stats().submitted == 0

    @pytest.mark.asyncio
    async def test_process_stored_missing_event(self, intake) -> None:
        result = await intake.process_stored("evt_missing")
        assert result.duplicate is True


class TestReplay:
    @pytest.mark.asyncio
    async def test_recent_events_left_alone(
        self, session_factory, ledger, service_settings, retry_policy, event_factory
    ) -> None:
        pool = EventWorkerPool(worker_count=1, max_size=10)
        intake = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy, pool=pool)
        await intake.receive(event_factory("balance.available", {"id": "bal_1"}))

        summary = await intake.replay_unprocessed(older_than_seconds=3600)
        assert summary.found == 0

    @pytest.mark.asyncio
    async def test_flagged_events_counted(
        self, session_factory, ledger, service_settings, retry_policy, event_factory, invoice_factory
    ) -> None:
        pool = EventWorkerPool(worker_count=1, max_size=10)
        intake = EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy, pool=pool)
        await intake.receive(event_factory("invoice.paid", invoice_factory(customer="cus_unknown")))

        summary = await intake.replay_unprocessed()
        assert (summary.found, summary.flagged, summary.processed) == (1, 1, 0)
