"""Tests for the payment retry scheduler.

The processor is an ``AsyncMock``; jitter is disabled so delays are exact.
"""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from paysync.errors import ProcessorError
from paysync.services.mirror_service import ExternalPaymentMirror, MirrorWorker
from paysync.services.retry_scheduler import RetryScheduler, enqueue_retry, idempotency_key
from paysync_core.retry import RetryPolicy
from paysync_core.state.repository import AuditRepository, InvoiceRepository, RetryJobRepository


def _later(hours: int = 1) -> datetime:
    return datetime.now(UTC) + timedelta(hours=hours)


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(jitter_ratio=0.0)


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def scheduler(session_factory, processor, policy, service_settings, notifier) -> RetryScheduler:
    return RetryScheduler(session_factory, processor, policy, service_settings, notifier=notifier)


@pytest_asyncio.fixture
async def invoice_id(session_factory) -> str:
    async with session_factory() as session:
        row = await InvoiceRepository(session).create(
            {
                "tenant_id": "T1",
                "processor_invoice_id": "in_1",
                "currency": "usd",
                "status": "open",
                "amount_due": 5000,
                "platform_origin": True,
                "last_failure": "card declined",
            }
        )
        await session.commit()
        return row.id


async def _schedule(scheduler: RetryScheduler, invoice_id: str):
    return await scheduler.schedule_retry(
        tenant_id="T1",
        invoice_id=invoice_id,
        processor_customer_id="cus_1",
        payment_method_id="pm_1",
        amount=5000,
        currency="usd",
        error="card declined",
    )


async def _job(session_factory, job_id: str):
    async with session_factory() as session:
        return await RetryJobRepository(session).get(job_id)


class TestScheduling:
    def test_idempotency_key_format(self) -> None:
        assert idempotency_key("inv_9", 2) == "retry_inv_9_2"

    @pytest.mark.asyncio
    async def test_first_attempt_after_initial_delay(self, scheduler, invoice_id) -> None:
        before = datetime.now(UTC)
        job = await _schedule(scheduler, invoice_id)
        after = datetime.now(UTC)

        assert job.status == "pending"
        assert job.attempt_number == 1
        assert before + timedelta(seconds=5) <= job.retry_at <= after + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_schedule_is_idempotent_per_invoice(self, scheduler, invoice_id) -> None:
        first = await _schedule(scheduler, invoice_id)
        second = await _schedule(scheduler, invoice_id)
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_jitter_from_seeded_rng(self, session_factory, invoice_id) -> None:
        now = datetime(2026, 1, 1, tzinfo=UTC)
        async with session_factory() as session:
            job, created = await enqueue_retry(
                session,
                RetryPolicy(),
                tenant_id="T1",
                invoice_id=invoice_id,
                processor_customer_id="cus_1",
                payment_method_id="pm_1",
                amount=5000,
                currency="usd",
                now=now,
                rng=random.Random(3),
            )
        assert created is True
        assert now + timedelta(seconds=4.5) <= job.retry_at <= now + timedelta(seconds=5.5)

    @pytest.mark.asyncio
    async def test_status_and_cancel(self, scheduler, invoice_id) -> None:
        job = await _schedule(scheduler, invoice_id)
        assert (await scheduler.get_retry_status(invoice_id)).id == job.id

        assert await scheduler.cancel_retries(invoice_id) == 1
        assert (await scheduler.get_retry_status(invoice_id)).status == "cancelled"
        assert await scheduler.cancel_retries(invoice_id) == 0
        assert await scheduler.get_retry_status("inv_unknown") is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_jobs_not_yet_due_are_left(self, scheduler, processor, invoice_id) -> None:
        await _schedule(scheduler, invoice_id)
        summary = await scheduler.sweep()
        assert summary.due == 0
        processor.charge_off_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_marks_invoice_paid(self, scheduler, processor, session_factory, invoice_id) -> None:
        processor.charge_off_session.return_value = {"id": "pi_retry", "status": "succeeded"}
        job = await _schedule(scheduler, invoice_id)

        summary = await scheduler.sweep(now=_later())

        assert (summary.due, summary.claimed, summary.succeeded) == (1, 1, 1)
        call = processor.charge_off_session.await_args
        assert call.kwargs["idempotency_key"] == f"retry_{invoice_id}_1"
        assert call.kwargs["metadata"]["invoice_id"] == invoice_id
        assert call.kwargs["metadata"]["tenant_id"] == "T1"

        refreshed = await _job(session_factory, job.id)
        assert refreshed.status == "succeeded"
        assert refreshed.processor_payment_id == "pi_retry"
        assert refreshed.completed_at is not None
        async with session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
            (audit,) = await AuditRepository(session, tenant_id="T1").query(action="payment_retry.succeeded")
        assert invoice.status == "paid"
        assert invoice.amount_paid == 5000
        assert invoice.last_failure is None
        assert audit.entity_id == job.id

    @pytest.mark.asyncio
    async def test_failures_back_off_then_exhaust(
        self, scheduler, processor, notifier, session_factory, invoice_id
    ) -> None:
        """Attempt 1 fails -> +5s, attempt 2 fails -> +10s, attempt 3 fails -> failed."""
        processor.charge_off_session.side_effect = ProcessorError("Your card was declined.", code="card_declined")
        job = await _schedule(scheduler, invoice_id)

        for attempt, expected_delay in ((1, 5), (2, 10)):
            before = datetime.now(UTC)
            summary = await scheduler.sweep(now=_later())
            after = datetime.now(UTC)
            assert summary.rescheduled == 1

            refreshed = await _job(session_factory, job.id)
            assert refreshed.status == "pending"
            assert refreshed.attempt_number == attempt + 1
            assert "card_declined" in refreshed.last_error
            delay = timedelta(seconds=expected_delay)
            assert before + delay <= refreshed.retry_at <= after + delay

        summary = await scheduler.sweep(now=_later())
        assert summary.failed == 1

        refreshed = await _job(session_factory, job.id)
        assert refreshed.status == "failed"
        assert refreshed.attempt_number == 3
        keys = [c.kwargs["idempotency_key"] for c in processor.charge_off_session.await_args_list]
        assert keys == [f"retry_{invoice_id}_{n}" for n in (1, 2, 3)]

        async with session_factory() as session:
            (alert,) = await AuditRepository(session, tenant_id="T1").query(severity="alert")
        assert alert.action == "payment_retry.exhausted"
        notification = notifier.notify.await_args.args[0]
        assert notification.type == "payment_retry_exhausted"
        assert notification.tenant_id == "T1"

        assert (await scheduler.sweep(now=_later(hours=2))).due == 0

    @pytest.mark.asyncio
    async def test_requires_action_intent_is_terminal(
        self, scheduler, processor, notifier, session_factory, invoice_id
    ) -> None:
        processor.charge_off_session.return_value = {"id": "pi_3ds", "status": "requires_action"}
        job = await _schedule(scheduler, invoice_id)

        summary = await scheduler.sweep(now=_later())

        assert summary.requires_action == 1
        assert (await _job(session_factory, job.id)).status == "requires_action"
        assert notifier.notify.await_args.args[0].type == "payment_requires_action"
        assert (await scheduler.sweep(now=_later(hours=2))).due == 0

    @pytest.mark.asyncio
    async def test_authentication_error_is_requires_action(
        self, scheduler, processor, session_factory, invoice_id
    ) -> None:
        processor.charge_off_session.side_effect = ProcessorError(
            "Authentication required", code="authentication_required", requires_action=True
        )
        job = await _schedule(scheduler, invoice_id)
        await scheduler.sweep(now=_later())
        refreshed = await _job(session_factory, job.id)
        assert refreshed.status == "requires_action"
        assert refreshed.attempt_number == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(self, scheduler, processor, session_factory, invoice_id) -> None:
        processor.charge_off_session.side_effect = TimeoutError("read timeout")
        job = await _schedule(scheduler, invoice_id)
        summary = await scheduler.sweep(now=_later())
        assert summary.rescheduled == 1
        assert "TimeoutError" in (await _job(session_factory, job.id)).last_error

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_charge_once(
        self, session_factory, processor, policy, service_settings, invoice_id
    ) -> None:
        processor.charge_off_session.return_value = {"id": "pi_retry", "status": "succeeded"}
        first = RetryScheduler(session_factory, processor, policy, service_settings)
        second = RetryScheduler(session_factory, processor, policy, service_settings)
        await _schedule(first, invoice_id)

        now = _later()
        results = await asyncio.gather(first.sweep(now=now), second.sweep(now=now))

        assert sum(r.claimed for r in results) == 1
        assert processor.charge_off_session.await_count == 1

    @pytest.mark.asyncio
    async def test_batch_size_bounds_sweep(self, session_factory, processor, service_settings) -> None:
        processor.charge_off_session.return_value = {"id": "pi_retry", "status": "succeeded"}
        scheduler = RetryScheduler(
            session_factory, processor, RetryPolicy(jitter_ratio=0.0, batch_size=2), service_settings
        )
        for n in range(3):
            await _schedule(scheduler, f"inv_{n}")

        assert (await scheduler.sweep(now=_later())).succeeded == 2
        assert (await scheduler.sweep(now=_later())).succeeded == 1


class TestRetryChargesAreInternal:
    @pytest.mark.asyncio
    async def test_retry_charge_is_never_mirrored(
        self,
        scheduler,
        processor,
        service_settings,
        notifier,
        intake,
        event_factory,
        seed_patient,
        session_factory,
        invoice_id,
    ) -> None:
        await seed_patient()
        processor.charge_off_session.return_value = {"id": "pi_retry", "status": "succeeded"}
        await _schedule(scheduler, invoice_id)
        await scheduler.sweep(now=_later())

        metadata = processor.charge_off_session.await_args.kwargs["metadata"]
        assert metadata["platform"] == "PAYSYNC"

        charge = {
            "id": "ch_retry",
            "object": "charge",
            "amount": 5000,
            "currency": "usd",
            "payment_intent": "pi_retry",
            "billing_details": {"email": "pat@example.com"},
            "metadata": metadata,
        }
        await intake.ingest(event_factory("charge.succeeded", charge, event_id="evt_ch_retry"))

        mirror = ExternalPaymentMirror(session_factory, processor, service_settings, notifier)
        summary = await MirrorWorker(session_factory, mirror).sweep()

        assert summary.scanned == 0
        processor.create_invoice.assert_not_awaited()
        async with session_factory() as session:
            assert await InvoiceRepository(session).list_for_patient("P42") == []


class TestProcessingIntent:
    @pytest.mark.asyncio
    async def test_processing_leaves_invoice_open(self, scheduler, processor, session_factory, invoice_id) -> None:
        processor.charge_off_session.return_value = {"id": "pi_slow", "status": "processing"}
        job = await _schedule(scheduler, invoice_id)

        summary = await scheduler.sweep(now=_later())

        assert (summary.succeeded, summary.settling) == (0, 1)
        refreshed = await _job(session_factory, job.id)
        assert refreshed.status == "succeeded"
        assert refreshed.processor_payment_id == "pi_slow"
        async with session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
            (audit,) = await AuditRepository(session, tenant_id="T1").query(action="payment_retry.settling")
        assert invoice.status == "open"
        assert audit.entity_id == job.id

    @pytest.mark.asyncio
    async def test_webhooks_settle_processing_charge(
        self, scheduler, processor, intake, event_factory, session_factory, invoice_id
    ) -> None:
        processor.charge_off_session.return_value = {"id": "pi_slow", "status": "processing"}
        await _schedule(scheduler, invoice_id)
        await scheduler.sweep(now=_later())
        metadata = processor.charge_off_session.await_args.kwargs["metadata"]

        intent = {
            "id": "pi_slow",
            "object": "payment_intent",
            "amount": 5000,
            "currency": "usd",
            "customer": "cus_1",
            "metadata": metadata,
            "last_payment_error": {"message": "Insufficient funds."},
        }
        await intake.ingest(event_factory("payment_intent.payment_failed", intent, event_id="evt_failed"))
        async with session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
        assert invoice.status == "open"
        assert invoice.last_failure == "Insufficient funds."

        await intake.ingest(
            event_factory("payment_intent.succeeded", {**intent, "amount_received": 5000}, event_id="evt_ok")
        )
        async with session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
        assert invoice.status == "paid"
        assert invoice.last_failure is None
