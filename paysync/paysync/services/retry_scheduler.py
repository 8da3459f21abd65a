"""Payment retry scheduler.

Each retry job walks the state machine::

    pending -> processing -> succeeded
                          -> retrying -> pending      (attempt budget left)
                          -> requires_action          (customer must act)
                          -> failed                   (budget exhausted)
    pending -> cancelled

The periodic sweep selects due ``pending`` jobs in bounded batches and
claims each one with a guarded ``UPDATE ... WHERE status = 'pending'``
committed before the processor is called, so concurrent sweepers never
charge the same job twice.  Outbound charges use the idempotency key
``retry_{invoice_id}_{attempt}`` and carry the platform marker, so the
mirror worker never treats a retry charge as an external payment.

A payment intent the processor accepted but has not settled yet
(``processing``) ends the job without marking the invoice paid; the
``payment_intent.*`` webhooks settle the invoice from its metadata.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.config import ServiceSettings
from paysync.errors import ProcessorError
from paysync.processor_client import ProcessorClient
from paysync.services.notifier import BillingNotification, BillingNotifier
from paysync.services.periodic import PeriodicWorker
from paysync_core.retry import RetryPolicy, RetryStatus
from paysync_core.state.repository import AuditRepository, InvoiceRepository, RetryJobRepository
from paysync_core.state.tables import RetryJobTable

logger = logging.getLogger(__name__)

_ACTOR = "retry-scheduler"

# Accepted by the processor; a new attempt would charge twice.
_ACCEPTED_STATUSES = frozenset({"succeeded", "processing"})


def idempotency_key(invoice_id: str, attempt: int) -> str:
    return f"retry_{invoice_id}_{attempt}"


async def enqueue_retry(
    session: AsyncSession,
    policy: RetryPolicy,
    *,
    tenant_id: str,
    invoice_id: str,
    processor_customer_id: str,
    payment_method_id: str,
    amount: int,
    currency: str,
    error: str | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> tuple[RetryJobTable, bool]:
    """Create the first retry job for *invoice_id* within *session*.

    Returns ``(job, created)``; an invoice that already has an active job
    gets that job back with ``created=False``.
    """
    repo = RetryJobRepository(session)
    active = await repo.get_active_for_invoice(invoice_id)
    if active is not None:
        return active, False
    now = now or datetime.now(UTC)
    job = await repo.create(
        tenant_id=tenant_id,
        invoice_id=invoice_id,
        processor_customer_id=processor_customer_id,
        payment_method_id=payment_method_id,
        amount=amount,
        currency=currency,
        retry_at=policy.next_retry_at(1, now, rng=rng),
        last_error=error,
    )
    logger.info(
        "Scheduled payment retry %s for invoice %s at %s",
        job.id,
        invoice_id,
        job.retry_at.isoformat(),
        extra={"tenant_id": tenant_id, "job_id": job.id},
    )
    return job, True


@dataclass
class SweepSummary:
    due: int = 0
    claimed: int = 0
    succeeded: int = 0
    settling: int = 0
    rescheduled: int = 0
    requires_action: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class _AttemptOutcome:
    status: RetryStatus
    error: str | None = None
    payment_id: str | None = None
    settled: bool = True


class RetryScheduler(PeriodicWorker):
    """Sweeps due retry jobs and re-attempts their charges.

    Parameters
    ----------
    session_factory:
        Creates a session per claim and per outcome.
    processor:
        The injected processor client.
    policy:
        The single retry policy (attempt budget, backoff, batch size).
    settings:
        Supplies the platform marker stamped on every retry charge.
    notifier:
        Receives ``requires_action`` and exhaustion notifications.
    interval_seconds:
        Sweep period for :meth:`start`.
    rng:
        Jitter source; tests pass a seeded ``random.Random``.
    """

    name = "retry-scheduler"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: ProcessorClient,
        policy: RetryPolicy,
        settings: ServiceSettings,
        *,
        notifier: BillingNotifier | None = None,
        interval_seconds: float = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(interval_seconds)
        self._session_factory = session_factory
        self._processor = processor
        self._policy = policy
        self._settings = settings
        self._notifier = notifier
        self._rng = rng

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # -- Public operations -------------------------------------------------

    async def schedule_retry(
        self,
        *,
        tenant_id: str,
        invoice_id: str,
        processor_customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        error: str | None = None,
    ) -> RetryJobTable:
        async with self._session_factory() as session:
            job, _ = await enqueue_retry(
                session,
                self._policy,
                tenant_id=tenant_id,
                invoice_id=invoice_id,
                processor_customer_id=processor_customer_id,
                payment_method_id=payment_method_id,
                amount=amount,
                currency=currency,
                error=error,
                rng=self._rng,
            )
            await session.commit()
            return job

    async def get_retry_status(self, invoice_id: str) -> RetryJobTable | None:
        """Most recent job for *invoice_id*, in any status."""
        async with self._session_factory() as session:
            return await RetryJobRepository(session).latest_for_invoice(invoice_id)

    async def cancel_retries(self, invoice_id: str) -> int:
        """Cancel pending jobs for *invoice_id*; returns how many changed."""
        async with self._session_factory() as session:
            count = await RetryJobRepository(session).cancel_pending(invoice_id)
            await session.commit()
        if count:
            logger.info("Cancelled %d pending retry job(s) for invoice %s", count, invoice_id)
        return count

    async def run_once(self) -> None:
        summary = await self.sweep()
        if summary.due:
            logger.info("Retry sweep: %s", summary.as_dict())

    async def sweep(self, now: datetime | None = None) -> SweepSummary:
        """Process one bounded batch of due jobs."""
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            due = await RetryJobRepository(session).list_due(now, limit=self._policy.batch_size)
            job_ids = [job.id for job in due]

        summary = SweepSummary(due=len(job_ids))
        for job_id in job_ids:
            await self._process(job_id, summary)
        return summary

    # -- Internals ---------------------------------------------------------

    async def _claim(self, job_id: str) -> RetryJobTable | None:
        async with self._session_factory() as session:
            repo = RetryJobRepository(session)
            if not await repo.claim(job_id):
                return None
            await session.commit()
            return await repo.get(job_id)

    async def _attempt(self, job: RetryJobTable) -> _AttemptOutcome:
        key = idempotency_key(job.invoice_id, job.attempt_number)
        try:
            intent = await self._processor.charge_off_session(
                amount=job.amount,
                currency=job.currency,
                customer=job.processor_customer_id,
                payment_method=job.payment_method_id,
                idempotency_key=key,
                metadata={
                    **self._settings.platform_metadata,
                    "tenant_id": job.tenant_id,
                    "invoice_id": job.invoice_id,
                    "retry_job_id": job.id,
                    "retry_attempt": str(job.attempt_number),
                },
                description=f"Retry {job.attempt_number} for invoice {job.invoice_id}",
            )
        except ProcessorError as exc:
            if exc.requires_action:
                return _AttemptOutcome(RetryStatus.REQUIRES_ACTION, error=str(exc))
            return _AttemptOutcome(RetryStatus.RETRYING, error=f"{exc.code or 'processor_error'}: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error charging retry job %s", job.id)
            return _AttemptOutcome(RetryStatus.RETRYING, error=f"{type(exc).__name__}: {exc}")

        status = intent.get("status")
        if status in _ACCEPTED_STATUSES:
            return _AttemptOutcome(
                RetryStatus.SUCCEEDED,
                payment_id=intent.get("id"),
                settled=status == "succeeded",
            )
        if status == "requires_action":
            return _AttemptOutcome(RetryStatus.REQUIRES_ACTION, error="customer authentication required")
        return _AttemptOutcome(RetryStatus.RETRYING, error=f"payment intent status {status}")

    async def _process(self, job_id: str, summary: SweepSummary) -> None:
        job = await self._claim(job_id)
        if job is None:
            logger.debug("Retry job %s claimed elsewhere", job_id)
            return
        summary.claimed += 1

        outcome = await self._attempt(job)
        now = datetime.now(UTC)
        notification: BillingNotification | None = None

        async with self._session_factory() as session:
            repo = RetryJobRepository(session)
            audit = AuditRepository(session, tenant_id=job.tenant_id)
            audit_meta: dict[str, Any] = {
                "invoice_id": job.invoice_id,
                "attempt": job.attempt_number,
                "amount": job.amount,
                "currency": job.currency,
                "error": outcome.error,
            }

            if outcome.status is RetryStatus.SUCCEEDED:
                await repo.transition(
                    job.id,
                    RetryStatus.PROCESSING,
                    RetryStatus.SUCCEEDED,
                    processor_payment_id=outcome.payment_id,
                    last_error=None,
                )
                if outcome.settled:
                    await InvoiceRepository(session).mark_paid(job.invoice_id, amount_paid=job.amount)
                    summary.succeeded += 1
                    logger.info("Retry job %s succeeded on attempt %d", job.id, job.attempt_number)
                else:
                    summary.settling += 1
                    logger.info(
                        "Retry job %s accepted on attempt %d; payment %s still processing",
                        job.id,
                        job.attempt_number,
                        outcome.payment_id,
                    )
                await audit.log(
                    actor=_ACTOR,
                    action="payment_retry.succeeded" if outcome.settled else "payment_retry.settling",
                    entity_type="retry_job",
                    entity_id=job.id,
                    metadata={**audit_meta, "payment_id": outcome.payment_id},
                )

            elif outcome.status is RetryStatus.REQUIRES_ACTION:
                await repo.transition(
                    job.id,
                    RetryStatus.PROCESSING,
                    RetryStatus.REQUIRES_ACTION,
                    last_error=outcome.error,
                )
                await audit.log(
                    actor=_ACTOR,
                    action="payment_retry.requires_action",
                    severity="warning",
                    entity_type="retry_job",
                    entity_id=job.id,
                    metadata=audit_meta,
                )
                summary.requires_action += 1
                logger.warning("Retry job %s requires customer action; not retrying", job.id)
                notification = BillingNotification(
                    type="payment_requires_action",
                    title=f"Invoice {job.invoice_id} needs customer authentication",
                    body=outcome.error or "",
                    tenant_id=job.tenant_id,
                    data=audit_meta,
                )

            elif self._policy.is_exhausted(job.attempt_number):
                await repo.transition(
                    job.id,
                    RetryStatus.PROCESSING,
                    RetryStatus.FAILED,
                    last_error=outcome.error,
                )
                await audit.log(
                    actor=_ACTOR,
                    action="payment_retry.exhausted",
                    severity="alert",
                    entity_type="retry_job",
                    entity_id=job.id,
                    metadata=audit_meta,
                )
                summary.failed += 1
                logger.error(
                    "Retry job %s for invoice %s failed after %d attempts: %s",
                    job.id,
                    job.invoice_id,
                    job.attempt_number,
                    outcome.error,
                    extra={"tenant_id": job.tenant_id, "job_id": job.id},
                )
                notification = BillingNotification(
                    type="payment_retry_exhausted",
                    title=f"Payment retries exhausted for invoice {job.invoice_id}",
                    body=outcome.error or "",
                    tenant_id=job.tenant_id,
                    data=audit_meta,
                )

            else:
                retry_at = self._policy.next_retry_at(job.attempt_number, now, rng=self._rng)
                await repo.transition(
                    job.id,
                    RetryStatus.PROCESSING,
                    RetryStatus.RETRYING,
                    last_error=outcome.error,
                )
                await repo.transition(
                    job.id,
                    RetryStatus.RETRYING,
                    RetryStatus.PENDING,
                    attempt_number=job.attempt_number + 1,
                    retry_at=retry_at,
                )
                summary.rescheduled += 1
                logger.info(
                    "Retry job %s attempt %d failed (%s); next attempt at %s",
                    job.id,
                    job.attempt_number,
                    outcome.error,
                    retry_at.isoformat(),
                )

            await session.commit()

        if notification is not None and self._notifier is not None:
            await self._notifier.notify(notification)
