"""Payment intent handlers.

Payment status only moves forward along
``pending < processing < failed < succeeded < refunded``, with ``refunded``
reachable only from ``succeeded``.  A late ``payment_failed`` arriving
after ``succeeded`` is therefore a no-op, which keeps the handlers
order-tolerant.
"""

from __future__ import annotations

import logging
from typing import Any

from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    currency_of,
    metadata_of,
    ref_id,
    require_tenant,
)
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import InvoiceRepository, PaymentRepository
from paysync_core.state.tables import PaymentTable

logger = logging.getLogger(__name__)

STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "processing": 1,
    "failed": 2,
    "succeeded": 3,
    "refunded": 4,
}


def can_advance(current: str, target: str) -> bool:
    if target == "refunded":
        return current == "succeeded"
    return STATUS_RANK[target] > STATUS_RANK[current]


async def upsert_payment(
    ctx: HandlerContext,
    intent: dict[str, Any],
    *,
    tenant_id: str,
    status: str,
    failure_message: str | None = None,
) -> PaymentTable:
    """Insert or advance the payment row for *intent*."""
    repo = PaymentRepository(ctx.session)
    invoice_ref = ref_id(intent.get("invoice"))
    amount = intent.get("amount_received") or intent.get("amount") or 0
    row = await repo.ensure(
        {
            "tenant_id": tenant_id,
            "customer_id": ref_id(intent.get("customer")),
            "processor_payment_id": intent["id"],
            "processor_charge_id": ref_id(intent.get("latest_charge")),
            "processor_invoice_id": invoice_ref,
            "amount": int(amount),
            "currency": currency_of(intent),
            "status": status,
            "payment_type": "subscription_payment" if invoice_ref else "one_time",
            "description": intent.get("description"),
            "failure_message": failure_message,
            "metadata_json": metadata_of(intent) or None,
        }
    )
    if row.status != status and can_advance(row.status, status):
        await repo.update(
            row,
            status=status,
            amount=int(amount),
            processor_charge_id=ref_id(intent.get("latest_charge")) or row.processor_charge_id,
            failure_message=failure_message,
        )
    elif row.status != status:
        logger.info(
            "Ignoring %s for payment %s already %s",
            status,
            row.processor_payment_id,
            row.status,
        )
    return row


async def handle_payment_succeeded(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    intent = event.object
    tenant_id = require_tenant(intent, "Payment intent")
    payment = await upsert_payment(ctx, intent, tenant_id=tenant_id, status="succeeded")

    invoice_ref = ref_id(intent.get("invoice"))
    await ctx.ledger.credit_net_proceeds(
        ctx.session,
        tenant_id=tenant_id,
        # invoice.paid credits the same invoice; sharing the id dedupes them.
        source_id=invoice_ref or intent["id"],
        gross_amount=payment.amount,
        currency=payment.currency,
        description=f"Payment {intent['id']}",
    )

    # Retry charges carry the internal invoice id.
    internal_invoice = metadata_of(intent).get("invoice_id")
    if internal_invoice:
        invoices = InvoiceRepository(ctx.session)
        if await invoices.get(str(internal_invoice)) is not None:
            await invoices.mark_paid(str(internal_invoice), amount_paid=payment.amount)

    return HandlerResult.applied()


async def handle_payment_failed(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    intent = event.object
    tenant_id = require_tenant(intent, "Payment intent")
    error = intent.get("last_payment_error") or {}
    message = error.get("message") if isinstance(error, dict) else None
    await upsert_payment(
        ctx,
        intent,
        tenant_id=tenant_id,
        status="failed",
        failure_message=message or "payment failed",
    )
    logger.warning("Payment %s failed for tenant=%s: %s", intent["id"], tenant_id, message)

    # A retry charge that was still processing when its job ended.
    internal_invoice = metadata_of(intent).get("invoice_id")
    if internal_invoice:
        await InvoiceRepository(ctx.session).record_failure(str(internal_invoice), message or "payment failed")
    return HandlerResult.applied()
