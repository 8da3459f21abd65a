"""Invoice handlers.

``invoice.paid`` credits the tenant's net proceeds keyed on the processor
invoice id, which the payment-intent handler shares, so an invoice paid
through a payment intent is credited once no matter which event lands
first.  Failed payments on platform-originated one-off invoices enqueue a
retry job; subscription invoices are left to the processor's own dunning.
"""

from __future__ import annotations

import logging
from typing import Any

from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    currency_of,
    from_epoch,
    metadata_of,
    ref_id,
    require_customer,
)
from paysync.services.retry_scheduler import enqueue_retry
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import (
    InvoiceRepository,
    PaymentMethodRepository,
    RetryJobRepository,
)
from paysync_core.state.tables import InvoiceTable, ProcessorCustomerTable

logger = logging.getLogger(__name__)

_INVOICE_STATUSES = frozenset({"draft", "open", "paid", "void", "uncollectible"})


def _status(invoice: dict[str, Any], default: str = "open") -> str:
    status = invoice.get("status")
    return status if status in _INVOICE_STATUSES else default


async def _upsert_invoice(
    ctx: HandlerContext,
    invoice: dict[str, Any],
    customer: ProcessorCustomerTable,
    *,
    status: str,
    **extra: Any,
) -> InvoiceTable:
    metadata = metadata_of(invoice)
    return await InvoiceRepository(ctx.session).upsert(
        {
            "tenant_id": customer.tenant_id,
            "processor_invoice_id": invoice["id"],
            "processor_customer_id": customer.processor_customer_id,
            "processor_subscription_id": ref_id(invoice.get("subscription")),
            "patient_id": customer.patient_id,
            "amount_due": int(invoice.get("amount_due") or 0),
            "amount_paid": int(invoice.get("amount_paid") or 0),
            "currency": currency_of(invoice),
            "status": status,
            "platform_origin": ctx.settings.is_platform_marked(metadata),
            "description": invoice.get("description"),
            **extra,
        }
    )


async def handle_invoice_created(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    invoice = event.object
    customer = await require_customer(ctx, ref_id(invoice.get("customer")), f"Invoice {invoice['id']}")
    existing = await InvoiceRepository(ctx.session).get_by_processor_id(invoice["id"])
    if existing is not None and existing.status == "paid":
        # invoice.created delivered after invoice.paid.
        return HandlerResult.ignored(f"invoice {invoice['id']} already paid")
    await _upsert_invoice(ctx, invoice, customer, status=_status(invoice, default="draft"))
    return HandlerResult.applied()


async def handle_invoice_paid(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    invoice = event.object
    customer = await require_customer(ctx, ref_id(invoice.get("customer")), f"Invoice {invoice['id']}")
    transitions = invoice.get("status_transitions") or {}
    row = await _upsert_invoice(
        ctx,
        invoice,
        customer,
        status="paid",
        paid_at=from_epoch(transitions.get("paid_at") or event.created.timestamp()),
        last_failure=None,
        # Only takes effect on insert; the column is immutable afterwards.
        paid_out_of_band=bool(invoice.get("paid_out_of_band")),
    )

    amount_paid = int(invoice.get("amount_paid") or 0)
    if row.paid_out_of_band or invoice.get("paid_out_of_band"):
        # Out-of-band settlement moved no money through the processor.
        logger.info("Invoice %s was paid out of band; no ledger credit", invoice["id"])
    elif amount_paid > 0:
        await ctx.ledger.credit_net_proceeds(
            ctx.session,
            tenant_id=customer.tenant_id,
            source_id=invoice["id"],
            gross_amount=amount_paid,
            currency=currency_of(invoice),
            description=f"Invoice {invoice['id']} paid",
        )

    cancelled = await RetryJobRepository(ctx.session).cancel_pending(row.id)
    if cancelled:
        logger.info("Invoice %s paid; cancelled %d pending retry job(s)", invoice["id"], cancelled)
    return HandlerResult.applied()


async def _retry_payment_method(
    ctx: HandlerContext,
    invoice: dict[str, Any],
    customer: ProcessorCustomerTable,
) -> str | None:
    explicit = ref_id(invoice.get("default_payment_method"))
    if explicit:
        return explicit
    if customer.default_payment_method_id:
        return customer.default_payment_method_id
    method = await PaymentMethodRepository(ctx.session).first_attached_for_customer(customer.processor_customer_id)
    return method.processor_payment_method_id if method is not None else None


async def handle_invoice_payment_failed(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    invoice = event.object
    customer = await require_customer(ctx, ref_id(invoice.get("customer")), f"Invoice {invoice['id']}")
    error = (invoice.get("last_finalization_error") or {}).get("message") or "invoice payment failed"

    existing = await InvoiceRepository(ctx.session).get_by_processor_id(invoice["id"])
    if existing is not None and existing.status == "paid":
        return HandlerResult.ignored(f"invoice {invoice['id']} already paid")

    row = await _upsert_invoice(ctx, invoice, customer, status="open", last_failure=error)
    logger.warning("Payment failed for invoice %s (tenant=%s)", invoice["id"], customer.tenant_id)

    if not row.platform_origin or row.processor_subscription_id:
        return HandlerResult.applied("processor handles collection")

    payment_method = await _retry_payment_method(ctx, invoice, customer)
    if payment_method is None:
        logger.warning("Invoice %s has no payment method to retry with", invoice["id"])
        return HandlerResult.applied("no payment method on file")

    amount = int(invoice.get("amount_remaining") or invoice.get("amount_due") or 0)
    if amount <= 0:
        return HandlerResult.applied("nothing left to collect")

    _, created = await enqueue_retry(
        ctx.session,
        ctx.retry_policy,
        tenant_id=customer.tenant_id,
        invoice_id=row.id,
        processor_customer_id=customer.processor_customer_id,
        payment_method_id=payment_method,
        amount=amount,
        currency=currency_of(invoice),
        error=error,
    )
    return HandlerResult.applied("retry scheduled" if created else "retry already active")
