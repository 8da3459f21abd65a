"""Charge handlers: snapshots for mirroring, failures and refunds."""

from __future__ import annotations

import logging
from typing import Any

from paysync.errors import TerminalSkip
from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    currency_of,
    metadata_of,
    ref_id,
    tenant_for_charge,
    tenant_from_metadata,
)
from paysync.handlers.payments import can_advance
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import (
    ChargeSnapshotRepository,
    PaymentRepository,
    RefundRepository,
)

logger = logging.getLogger(__name__)


def _charge_email(charge: dict[str, Any]) -> str | None:
    billing = charge.get("billing_details") or {}
    return billing.get("email") or charge.get("receipt_email")


async def handle_charge_succeeded(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    """Snapshot the charge for the mirror worker and link it to its payment."""
    charge = event.object
    platform_origin = ctx.settings.is_platform_marked(metadata_of(charge))
    await ChargeSnapshotRepository(ctx.session).record(
        {
            "processor_charge_id": charge["id"],
            "tenant_id": tenant_from_metadata(charge),
            "amount": int(charge.get("amount") or 0),
            "currency": currency_of(charge),
            "email": _charge_email(charge),
            "processor_invoice_id": ref_id(charge.get("invoice")),
            "platform_origin": platform_origin,
            "payload": charge,
        }
    )

    intent_id = ref_id(charge.get("payment_intent"))
    if intent_id:
        payments = PaymentRepository(ctx.session)
        payment = await payments.get_by_processor_id(intent_id)
        if payment is not None and payment.processor_charge_id != charge["id"]:
            await payments.update(payment, processor_charge_id=charge["id"])
    return HandlerResult.applied()


async def handle_charge_failed(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    charge = event.object
    intent_id = ref_id(charge.get("payment_intent"))
    if not intent_id:
        return HandlerResult.ignored(f"Charge {charge['id']} has no payment intent")

    payments = PaymentRepository(ctx.session)
    payment = await payments.get_by_processor_id(intent_id)
    if payment is None:
        raise TerminalSkip(f"Charge {charge['id']} failed for unknown payment {intent_id}")

    message = charge.get("failure_message") or charge.get("failure_code") or "charge failed"
    if can_advance(payment.status, "failed"):
        await payments.update(
            payment,
            status="failed",
            processor_charge_id=charge["id"],
            failure_message=message,
        )
    return HandlerResult.applied()


def _synthetic_prefix(charge_id: str) -> str:
    return f"{charge_id}:"


async def _unbooked_refunds(
    refunds: RefundRepository,
    charge_id: str,
    embedded: list[dict[str, Any]],
    *,
    tenant_id: str,
    currency: str,
) -> list[tuple[dict[str, Any], int]]:
    """Embedded refunds not recorded yet, each with the amount still to debit.

    Refunds booked earlier from ``amount_refunded`` alone carry synthetic
    ids.  They cover the first real refunds that show up later; whatever
    they do not cover stays on one synthetic row, so the recorded total
    always equals the amount debited for the charge.
    """
    recorded = await refunds.list_for_charge(charge_id)
    known = {row.processor_refund_id for row in recorded}
    synthetic = [row for row in recorded if row.processor_refund_id.startswith(_synthetic_prefix(charge_id))]
    cover = sum(row.amount for row in synthetic)

    unbooked: list[tuple[dict[str, Any], int]] = []
    for refund in embedded:
        if refund["id"] in known:
            continue
        amount = int(refund.get("amount") or 0)
        covered = min(amount, cover)
        cover -= covered
        unbooked.append((refund, amount - covered))

    if synthetic and unbooked:
        for row in synthetic:
            await refunds.delete(row)
        if cover:
            await refunds.upsert(
                {
                    "tenant_id": tenant_id,
                    "processor_refund_id": f"{_synthetic_prefix(charge_id)}unattributed",
                    "processor_charge_id": charge_id,
                    "amount": cover,
                    "currency": currency,
                    "status": "succeeded",
                    "reason": None,
                }
            )
    return unbooked


async def handle_charge_refunded(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    """Record each refund and debit it from the tenant ledger.

    Refund objects are keyed by their processor id.  When the payload does
    not embed them, the increase of ``amount_refunded`` over what is already
    recorded becomes a synthetic refund, reconciled once the real refund
    objects arrive.
    """
    charge = event.object
    charge_id = charge["id"]
    tenant_id = await tenant_for_charge(ctx, charge, charge_id, "Charge")
    currency = currency_of(charge)
    refunds = RefundRepository(ctx.session)

    embedded = [
        r
        for r in (charge.get("refunds") or {}).get("data") or []
        if isinstance(r, dict) and r.get("id") and r.get("status") in (None, "succeeded", "pending")
    ]
    if embedded:
        items = await _unbooked_refunds(refunds, charge_id, embedded, tenant_id=tenant_id, currency=currency)
    else:
        already = await refunds.total_for_charge(charge_id)
        delta = int(charge.get("amount_refunded") or 0) - already
        if delta <= 0:
            return HandlerResult.ignored(f"No new refund amount on charge {charge_id}")
        synthetic = {
            "id": f"{_synthetic_prefix(charge_id)}{charge.get('amount_refunded')}",
            "amount": delta,
            "status": "succeeded",
            "reason": None,
        }
        items = [(synthetic, delta)]

    for refund, debit in items:
        await refunds.upsert(
            {
                "tenant_id": tenant_id,
                "processor_refund_id": refund["id"],
                "processor_charge_id": charge_id,
                "amount": int(refund.get("amount") or 0),
                "currency": currency,
                "status": refund.get("status") or "succeeded",
                "reason": refund.get("reason"),
            }
        )
        if debit <= 0:
            continue
        await ctx.ledger.append(
            ctx.session,
            tenant_id=tenant_id,
            source="refund",
            source_id=refund["id"],
            amount=debit,
            currency=currency,
            direction="debit",
            description=f"Refund {refund['id']} on charge {charge_id}",
        )

    payments = PaymentRepository(ctx.session)
    intent_id = ref_id(charge.get("payment_intent"))
    payment = await payments.get_by_processor_id(intent_id) if intent_id else None
    if payment is None:
        payment = await payments.get_by_charge_id(charge_id)
    if payment is not None:
        fields: dict[str, Any] = {"amount_refunded": int(charge.get("amount_refunded") or 0)}
        if charge.get("refunded") and can_advance(payment.status, "refunded"):
            fields["status"] = "refunded"
        await payments.update(payment, **fields)
    return HandlerResult.applied()
