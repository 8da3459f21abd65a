"""Dispute handlers.

Opening a dispute debits the disputed amount; closing it as ``won``
credits it back.  Other closing statuses only update the dispute row.
"""

from __future__ import annotations

import logging

from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    currency_of,
    from_epoch,
    ref_id,
    tenant_for_charge,
)
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import DisputeRepository

logger = logging.getLogger(__name__)


async def _upsert_dispute(ctx: HandlerContext, event: ProcessorEvent) -> tuple[str, dict]:
    dispute = event.object
    charge_id = ref_id(dispute.get("charge"))
    tenant_id = await tenant_for_charge(ctx, dispute, charge_id, "Dispute")
    evidence = dispute.get("evidence_details") or {}
    await DisputeRepository(ctx.session).upsert(
        {
            "tenant_id": tenant_id,
            "processor_dispute_id": dispute["id"],
            "processor_charge_id": charge_id or "",
            "amount": int(dispute.get("amount") or 0),
            "currency": currency_of(dispute),
            "status": dispute.get("status") or "needs_response",
            "reason": dispute.get("reason"),
            "evidence_due_by": from_epoch(evidence.get("due_by")),
        }
    )
    return tenant_id, dispute


async def handle_dispute_created(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    tenant_id, dispute = await _upsert_dispute(ctx, event)
    await ctx.ledger.append(
        ctx.session,
        tenant_id=tenant_id,
        source="dispute",
        source_id=dispute["id"],
        amount=int(dispute.get("amount") or 0),
        currency=currency_of(dispute),
        direction="debit",
        description=f"Dispute {dispute['id']} opened ({dispute.get('reason') or 'unspecified'})",
    )
    logger.warning("Dispute %s opened for tenant=%s", dispute["id"], tenant_id)
    return HandlerResult.applied()


async def handle_dispute_closed(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    tenant_id, dispute = await _upsert_dispute(ctx, event)
    if dispute.get("status") != "won":
        logger.info("Dispute %s closed as %s", dispute["id"], dispute.get("status"))
        return HandlerResult.applied()
    await ctx.ledger.append(
        ctx.session,
        tenant_id=tenant_id,
        source="dispute",
        source_id=dispute["id"],
        amount=int(dispute.get("amount") or 0),
        currency=currency_of(dispute),
        direction="credit",
        description=f"Dispute {dispute['id']} won",
    )
    return HandlerResult.applied()
