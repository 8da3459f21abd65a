"""External checkout handler.

Completed checkout sessions are matched to a known processor customer,
first by id and then by normalised email.  Unmatched sessions are stored
as ``pending_review`` for manual triage; no customer is ever created.
"""

from __future__ import annotations

import logging

from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    currency_of,
    ref_id,
    tenant_from_metadata,
)
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import CustomerRepository, ExternalCheckoutRepository

logger = logging.getLogger(__name__)


async def handle_checkout_completed(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    session = event.object
    details = session.get("customer_details") or {}
    email = details.get("email") or session.get("customer_email")

    customers = CustomerRepository(ctx.session)
    customer = None
    customer_ref = ref_id(session.get("customer"))
    if customer_ref:
        customer = await customers.get_by_processor_id(customer_ref)
    if customer is None and email:
        customer = await customers.find_by_email(email)

    status = "matched" if customer is not None else "pending_review"
    await ExternalCheckoutRepository(ctx.session).upsert(
        {
            "processor_session_id": session["id"],
            "processor_payment_id": ref_id(session.get("payment_intent")),
            "tenant_id": customer.tenant_id if customer is not None else tenant_from_metadata(session),
            "matched_customer_id": customer.processor_customer_id if customer is not None else None,
            "email": email,
            "amount": int(session.get("amount_total") or 0),
            "currency": currency_of(session),
            "status": status,
        }
    )
    if customer is None:
        logger.warning("Checkout %s (%s) queued for review: no matching customer", session["id"], email)
        return HandlerResult.applied("pending_review")
    return HandlerResult.applied("matched")
