"""Customer and payment-method handlers (non-money events)."""

from __future__ import annotations

import logging

from paysync.errors import TerminalSkip
from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    metadata_of,
    ref_id,
    require_customer,
    tenant_from_metadata,
)
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import CustomerRepository, PaymentMethodRepository

logger = logging.getLogger(__name__)


async def handle_customer_upsert(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    """Handle ``customer.created`` and ``customer.updated``."""
    customer = event.object
    repo = CustomerRepository(ctx.session)
    tenant_id = tenant_from_metadata(customer)
    if tenant_id is None:
        existing = await repo.get_by_processor_id(customer["id"])
        if existing is None:
            raise TerminalSkip(f"Customer {customer['id']} has no tenant_id metadata")
        tenant_id = existing.tenant_id

    settings = customer.get("invoice_settings") or {}
    await repo.upsert(
        {
            "tenant_id": tenant_id,
            "processor_customer_id": customer["id"],
            "patient_id": metadata_of(customer).get("patient_id"),
            "email": customer.get("email"),
            "name": customer.get("name"),
            "default_payment_method_id": ref_id(settings.get("default_payment_method")),
        }
    )
    return HandlerResult.applied()


async def handle_payment_method_attached(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    method = event.object
    customer = await require_customer(ctx, ref_id(method.get("customer")), f"Payment method {method['id']}")
    card = method.get("card") or {}
    await PaymentMethodRepository(ctx.session).upsert(
        {
            "tenant_id": customer.tenant_id,
            "processor_payment_method_id": method["id"],
            "processor_customer_id": customer.processor_customer_id,
            "method_type": method.get("type") or "card",
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
            "attached": True,
        }
    )
    return HandlerResult.applied()


async def handle_payment_method_detached(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    """Detached methods no longer carry a customer; resolve via the stored row."""
    method = event.object
    repo = PaymentMethodRepository(ctx.session)
    existing = await repo.get_by_processor_id(method["id"])
    if existing is None:
        raise TerminalSkip(f"Detached payment method {method['id']} was never recorded")
    await repo.upsert(
        {
            "tenant_id": existing.tenant_id,
            "processor_payment_method_id": method["id"],
            "processor_customer_id": existing.processor_customer_id,
            "method_type": existing.method_type,
            "attached": False,
        }
    )
    return HandlerResult.applied()
