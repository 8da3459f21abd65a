"""Subscription lifecycle handlers."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from paysync.handlers.base import (
    HandlerContext,
    HandlerResult,
    from_epoch,
    ref_id,
    require_customer,
)
from paysync_core.events.types import ProcessorEvent
from paysync_core.state.repository import SubscriptionRepository


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


async def _upsert(ctx: HandlerContext, subscription: dict[str, Any], *, deleted: bool = False) -> None:
    customer = await require_customer(
        ctx,
        ref_id(subscription.get("customer")),
        f"Subscription {subscription['id']}",
    )
    item = _first_item(subscription)
    # Newer API versions moved the billing period onto the items.
    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")
    canceled_at = from_epoch(subscription.get("canceled_at"))
    if deleted and canceled_at is None:
        canceled_at = datetime.now(UTC)

    await SubscriptionRepository(ctx.session).upsert(
        {
            "tenant_id": customer.tenant_id,
            "processor_subscription_id": subscription["id"],
            "processor_customer_id": customer.processor_customer_id,
            "price_id": ref_id((item.get("price") or {}).get("id")),
            "status": "canceled" if deleted else (subscription.get("status") or "incomplete"),
            "current_period_start": from_epoch(period_start),
            "current_period_end": from_epoch(period_end),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "canceled_at": canceled_at,
        }
    )


async def handle_subscription_upsert(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    """Handle ``customer.subscription.created`` and ``.updated``."""
    await _upsert(ctx, event.object)
    return HandlerResult.applied()


async def handle_subscription_deleted(ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
    await _upsert(ctx, event.object, deleted=True)
    return HandlerResult.applied()
