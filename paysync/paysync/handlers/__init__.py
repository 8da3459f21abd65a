"""Domain handlers keyed by :class:`~paysync_core.events.EventKind`."""

from __future__ import annotations

from paysync.handlers.base import Handler, HandlerContext, HandlerResult, Outcome
from paysync.handlers.charges import handle_charge_failed, handle_charge_refunded, handle_charge_succeeded
from paysync.handlers.checkout import handle_checkout_completed
from paysync.handlers.customers import (
    handle_customer_upsert,
    handle_payment_method_attached,
    handle_payment_method_detached,
)
from paysync.handlers.disputes import handle_dispute_closed, handle_dispute_created
from paysync.handlers.invoices import (
    handle_invoice_created,
    handle_invoice_paid,
    handle_invoice_payment_failed,
)
from paysync.handlers.payments import handle_payment_failed, handle_payment_succeeded
from paysync.handlers.subscriptions import handle_subscription_deleted, handle_subscription_upsert
from paysync_core.events.types import EventKind

HANDLERS: dict[EventKind, Handler] = {
    EventKind.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventKind.PAYMENT_FAILED: handle_payment_failed,
    EventKind.CHARGE_SUCCEEDED: handle_charge_succeeded,
    EventKind.CHARGE_FAILED: handle_charge_failed,
    EventKind.CHARGE_REFUNDED: handle_charge_refunded,
    EventKind.DISPUTE_CREATED: handle_dispute_created,
    EventKind.DISPUTE_CLOSED: handle_dispute_closed,
    EventKind.CUSTOMER_CREATED: handle_customer_upsert,
    EventKind.CUSTOMER_UPDATED: handle_customer_upsert,
    EventKind.SUBSCRIPTION_CREATED: handle_subscription_upsert,
    EventKind.SUBSCRIPTION_UPDATED: handle_subscription_upsert,
    EventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventKind.INVOICE_CREATED: handle_invoice_created,
    EventKind.INVOICE_PAID: handle_invoice_paid,
    EventKind.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    EventKind.PAYMENT_METHOD_ATTACHED: handle_payment_method_attached,
    EventKind.PAYMENT_METHOD_DETACHED: handle_payment_method_detached,
    EventKind.CHECKOUT_COMPLETED: handle_checkout_completed,
}

__all__ = [
    "HANDLERS",
    "Handler",
    "HandlerContext",
    "HandlerResult",
    "Outcome",
]
