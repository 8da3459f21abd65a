"""Closed set of processor event kinds plus the verified event envelope.

The processor's type strings are opaque and versioned; this module is the
single place that maps the ones we act on to :class:`EventKind`.  Every
other string maps to :attr:`EventKind.UNRECOGNIZED`, which the router
treats as a neutral no-op.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class EventKind(str, Enum):
    """Event kinds the core knows how to apply."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    CHARGE_REFUNDED = "charge_refunded"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_CLOSED = "dispute_closed"
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_CREATED = "invoice_created"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"
    PAYMENT_METHOD_DETACHED = "payment_method_detached"
    CHECKOUT_COMPLETED = "checkout_completed"
    UNRECOGNIZED = "unrecognized"


_TYPE_TO_KIND: dict[str, EventKind] = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "charge.succeeded": EventKind.CHARGE_SUCCEEDED,
    "charge.failed": EventKind.CHARGE_FAILED,
    "charge.refunded": EventKind.CHARGE_REFUNDED,
    "charge.dispute.created": EventKind.DISPUTE_CREATED,
    "charge.dispute.closed": EventKind.DISPUTE_CLOSED,
    "customer.created": EventKind.CUSTOMER_CREATED,
    "customer.updated": EventKind.CUSTOMER_UPDATED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.created": EventKind.INVOICE_CREATED,
    "invoice.paid": EventKind.INVOICE_PAID,
    # Sent alongside invoice.paid; the ledger dedupes on the invoice id.
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "payment_method.attached": EventKind.PAYMENT_METHOD_ATTACHED,
    "payment_method.detached": EventKind.PAYMENT_METHOD_DETACHED,
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
}

# Kinds whose handlers may append to the tenant ledger.
MONEY_MOVING_KINDS: frozenset[EventKind] = frozenset(
    {
        EventKind.PAYMENT_SUCCEEDED,
        EventKind.INVOICE_PAID,
        EventKind.CHARGE_REFUNDED,
        EventKind.DISPUTE_CREATED,
        EventKind.DISPUTE_CLOSED,
    }
)


def classify(event_type: str) -> EventKind:
    """Map a processor type string to its :class:`EventKind`."""
    return _TYPE_TO_KIND.get(event_type.strip(), EventKind.UNRECOGNIZED)


class ProcessorEvent(BaseModel):
    """A verified, already-authenticated event from the payment processor.

    Attributes
    ----------
    id:
        The processor's opaque event identifier (globally unique).
    type:
        Raw type string as delivered, e.g. ``invoice.paid``.
    data:
        The ``data`` envelope; the affected object lives under ``object``.
    created:
        When the processor created the event.
    api_version:
        Processor API version the payload was rendered with.
    """

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=128)
    data: dict[str, Any] = Field(default_factory=dict)
    created: datetime = Field(default_factory=lambda: datetime.now(UTC))
    api_version: str | None = None
    livemode: bool = False

    @field_validator("created", mode="before")
    @classmethod
    def _epoch_to_datetime(cls, v: Any) -> Any:
        # The processor sends unix seconds.
        if isinstance(v, int | float):
            return datetime.fromtimestamp(v, tz=UTC)
        return v

    @property
    def kind(self) -> EventKind:
        return classify(self.type)

    @property
    def object(self) -> dict[str, Any]:
        """The event's subject object (``data.object``)."""
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProcessorEvent:
        """Build an event from a decoded processor payload."""
        return cls.model_validate(
            {
                "id": payload.get("id"),
                "type": payload.get("type"),
                "data": payload.get("data") or {},
                "created": payload.get("created") or datetime.now(UTC),
                "api_version": payload.get("api_version"),
                "livemode": bool(payload.get("livemode", False)),
            }
        )
