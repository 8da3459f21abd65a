"""Explicit payment processor client.

Wraps a single ``stripe.StripeClient`` built at process start and handed to
every component that talks to the processor.  Nothing in PaySync touches
the module-level ``stripe.api_key``.

The Stripe SDK is synchronous, so every call runs in a worker thread via
``asyncio.to_thread``; handlers and workers never block the event loop on
processor I/O.  SDK exceptions are translated into :class:`ProcessorError`
with ``transient`` / ``requires_action`` classification.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import stripe

from paysync.config import ServiceSettings
from paysync.errors import ProcessorError
from paysync_core.events.types import ProcessorEvent

logger = logging.getLogger(__name__)

_AUTHENTICATION_REQUIRED = "authentication_required"


def _to_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _translate(exc: stripe.StripeError) -> ProcessorError:
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    if isinstance(exc, stripe.CardError):
        return ProcessorError(message, code=code, requires_action=code == _AUTHENTICATION_REQUIRED)
    if isinstance(exc, stripe.APIConnectionError | stripe.RateLimitError):
        return ProcessorError(message, code=code, transient=True)
    status = getattr(exc, "http_status", None)
    return ProcessorError(message, code=code, transient=bool(status and status >= 500))


class ProcessorClient:
    """Async facade over the processor SDK.

    Parameters
    ----------
    client:
        A configured ``stripe.StripeClient``.
    webhook_secret:
        Signing secret used by :meth:`construct_event`.
    """

    def __init__(self, client: stripe.StripeClient, *, webhook_secret: str | None = None) -> None:
        self._client = client
        self._webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> ProcessorClient:
        if settings.stripe_secret_key is None:
            raise ValueError("PAYSYNC_SERVICE_STRIPE_SECRET_KEY is not configured")
        client = stripe.StripeClient(
            settings.stripe_secret_key.get_secret_value(),
            max_network_retries=settings.stripe_max_network_retries,
        )
        secret = settings.stripe_webhook_secret.get_secret_value() if settings.stripe_webhook_secret else None
        return cls(client, webhook_secret=secret)

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            error = _translate(exc)
            logger.warning(
                "Processor call %s failed: %s (code=%s transient=%s)",
                operation,
                error,
                error.code,
                error.transient,
            )
            raise error from exc
        return _to_dict(result)

    # -- Inbound ------------------------------------------------------------

    def construct_event(self, payload: bytes | str, signature: str) -> ProcessorEvent:
        """Verify a webhook signature and return the trusted event."""
        if not self._webhook_secret:
            raise ValueError("Webhook signing secret is not configured")
        try:
            event = self._client.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise ProcessorError("Invalid webhook signature", code="signature_invalid") from exc
        return ProcessorEvent.from_payload(_to_dict(event))

    # -- Payments -----------------------------------------------------------

    async def charge_off_session(
        self,
        *,
        amount: int,
        currency: str,
        customer: str,
        payment_method: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create and confirm an off-session payment intent."""
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "customer": customer,
            "payment_method": payment_method,
            "confirm": True,
            "off_session": True,
            "metadata": metadata or {},
        }
        if description:
            params["description"] = description
        return await self._call(
            "payment_intents.create",
            self._client.payment_intents.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )

    # -- Customers ----------------------------------------------------------

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._call("customers.retrieve", self._client.customers.retrieve, customer_id)

    async def create_customer(
        self,
        *,
        email: str,
        idempotency_key: str,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        return await self._call(
            "customers.create",
            self._client.customers.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )

    # -- Invoices -----------------------------------------------------------

    async def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return await self._call("invoices.retrieve", self._client.invoices.retrieve, invoice_id)

    async def create_invoice(
        self,
        *,
        customer: str,
        idempotency_key: str,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a draft invoice that ignores the customer's pending items."""
        params: dict[str, Any] = {
            "customer": customer,
            "collection_method": "send_invoice",
            "days_until_due": 0,
            "auto_advance": False,
            "pending_invoice_items_behavior": "exclude",
            "metadata": metadata or {},
        }
        if description:
            params["description"] = description
        return await self._call(
            "invoices.create",
            self._client.invoices.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )

    async def create_invoice_item(
        self,
        *,
        customer: str,
        invoice: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "customer": customer,
            "invoice": invoice,
            "amount": amount,
            "currency": currency,
        }
        if description:
            params["description"] = description
        return await self._call(
            "invoice_items.create",
            self._client.invoice_items.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )

    async def finalize_invoice(self, invoice_id: str, *, idempotency_key: str) -> dict[str, Any]:
        return await self._call(
            "invoices.finalize_invoice",
            self._client.invoices.finalize_invoice,
            invoice_id,
            params={"auto_advance": False},
            options={"idempotency_key": idempotency_key},
        )

    async def pay_invoice_out_of_band(self, invoice_id: str, *, idempotency_key: str) -> dict[str, Any]:
        return await self._call(
            "invoices.pay",
            self._client.invoices.pay,
            invoice_id,
            params={"paid_out_of_band": True},
            options={"idempotency_key": idempotency_key},
        )
