"""Shared handler types and resolution helpers.

A handler receives a :class:`HandlerContext` bound to the event's
transaction and returns a :class:`HandlerResult`.  Resolution helpers
raise :class:`~paysync.errors.TerminalSkip` before any write when the
event references a tenant or customer that will never resolve.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from paysync.config import ServiceSettings
from paysync.errors import TerminalSkip
from paysync.services.ledger_service import LedgerAccountant
from paysync_core.events.types import ProcessorEvent
from paysync_core.retry import RetryPolicy
from paysync_core.state.repository import CustomerRepository, PaymentRepository
from paysync_core.state.tables import ProcessorCustomerTable


class Outcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class HandlerResult:
    """What a handler did with an event.

    ``SKIPPED`` is a terminal skip: the event is marked processed and
    flagged for review with ``reason``.
    """

    outcome: Outcome
    reason: str | None = None

    @classmethod
    def applied(cls, reason: str | None = None) -> HandlerResult:
        return cls(Outcome.APPLIED, reason)

    @classmethod
    def ignored(cls, reason: str) -> HandlerResult:
        return cls(Outcome.IGNORED, reason)

    @classmethod
    def skipped(cls, reason: str) -> HandlerResult:
        return cls(Outcome.SKIPPED, reason)


@dataclass
class HandlerContext:
    """Per-event dependencies, all bound to one transaction."""

    session: AsyncSession
    ledger: LedgerAccountant
    settings: ServiceSettings
    retry_policy: RetryPolicy


Handler = Callable[[HandlerContext, ProcessorEvent], Awaitable[HandlerResult]]


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def metadata_of(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def ref_id(value: Any) -> str | None:
    """Id of a processor reference that may be expanded into an object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def currency_of(obj: dict[str, Any]) -> str:
    return str(obj.get("currency") or "usd").lower()


# ---------------------------------------------------------------------------
# Resolution helpers
# ---------------------------------------------------------------------------


def tenant_from_metadata(obj: dict[str, Any]) -> str | None:
    tenant = metadata_of(obj).get("tenant_id")
    return str(tenant) if tenant else None


def require_tenant(obj: dict[str, Any], what: str) -> str:
    tenant = tenant_from_metadata(obj)
    if tenant is None:
        raise TerminalSkip(f"{what} {obj.get('id')} has no tenant_id metadata")
    return tenant


async def tenant_for_charge(ctx: HandlerContext, obj: dict[str, Any], charge_id: str | None, what: str) -> str:
    """Tenant from metadata, else from the payment that owns *charge_id*."""
    tenant = tenant_from_metadata(obj)
    if tenant is not None:
        return tenant
    if charge_id:
        payment = await PaymentRepository(ctx.session).get_by_charge_id(charge_id)
        if payment is not None:
            return payment.tenant_id
    raise TerminalSkip(f"{what} {obj.get('id')} cannot be attributed to a tenant")


async def require_customer(ctx: HandlerContext, customer_id: str | None, what: str) -> ProcessorCustomerTable:
    if not customer_id:
        raise TerminalSkip(f"{what} has no customer")
    customer = await CustomerRepository(ctx.session).get_by_processor_id(customer_id)
    if customer is None:
        raise TerminalSkip(f"{what} references unknown customer {customer_id}")
    return customer
