"""Ledger accountant: fee policy and running-balance appends per tenant.

The platform fee is a single configured percentage
(``PAYSYNC_PLATFORM_FEE_PERCENT``) applied wherever net proceeds are
credited; no call site carries its own rate.  Fees round down to the minor
unit, so ``net = amount - floor(amount * pct / 100)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from paysync_core.config import Settings
from paysync_core.state.repository import LedgerRepository
from paysync_core.state.tables import LedgerEntryTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerVerification:
    """Result of replaying a tenant's ledger."""

    tenant_id: str
    entries_checked: int
    ok: bool
    balance: int
    first_mismatch_id: int | None = None


class LedgerAccountant:
    """Computes fees and appends signed entries to the tenant ledger.

    Parameters
    ----------
    fee_percent:
        Platform fee as an integer percentage (0-100).
    """

    def __init__(self, fee_percent: int = 10) -> None:
        if not 0 <= fee_percent <= 100:
            raise ValueError(f"fee_percent must be between 0 and 100, got {fee_percent}")
        self._fee_percent = fee_percent

    @classmethod
    def from_settings(cls, settings: Settings) -> LedgerAccountant:
        return cls(fee_percent=settings.platform_fee_percent)

    @property
    def fee_percent(self) -> int:
        return self._fee_percent

    def platform_fee(self, amount: int) -> int:
        return amount * self._fee_percent // 100

    def net_of_fee(self, amount: int) -> int:
        return amount - self.platform_fee(amount)

    async def append(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        source: str,
        source_id: str,
        amount: int,
        currency: str,
        direction: str,
        description: str | None = None,
    ) -> LedgerEntryTable:
        """Append one entry inside the caller's transaction.

        The tenant's ledger stays locked until that transaction ends, and
        any failure here must abort it so domain rows never commit without
        their ledger entry.
        """
        entry, created = await LedgerRepository(session).append(
            tenant_id=tenant_id,
            source=source,
            source_id=source_id,
            amount=amount,
            currency=currency,
            direction=direction,
            description=description,
        )
        if created:
            logger.info(
                "Ledger %s %d %s for tenant=%s (%s:%s) balance=%d",
                direction,
                amount,
                entry.currency,
                tenant_id,
                source,
                source_id,
                entry.running_balance,
                extra={"tenant_id": tenant_id},
            )
        else:
            logger.debug(
                "Ledger entry %s:%s/%s already recorded for tenant=%s",
                source,
                source_id,
                direction,
                tenant_id,
            )
        return entry

    async def credit_net_proceeds(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        source_id: str,
        gross_amount: int,
        currency: str,
        description: str,
    ) -> LedgerEntryTable:
        """Credit *gross_amount* minus the platform fee as a ``payment`` entry."""
        fee = self.platform_fee(gross_amount)
        return await self.append(
            session,
            tenant_id=tenant_id,
            source="payment",
            source_id=source_id,
            amount=gross_amount - fee,
            currency=currency,
            direction="credit",
            description=f"{description} (gross {gross_amount}, fee {fee})",
        )

    async def balance(self, session: AsyncSession, tenant_id: str) -> int:
        latest = await LedgerRepository(session).latest(tenant_id)
        return latest.running_balance if latest is not None else 0

    async def verify(self, session: AsyncSession, tenant_id: str) -> LedgerVerification:
        """Replay the tenant's entries and compare every running balance."""
        entries = await LedgerRepository(session).list_for_tenant(tenant_id)
        balance = 0
        for checked, entry in enumerate(entries):
            balance += entry.amount if entry.direction == "credit" else -entry.amount
            if balance != entry.running_balance:
                logger.error(
                    "Ledger mismatch for tenant=%s at entry %d: replayed=%d stored=%d",
                    tenant_id,
                    entry.id,
                    balance,
                    entry.running_balance,
                )
                return LedgerVerification(
                    tenant_id=tenant_id,
                    entries_checked=checked + 1,
                    ok=False,
                    balance=balance,
                    first_mismatch_id=entry.id,
                )
        return LedgerVerification(tenant_id=tenant_id, entries_checked=len(entries), ok=True, balance=balance)
