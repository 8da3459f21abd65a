"""Repository classes providing access to the PaySync state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paysync_core.retry import ACTIVE_STATUSES, RetryStatus, check_transition
from paysync_core.state.database import acquire_xact_lock
from paysync_core.state.tables import (
    AuditLogTable,
    DisputeTable,
    ExternalCheckoutTable,
    InvoiceTable,
    LedgerEntryTable,
    MirrorRecordTable,
    PatientTable,
    PaymentMethodTable,
    PaymentTable,
    ProcessorChargeTable,
    ProcessorCustomerTable,
    RawEventTable,
    RefundTable,
    RetryJobTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)

LEDGER_SOURCES = frozenset({"payment", "refund", "dispute", "adjustment"})
LEDGER_DIRECTIONS = frozenset({"credit", "debit"})

_MAX_ERROR_LENGTH = 2000


def _new_id() -> str:
    return uuid.uuid4().hex


def _as_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def normalize_email(email: str | None) -> str | None:
    """Trim and lowercase *email*; empty strings become ``None``."""
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The result's ``rowcount`` is 1 when the row was inserted and 0 when a
    conflicting row already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


async def _upsert_row(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    key: str,
    *,
    immutable: tuple[str, ...] = ("id", "created_at"),
) -> Any:
    """Upsert keyed on the unique column *key* and return the fresh ORM row."""
    values = {"id": _new_id(), **values} if "id" in table.__table__.columns else dict(values)
    if "updated_at" in table.__table__.columns:
        values["updated_at"] = datetime.now(UTC)
    update_columns = [c for c in values if c != key and c not in immutable]
    await _dialect_upsert(session, table, values, [key], update_columns)
    stmt = select(table).where(getattr(table, key) == values[key]).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one()


# ---------------------------------------------------------------------------
# RawEventRepository
# ---------------------------------------------------------------------------


class RawEventRepository:
    """Durable event store backing the idempotency guard."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        api_version: str | None = None,
        received_at: datetime | None = None,
    ) -> bool:
        """Insert the raw event; ``False`` when *event_id* is already stored.

        The primary-key conflict is the serialisation point for concurrent
        deliveries of the same event: exactly one caller observes ``True``.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            RawEventTable,
            {
                "event_id": event_id,
                "event_type": event_type,
                "api_version": api_version,
                "payload": payload,
                "received_at": received_at or datetime.now(UTC),
                "processed": False,
                "flagged": False,
                "attempts": 0,
            },
            ["event_id"],
        )
        return bool(result.rowcount and result.rowcount > 0)

    async def get(self, event_id: str) -> RawEventTable | None:
        stmt = select(RawEventTable).where(RawEventTable.event_id == event_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(self, event_id: str) -> RawEventTable | None:
        """Lock the event row for processing.

        Returns ``None`` when the row is missing or another worker holds
        it.  On SQLite the ``FOR UPDATE`` clause is not rendered and the
        database-level write lock serialises workers instead.
        """
        stmt = (
            select(RawEventTable)
            .where(RawEventTable.event_id == event_id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_processed(
        self,
        event_id: str,
        *,
        flagged: bool = False,
        note: str | None = None,
    ) -> None:
        stmt = (
            update(RawEventTable)
            .where(RawEventTable.event_id == event_id)
            .values(
                processed=True,
                processed_at=datetime.now(UTC),
                flagged=flagged,
                error_message=note[:_MAX_ERROR_LENGTH] if note else None,
            )
        )
        await self._session.execute(stmt)

    async def record_failure(self, event_id: str, error: str) -> None:
        """Record a transient failure; the event stays unprocessed."""
        stmt = (
            update(RawEventTable)
            .where(RawEventTable.event_id == event_id, RawEventTable.processed.is_(False))
            .values(
                attempts=RawEventTable.attempts + 1,
                error_message=error[:_MAX_ERROR_LENGTH],
            )
        )
        await self._session.execute(stmt)

    async def list_unprocessed(
        self,
        *,
        limit: int = 100,
        received_before: datetime | None = None,
    ) -> list[RawEventTable]:
        """Unprocessed events, oldest first."""
        stmt = select(RawEventTable).where(RawEventTable.processed.is_(False))
        if received_before is not None:
            stmt = stmt.where(RawEventTable.received_at <= received_before)
        stmt = stmt.order_by(RawEventTable.received_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_unprocessed(self) -> int:
        stmt = select(func.count()).select_from(RawEventTable).where(RawEventTable.processed.is_(False))
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_flagged(self, *, limit: int = 100) -> list[RawEventTable]:
        stmt = (
            select(RawEventTable)
            .where(RawEventTable.flagged.is_(True))
            .order_by(RawEventTable.received_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class LedgerRepository:
    """Append-only per-tenant running-balance ledger.

    Appends for one tenant are serialised by a transaction-scoped advisory
    lock keyed on the tenant id, so two concurrent appends can never read
    the same base balance.  Appends for different tenants take different
    locks and proceed in parallel.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def latest(self, tenant_id: str) -> LedgerEntryTable | None:
        stmt = (
            select(LedgerEntryTable)
            .where(LedgerEntryTable.tenant_id == tenant_id)
            .order_by(LedgerEntryTable.occurred_at.desc(), LedgerEntryTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find(
        self,
        tenant_id: str,
        source: str,
        source_id: str,
        direction: str,
    ) -> LedgerEntryTable | None:
        stmt = select(LedgerEntryTable).where(
            LedgerEntryTable.tenant_id == tenant_id,
            LedgerEntryTable.source == source,
            LedgerEntryTable.source_id == source_id,
            LedgerEntryTable.direction == direction,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def append(
        self,
        *,
        tenant_id: str,
        source: str,
        source_id: str,
        amount: int,
        currency: str,
        direction: str,
        description: str | None = None,
        occurred_at: datetime | None = None,
    ) -> tuple[LedgerEntryTable, bool]:
        """Append an entry and return ``(entry, created)``.

        An entry already recorded for ``(tenant, source, source_id,
        direction)`` is returned unchanged with ``created=False``.

        ``occurred_at`` never moves backwards within a tenant so that
        ordering by it reproduces insertion order.
        """
        if source not in LEDGER_SOURCES:
            raise ValueError(f"Unknown ledger source {source!r}")
        if direction not in LEDGER_DIRECTIONS:
            raise ValueError(f"Unknown ledger direction {direction!r}")
        if amount < 0:
            raise ValueError(f"Ledger amounts are unsigned, got {amount}")

        await acquire_xact_lock(self._session, "ledger", tenant_id)

        existing = await self.find(tenant_id, source, source_id, direction)
        if existing is not None:
            return existing, False

        latest = await self.latest(tenant_id)
        previous_balance = latest.running_balance if latest is not None else 0
        signed = amount if direction == "credit" else -amount

        when = occurred_at or datetime.now(UTC)
        if latest is not None and _as_utc(latest.occurred_at) > when:
            when = _as_utc(latest.occurred_at)

        entry = LedgerEntryTable(
            tenant_id=tenant_id,
            source=source,
            source_id=source_id,
            amount=amount,
            currency=currency.lower(),
            direction=direction,
            running_balance=previous_balance + signed,
            description=description,
            occurred_at=when,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry, True

    async def list_for_tenant(self, tenant_id: str, *, limit: int | None = None) -> list[LedgerEntryTable]:
        """All entries for *tenant_id* in ledger order (oldest first)."""
        stmt = (
            select(LedgerEntryTable)
            .where(LedgerEntryTable.tenant_id == tenant_id)
            .order_by(LedgerEntryTable.occurred_at.asc(), LedgerEntryTable.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def tenant_ids(self) -> list[str]:
        stmt = select(LedgerEntryTable.tenant_id).distinct().order_by(LedgerEntryTable.tenant_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PaymentRepository
# ---------------------------------------------------------------------------


class PaymentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_processor_id(self, processor_payment_id: str) -> PaymentTable | None:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.processor_payment_id == processor_payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_charge_id(self, processor_charge_id: str) -> PaymentTable | None:
        stmt = select(PaymentTable).where(PaymentTable.processor_charge_id == processor_charge_id).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, values: dict[str, Any]) -> PaymentTable:
        """Insert the payment unless its processor id exists; return the row."""
        await _dialect_upsert_nothing(
            self._session,
            PaymentTable,
            {"id": _new_id(), **values},
            ["processor_payment_id"],
        )
        row = await self.get_by_processor_id(values["processor_payment_id"])
        if row is None:
            raise RuntimeError(f"Payment {values['processor_payment_id']} vanished after insert")
        return row

    async def update(self, row: PaymentTable, **fields: Any) -> PaymentTable:
        for name, value in fields.items():
            setattr(row, name, value)
        await self._session.flush()
        return row

    async def list_for_tenant(self, tenant_id: str, *, limit: int = 50) -> list[PaymentTable]:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.tenant_id == tenant_id)
            .order_by(PaymentTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class RefundRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_processor_id(self, processor_refund_id: str) -> RefundTable | None:
        stmt = select(RefundTable).where(RefundTable.processor_refund_id == processor_refund_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> RefundTable:
        return await _upsert_row(self._session, RefundTable, values, "processor_refund_id")

    async def list_for_charge(self, processor_charge_id: str) -> list[RefundTable]:
        stmt = (
            select(RefundTable)
            .where(RefundTable.processor_charge_id == processor_charge_id)
            .order_by(RefundTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, row: RefundTable) -> None:
        await self._session.delete(row)
        await self._session.flush()

    async def total_for_charge(self, processor_charge_id: str) -> int:
        stmt = select(func.coalesce(func.sum(RefundTable.amount), 0)).where(
            RefundTable.processor_charge_id == processor_charge_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


class DisputeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_processor_id(self, processor_dispute_id: str) -> DisputeTable | None:
        stmt = select(DisputeTable).where(DisputeTable.processor_dispute_id == processor_dispute_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> DisputeTable:
        return await _upsert_row(self._session, DisputeTable, values, "processor_dispute_id")


# ---------------------------------------------------------------------------
# Customers, subscriptions, invoices, payment methods
# ---------------------------------------------------------------------------


class CustomerRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_processor_id(self, processor_customer_id: str) -> ProcessorCustomerTable | None:
        stmt = select(ProcessorCustomerTable).where(
            ProcessorCustomerTable.processor_customer_id == processor_customer_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_patient(self, patient_id: str) -> ProcessorCustomerTable | None:
        stmt = (
            select(ProcessorCustomerTable)
            .where(ProcessorCustomerTable.patient_id == patient_id)
            .order_by(ProcessorCustomerTable.created_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> ProcessorCustomerTable | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        stmt = (
            select(ProcessorCustomerTable)
            .where(func.lower(func.trim(ProcessorCustomerTable.email)) == normalized)
            .order_by(ProcessorCustomerTable.created_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> ProcessorCustomerTable:
        values = dict(values)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        return await _upsert_row(self._session, ProcessorCustomerTable, values, "processor_customer_id")


class SubscriptionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_processor_id(self, processor_subscription_id: str) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.processor_subscription_id == processor_subscription_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> SubscriptionTable:
        return await _upsert_row(self._session, SubscriptionTable, values, "processor_subscription_id")


class InvoiceRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.id == invoice_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_processor_id(self, processor_invoice_id: str) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.processor_invoice_id == processor_invoice_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> InvoiceTable:
        """Upsert an invoice keyed on its processor invoice id."""
        return await _upsert_row(
            self._session,
            InvoiceTable,
            values,
            "processor_invoice_id",
            immutable=("id", "created_at", "patient_id", "paid_out_of_band"),
        )

    async def create(self, values: dict[str, Any]) -> InvoiceTable:
        row = InvoiceTable(id=values.get("id") or _new_id(), **{k: v for k, v in values.items() if k != "id"})
        self._session.add(row)
        await self._session.flush()
        return row

    async def mark_paid(self, invoice_id: str, *, amount_paid: int | None = None) -> None:
        values: dict[str, Any] = {
            "status": "paid",
            "paid_at": datetime.now(UTC),
            "last_failure": None,
            "updated_at": datetime.now(UTC),
        }
        if amount_paid is not None:
            values["amount_paid"] = amount_paid
        await self._session.execute(update(InvoiceTable).where(InvoiceTable.id == invoice_id).values(**values))

    async def record_failure(self, invoice_id: str, message: str) -> bool:
        """Note a failed payment on an invoice that is not already paid."""
        stmt = (
            update(InvoiceTable)
            .where(InvoiceTable.id == invoice_id, InvoiceTable.status != "paid")
            .values(last_failure=message[:_MAX_ERROR_LENGTH], updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)

    async def list_for_patient(self, patient_id: str) -> list[InvoiceTable]:
        stmt = select(InvoiceTable).where(InvoiceTable.patient_id == patient_id).order_by(InvoiceTable.created_at)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class PaymentMethodRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_processor_id(self, processor_payment_method_id: str) -> PaymentMethodTable | None:
        stmt = select(PaymentMethodTable).where(
            PaymentMethodTable.processor_payment_method_id == processor_payment_method_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> PaymentMethodTable:
        return await _upsert_row(self._session, PaymentMethodTable, values, "processor_payment_method_id")

    async def first_attached_for_customer(self, processor_customer_id: str) -> PaymentMethodTable | None:
        stmt = (
            select(PaymentMethodTable)
            .where(
                PaymentMethodTable.processor_customer_id == processor_customer_id,
                PaymentMethodTable.attached.is_(True),
            )
            .order_by(PaymentMethodTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# RetryJobRepository
# ---------------------------------------------------------------------------


class RetryJobRepository:
    """Persistence for payment retry jobs.

    Every status change is a guarded ``UPDATE ... WHERE status = :current``;
    the row count tells the caller whether it won the transition.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, job_id: str) -> RetryJobTable | None:
        stmt = select(RetryJobTable).where(RetryJobTable.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_for_invoice(self, invoice_id: str) -> RetryJobTable | None:
        stmt = select(RetryJobTable).where(
            RetryJobTable.invoice_id == invoice_id,
            RetryJobTable.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_invoice(self, invoice_id: str) -> RetryJobTable | None:
        stmt = (
            select(RetryJobTable)
            .where(RetryJobTable.invoice_id == invoice_id)
            .order_by(RetryJobTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        tenant_id: str,
        invoice_id: str,
        processor_customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        retry_at: datetime,
        last_error: str | None = None,
    ) -> RetryJobTable:
        job = RetryJobTable(
            id=_new_id(),
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            processor_customer_id=processor_customer_id,
            payment_method_id=payment_method_id,
            amount=amount,
            currency=currency.lower(),
            attempt_number=1,
            status=RetryStatus.PENDING.value,
            last_error=last_error,
            retry_at=retry_at,
        )
        self._session.add(job)
        await self._session.flush()
        return job

    async def list_due(self, now: datetime, *, limit: int) -> list[RetryJobTable]:
        """Pending jobs whose ``retry_at`` has passed, oldest due first."""
        stmt = (
            select(RetryJobTable)
            .where(
                RetryJobTable.status == RetryStatus.PENDING.value,
                RetryJobTable.retry_at <= now,
            )
            .order_by(RetryJobTable.retry_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        job_id: str,
        current: RetryStatus,
        target: RetryStatus,
        **fields: Any,
    ) -> bool:
        """Move *job_id* from *current* to *target* if it is still in *current*."""
        check_transition(current, target)
        now = datetime.now(UTC)
        values: dict[str, Any] = {"status": target.value, "updated_at": now, **fields}
        if target in (
            RetryStatus.SUCCEEDED,
            RetryStatus.FAILED,
            RetryStatus.REQUIRES_ACTION,
            RetryStatus.CANCELLED,
        ):
            values.setdefault("completed_at", now)
        stmt = (
            update(RetryJobTable)
            .where(RetryJobTable.id == job_id, RetryJobTable.status == current.value)
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def claim(self, job_id: str) -> bool:
        """Claim a pending job for processing before any processor I/O."""
        return await self.transition(
            job_id,
            RetryStatus.PENDING,
            RetryStatus.PROCESSING,
            started_at=datetime.now(UTC),
        )

    async def cancel_pending(self, invoice_id: str) -> int:
        stmt = (
            update(RetryJobTable)
            .where(
                RetryJobTable.invoice_id == invoice_id,
                RetryJobTable.status == RetryStatus.PENDING.value,
            )
            .values(
                status=RetryStatus.CANCELLED.value,
                completed_at=datetime.now(UTC),
                updated_at=datetime.now(UTC),
            )
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(RetryJobTable.status, func.count()).group_by(RetryJobTable.status)
        result = await self._session.execute(stmt)
        return {status: int(count) for status, count in result.all()}


# ---------------------------------------------------------------------------
# Mirroring
# ---------------------------------------------------------------------------


class ChargeSnapshotRepository:
    """Snapshots of processor charges consumed by the mirror worker."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, values: dict[str, Any]) -> None:
        """Upsert a charge snapshot without touching ``mirrored_at``."""
        values = dict(values)
        values["email"] = normalize_email(values.get("email"))
        update_columns = [
            c for c in values if c not in ("processor_charge_id", "created_at", "mirrored_at")
        ]
        await _dialect_upsert(
            self._session,
            ProcessorChargeTable,
            values,
            ["processor_charge_id"],
            update_columns,
        )

    async def list_pending(self, *, limit: int) -> list[ProcessorChargeTable]:
        stmt = (
            select(ProcessorChargeTable)
            .where(
                ProcessorChargeTable.platform_origin.is_(False),
                ProcessorChargeTable.mirrored_at.is_(None),
            )
            .order_by(ProcessorChargeTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_mirrored(self, processor_charge_id: str) -> None:
        stmt = (
            update(ProcessorChargeTable)
            .where(ProcessorChargeTable.processor_charge_id == processor_charge_id)
            .values(mirrored_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)


class MirrorRecordRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_charge_id(self, processor_charge_id: str) -> MirrorRecordTable | None:
        stmt = select(MirrorRecordTable).where(MirrorRecordTable.processor_charge_id == processor_charge_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(
        self,
        *,
        processor_charge_id: str,
        mode: str,
        amount: int,
        currency: str,
        email: str | None = None,
        matched_patient_id: str | None = None,
        created_invoice_id: str | None = None,
        note: str | None = None,
    ) -> MirrorRecordTable:
        """Insert the mirror record; raises ``IntegrityError`` on a repeat charge."""
        row = MirrorRecordTable(
            id=_new_id(),
            processor_charge_id=processor_charge_id,
            mode=mode,
            amount=amount,
            currency=currency.lower(),
            email=email,
            matched_patient_id=matched_patient_id,
            created_invoice_id=created_invoice_id,
            note=note,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_by_mode(self, mode: str, *, limit: int = 100) -> list[MirrorRecordTable]:
        stmt = (
            select(MirrorRecordTable)
            .where(MirrorRecordTable.mode == mode)
            .order_by(MirrorRecordTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class ExternalCheckoutRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_session_id(self, processor_session_id: str) -> ExternalCheckoutTable | None:
        stmt = select(ExternalCheckoutTable).where(ExternalCheckoutTable.processor_session_id == processor_session_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, values: dict[str, Any]) -> ExternalCheckoutTable:
        values = dict(values)
        values["email"] = normalize_email(values.get("email"))
        return await _upsert_row(self._session, ExternalCheckoutTable, values, "processor_session_id")


class PatientRepository:
    """Read-only access to the patient collaborator's read model."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, patient_id: str) -> PatientTable | None:
        result = await self._session.execute(select(PatientTable).where(PatientTable.patient_id == patient_id))
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> PatientTable | None:
        """Oldest patient whose email matches, ignoring case and whitespace."""
        normalized = normalize_email(email)
        if normalized is None:
            return None
        stmt = (
            select(PatientTable)
            .where(func.lower(func.trim(PatientTable.email)) == normalized)
            .order_by(PatientTable.patient_id.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


def audit_digest(entry: dict[str, Any], previous_hash: str | None) -> str:
    """SHA-256 of an audit entry's canonical JSON and its predecessor's digest."""
    canonical = json.dumps(
        {"entry": entry, "previous": previous_hash},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditRepository:
    """Tamper-evident trail of payment retry decisions for one tenant.

    The retry scheduler records every terminal outcome here: charges that
    went through, jobs stopped for customer action (``warning``) and
    exhausted retries (``alert``).  Each entry stores the digest of the
    tenant's previous entry, so rewriting or removing a row invalidates
    every later digest.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def _chain_head(self) -> str | None:
        stmt = (
            select(AuditLogTable.entry_hash)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        actor: str,
        action: str,
        severity: str = "info",
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Append an entry to the tenant's chain and return its id."""
        created_at = datetime.now(UTC)

        # The chain head must not move between reading it and appending.
        await acquire_xact_lock(self._session, "audit_chain", self._tenant_id)
        previous_hash = await self._chain_head()

        entry = {
            "tenant_id": self._tenant_id,
            "actor": actor,
            "action": action,
            "severity": severity,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "metadata": metadata,
            "created_at": created_at.isoformat(),
        }
        row = AuditLogTable(
            id=_new_id(),
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=metadata,
            previous_hash=previous_hash,
            entry_hash=audit_digest(entry, previous_hash),
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row.id

    async def query(
        self,
        *,
        action: str | None = None,
        severity: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLogTable]:
        """Entries for this tenant, newest first."""
        stmt = select(AuditLogTable).where(AuditLogTable.tenant_id == self._tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if severity is not None:
            stmt = stmt.where(AuditLogTable.severity == severity)
        if entity_id is not None:
            stmt = stmt.where(AuditLogTable.entity_id == entity_id)
        result = await self._session.execute(stmt.order_by(AuditLogTable.created_at.desc()).limit(limit))
        return list(result.scalars().all())
