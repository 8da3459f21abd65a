"""SQLAlchemy 2.0 ORM table definitions for the PaySync state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.

Amounts are stored as integer minor units (cents) everywhere.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# SQLite only auto-increments ``INTEGER PRIMARY KEY`` columns.
_BigIntPk = BigInteger().with_variant(Integer(), "sqlite")

RETRY_ACTIVE_STATUSES = ("pending", "processing", "retrying")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all PaySync tables."""


# ---------------------------------------------------------------------------
# Raw events
# ---------------------------------------------------------------------------


class RawEventTable(Base):
    """Durable record of every processor event received.

    Rows are created once per inbound notification and afterwards only
    updated to flip ``processed`` or to record a failure.  Never deleted.
    """

    __tablename__ = "raw_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    api_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_raw_events_unprocessed", "processed", "received_at"),
        Index("ix_raw_events_type", "event_type"),
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerEntryTable(Base):
    """Append-only per-tenant running-balance ledger.

    ``running_balance`` of an entry equals the previous entry's balance for
    the same tenant plus ``amount`` (credit) or minus ``amount`` (debit).
    Corrections are new ``adjustment`` entries; rows are never updated.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(_BigIntPk, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    running_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_ledger_amount_non_negative"),
        CheckConstraint("direction IN ('credit','debit')", name="ck_ledger_direction"),
        CheckConstraint(
            "source IN ('payment','refund','dispute','adjustment')",
            name="ck_ledger_source",
        ),
        UniqueConstraint("tenant_id", "source", "source_id", "direction", name="uq_ledger_source"),
        Index("ix_ledger_tenant_occurred", "tenant_id", "occurred_at", "id"),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """One row per processor payment (payment intent)."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_payment_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processor_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_refunded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(32), nullable=False, default="one_time")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','succeeded','failed','refunded')",
            name="ck_payments_status",
        ),
        CheckConstraint(
            "payment_type IN ('one_time','subscription_payment')",
            name="ck_payments_type",
        ),
        Index("ix_payments_tenant_created", "tenant_id", "created_at"),
        Index("ix_payments_charge", "processor_charge_id"),
    )


class RefundTable(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_refund_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processor_charge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_refunds_charge", "processor_charge_id"),)


class DisputeTable(Base):
    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_dispute_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processor_charge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    evidence_due_by: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Customers, subscriptions, invoices, payment methods
# ---------------------------------------------------------------------------


class ProcessorCustomerTable(Base):
    """Mapping of processor customers to tenants (and optionally patients)."""

    __tablename__ = "processor_customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    patient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_processor_customers_email", "email"),
        Index("ix_processor_customers_patient", "patient_id"),
    )


class SubscriptionTable(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processor_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_subscriptions_customer", "processor_customer_id"),)


class InvoiceTable(Base):
    """Invoices mirrored from the processor or created by the mirror engine.

    ``processor_invoice_id`` is NULL only for invoices that never reached
    the processor.  ``paid_out_of_band`` marks invoices created to
    represent a payment collected outside the platform.
    """

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    processor_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    patient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount_due: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    platform_origin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_out_of_band: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','open','paid','void','uncollectible')",
            name="ck_invoices_status",
        ),
        Index("ix_invoices_tenant_created", "tenant_id", "created_at"),
        Index("ix_invoices_patient", "patient_id"),
    )


class PaymentMethodTable(Base):
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_payment_method_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processor_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    method_type: Mapped[str] = mapped_column(String(32), nullable=False)
    brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    exp_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exp_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_payment_methods_customer", "processor_customer_id"),)


# ---------------------------------------------------------------------------
# Retry queue
# ---------------------------------------------------------------------------


class RetryJobTable(Base):
    """Scheduled re-attempts of a failed invoice payment.

    At most one job per invoice may be in an active status; the partial
    unique index enforces it on both backends.
    """

    __tablename__ = "retry_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processor_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processor_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','retrying','requires_action','succeeded','failed','cancelled')",
            name="ck_retry_queue_status",
        ),
        Index("ix_retry_queue_due", "status", "retry_at"),
        Index(
            "uq_retry_queue_active_invoice",
            "invoice_id",
            unique=True,
            postgresql_where=text("status IN ('pending','processing','retrying')"),
            sqlite_where=text("status IN ('pending','processing','retrying')"),
        ),
    )


# ---------------------------------------------------------------------------
# External payment mirroring
# ---------------------------------------------------------------------------


class ProcessorChargeTable(Base):
    """Snapshot of successful processor charges awaiting mirroring."""

    __tablename__ = "processor_charges"

    processor_charge_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    processor_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform_origin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    mirrored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_processor_charges_pending", "platform_origin", "mirrored_at"),)


class MirrorRecordTable(Base):
    """Exactly one row per external charge the mirror engine has seen."""

    __tablename__ = "external_payment_mirrors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    processor_charge_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    matched_patient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "mode IN ('skip','imported','created','failed','unmatched')",
            name="ck_mirrors_mode",
        ),
        Index("ix_mirrors_mode", "mode"),
    )


class ExternalCheckoutTable(Base):
    __tablename__ = "external_checkouts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    processor_session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processor_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    matched_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('matched','pending_review')", name="ck_external_checkouts_status"),
    )


class PatientTable(Base):
    """Read model of patients, owned and written by the patient service."""

    __tablename__ = "patients"

    patient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (Index("ix_patients_email", "email"),)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Per-tenant chain of payment retry outcomes.

    ``previous_hash`` is the ``entry_hash`` of the tenant's prior entry.
    Exhausted retries carry ``severity`` ``alert``.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("severity IN ('info','warning','alert')", name="ck_audit_severity"),
        Index("ix_audit_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_tenant_action", "tenant_id", "action"),
        Index("ix_audit_entity", "tenant_id", "entity_type", "entity_id"),
    )
