"""Initial PaySync schema.

Creates the event store, ledger, payment, retry queue and mirroring
tables together with the domain tables the webhook handlers upsert into.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = JSONB().with_variant(sa.JSON(), "sqlite")
_ACTIVE_RETRY = "status IN ('pending','processing','retrying')"


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return cols


def upgrade() -> None:
    op.create_table(
        "raw_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("api_version", sa.String(32), nullable=True),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_raw_events_unprocessed", "raw_events", ["processed", "received_at"])
    op.create_index("ix_raw_events_type", "raw_events", ["event_type"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("direction", sa.String(8), nullable=False),
        sa.Column("running_balance", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("amount >= 0", name="ck_ledger_amount_non_negative"),
        sa.CheckConstraint("direction IN ('credit','debit')", name="ck_ledger_direction"),
        sa.CheckConstraint("source IN ('payment','refund','dispute','adjustment')", name="ck_ledger_source"),
        sa.UniqueConstraint("tenant_id", "source", "source_id", "direction", name="uq_ledger_source"),
    )
    op.create_index("ix_ledger_tenant_occurred", "ledger_entries", ["tenant_id", "occurred_at", "id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=True),
        sa.Column("processor_payment_id", sa.String(255), nullable=False, unique=True),
        sa.Column("processor_charge_id", sa.String(255), nullable=True),
        sa.Column("processor_invoice_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("amount_refunded", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payment_type", sa.String(32), nullable=False, server_default="one_time"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','processing','succeeded','failed','refunded')",
            name="ck_payments_status",
        ),
        sa.CheckConstraint("payment_type IN ('one_time','subscription_payment')", name="ck_payments_type"),
    )
    op.create_index("ix_payments_tenant_created", "payments", ["tenant_id", "created_at"])
    op.create_index("ix_payments_charge", "payments", ["processor_charge_id"])

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("processor_refund_id", sa.String(255), nullable=False, unique=True),
        sa.Column("processor_charge_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("reason", sa.String(128), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_refunds_charge", "refunds", ["processor_charge_id"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("processor_dispute_id", sa.String(255), nullable=False, unique=True),
        sa.Column("processor_charge_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(128), nullable=True),
        sa.Column("evidence_due_by", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "processor_customers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("processor_customer_id", sa.String(255), nullable=False, unique=True),
        sa.Column("patient_id", sa.String(64), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("default_payment_method_id", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_processor_customers_email", "processor_customers", ["email"])
    op.create_index("ix_processor_customers_patient", "processor_customers", ["patient_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("processor_subscription_id", sa.String(255), nullable=False, unique=True),
        sa.Column("processor_customer_id", sa.String(255), nullable=False),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_customer", "subscriptions", ["processor_customer_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("processor_invoice_id", sa.String(255), nullable=True, unique=True),
        sa.Column("processor_customer_id", sa.String(255), nullable=True),
        sa.Column("processor_subscription_id", sa.String(255), nullable=True),
        sa.Column("patient_id", sa.String(64), nullable=True),
        sa.Column("amount_due", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("platform_origin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_out_of_band", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('draft','open','paid','void','uncollectible')",
            name="ck_invoices_status",
        ),
    )
    op.create_index("ix_invoices_tenant_created", "invoices", ["tenant_id", "created_at"])
    op.create_index("ix_invoices_patient", "invoices", ["patient_id"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("processor_payment_method_id", sa.String(255), nullable=False, unique=True),
        sa.Column("processor_customer_id", sa.String(255), nullable=True),
        sa.Column("method_type", sa.String(32), nullable=False),
        sa.Column("brand", sa.String(32), nullable=True),
        sa.Column("last4", sa.String(4), nullable=True),
        sa.Column("exp_month", sa.Integer(), nullable=True),
        sa.Column("exp_year", sa.Integer(), nullable=True),
        sa.Column("attached", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_payment_methods_customer", "payment_methods", ["processor_customer_id"])

    op.create_table(
        "retry_queue",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("invoice_id", sa.String(64), nullable=False),
        sa.Column("processor_customer_id", sa.String(255), nullable=False),
        sa.Column("payment_method_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processor_payment_id", sa.String(255), nullable=True),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','processing','retrying','requires_action','succeeded','failed','cancelled')",
            name="ck_retry_queue_status",
        ),
    )
    op.create_index("ix_retry_queue_due", "retry_queue", ["status", "retry_at"])
    op.create_index(
        "uq_retry_queue_active_invoice",
        "retry_queue",
        ["invoice_id"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_RETRY),
        sqlite_where=sa.text(_ACTIVE_RETRY),
    )

    op.create_table(
        "processor_charges",
        sa.Column("processor_charge_id", sa.String(255), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("processor_invoice_id", sa.String(255), nullable=True),
        sa.Column("platform_origin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("mirrored_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_processor_charges_pending", "processor_charges", ["platform_origin", "mirrored_at"])

    op.create_table(
        "external_payment_mirrors",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("processor_charge_id", sa.String(255), nullable=False, unique=True),
        sa.Column("mode", sa.String(16), nullable=False),
        sa.Column("matched_patient_id", sa.String(64), nullable=True),
        sa.Column("created_invoice_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "mode IN ('skip','imported','created','failed','unmatched')",
            name="ck_mirrors_mode",
        ),
    )
    op.create_index("ix_mirrors_mode", "external_payment_mirrors", ["mode"])

    op.create_table(
        "external_checkouts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("processor_session_id", sa.String(255), nullable=False, unique=True),
        sa.Column("processor_payment_id", sa.String(255), nullable=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("matched_customer_id", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("status IN ('matched','pending_review')", name="ck_external_checkouts_status"),
    )

    op.create_table(
        "patients",
        sa.Column("patient_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
    )
    op.create_index("ix_patients_email", "patients", ["email"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(512), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("severity IN ('info','warning','alert')", name="ck_audit_severity"),
    )
    op.create_index("ix_audit_tenant_created", "audit_log", ["tenant_id", "created_at"])
    op.create_index("ix_audit_tenant_action", "audit_log", ["tenant_id", "action"])
    op.create_index("ix_audit_entity", "audit_log", ["tenant_id", "entity_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "patients",
        "external_checkouts",
        "external_payment_mirrors",
        "processor_charges",
        "retry_queue",
        "payment_methods",
        "invoices",
        "subscriptions",
        "processor_customers",
        "disputes",
        "refunds",
        "payments",
        "ledger_entries",
        "raw_events",
    ):
        op.drop_table(table)
